"""导出阶段

把检查点转换成可部署的模型包。
"""

import glob
import logging
import os
import uuid

from pydantic import ValidationError

from ..errors import NotFoundError, PreconditionError, StageError
from ..models import Export
from .base import EXPORT_MOUNT, MODEL_MOUNT, StageExecutor
from .trainer import CHECKPOINT_DIR

logger = logging.getLogger(__name__)

EXPORT_PARAMETER_FILE = "exportparameters.json"


class Exporter(StageExecutor):
    """导出阶段执行器"""

    async def locate_checkpoint(self, project_id: str, step: int) -> str:
        """确认检查点存在

        Returns:
            str: 检查点文件前缀

        Raises:
            NotFoundError: 检查点记录或文件不存在
        """
        project = await self.store.retrieve_by_id(project_id)
        if step not in project.checkpoints:
            raise NotFoundError(f"checkpoint {step} not found in project {project_id}")

        prefix = os.path.join(self.train_dir(project), CHECKPOINT_DIR, f"model.ckpt-{step}")
        if not glob.glob(f"{prefix}.*"):
            raise NotFoundError(f"checkpoint files for step {step} not found")
        return prefix

    async def create_export(self, project_id: str, name: str, step: int) -> Export:
        """创建导出记录

        Raises:
            PreconditionError: 导出名称不合法
        """
        project = await self.store.retrieve_by_id(project_id)
        export_id = uuid.uuid4().hex[:12]
        try:
            return Export(
                id=export_id,
                name=name,
                project_id=project.id,
                checkpoint_step=step,
                directory=os.path.join(project.directory, "exports", export_id)
            )
        except ValidationError as e:
            raise PreconditionError(f"invalid export name {name!r}: {e.errors()[0]['msg']}")

    async def create_destination_directory(self, export: Export) -> None:
        os.makedirs(export.directory, exist_ok=True)

    async def update_checkpoint_status(self, project_id: str, step: int, exporting: bool) -> None:
        """设置或清除检查点的"导出中"标记"""
        project = await self.store.retrieve_by_id(project_id)
        if step not in project.checkpoints:
            raise NotFoundError(f"checkpoint {step} not found in project {project_id}")
        project.checkpoints[step].exporting = exporting
        await self.store.persist(project)

    async def write_parameter_file(self, project_id: str, step: int, export: Export) -> str:
        path = os.path.join(export.directory, EXPORT_PARAMETER_FILE)
        self.write_json(path, {
            "name": export.name,
            "epochs": step,
            "checkpoint": f"{MODEL_MOUNT}/{CHECKPOINT_DIR}/model.ckpt-{step}",
            "export-dir": EXPORT_MOUNT,
        })
        return path

    async def export_checkpoint(self, project_id: str, export: Export) -> None:
        project = await self.store.retrieve_by_id(project_id)
        await self.run_to_completion(project_id, "export", "export", {
            self.train_dir(project): MODEL_MOUNT,
            export.directory: EXPORT_MOUNT,
        })

    async def save_export(self, project_id: str, export: Export, step: int) -> Export:
        """登记导出结果

        Raises:
            StageError: 导出容器没有生成模型包
        """
        tar_path = os.path.join(export.directory, f"{export.name}.tar.gz")
        if not os.path.isfile(tar_path):
            raise StageError(f"export {export.name} produced no model archive")
        export.tar_path = tar_path

        project = await self.store.retrieve_by_id(project_id)
        project.exports[export.id] = export
        if step in project.checkpoints:
            project.checkpoints[step].export_ids.append(export.id)
        await self.store.persist(project)
        logger.info(f"Saved export {export.name} ({export.id}) for project {project_id}")
        return export
