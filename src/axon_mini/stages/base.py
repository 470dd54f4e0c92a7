"""阶段执行器基类"""

import json
import logging
import os
from typing import Any, Dict, Optional

from ..config import config
from ..db import ProjectStore
from ..errors import StageError
from ..models import Project
from ..runtime import ContainerRuntime

logger = logging.getLogger(__name__)

# 容器内的挂载点
MODEL_MOUNT = "/opt/ml/model"
EXPORT_MOUNT = "/opt/ml/export"
TEST_MOUNT = "/opt/ml/test"


class StageExecutor:
    """阶段执行器基类

    持有容器运行时、项目存储和镜像配置。每个步骤都重新从存储读取项目，
    修改后立即保存，读取和保存之间不做await，避免覆盖其他协程的修改。
    """

    def __init__(self, runtime: ContainerRuntime, store: ProjectStore,
                 images: Optional[Dict[str, str]] = None):
        self.runtime = runtime
        self.store = store
        self.images = images or config.get_images_config()

    @staticmethod
    def train_dir(project: Project) -> str:
        return os.path.join(project.directory, "train")

    @staticmethod
    def write_json(path: str, data: Dict[str, Any]) -> None:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w") as f:
            json.dump(data, f, indent=4)

    async def _set_handle(self, project_id: str, role: str, handle: Optional[str]) -> None:
        project = await self.store.retrieve_by_id(project_id)
        setattr(project.container_ids, role, handle)
        await self.store.persist(project)

    async def run_to_completion(self, project_id: str, role: str, image_key: str,
                                volumes: Dict[str, str], keep_handle: bool = False) -> None:
        """启动容器并等待其退出

        容器句柄在等待之前写入项目记录，外部可以据此暂停或终止容器。

        Args:
            project_id: 项目ID
            role: 句柄在container_ids上的字段名，为None时不记录
            image_key: 镜像配置中的键
            volumes: 宿主机路径 -> 容器内路径
            keep_handle: 退出后是否保留句柄(训练容器的句柄由编排服务清除)

        Raises:
            StageError: 容器以非零状态退出
            ContainerGoneError: 等待期间容器消失
        """
        image = self.images[image_key]
        handle = await self.runtime.run(image, volumes)
        if role:
            await self._set_handle(project_id, role, handle)

        try:
            status = await self.runtime.wait(handle)
        finally:
            await self.runtime.remove(handle)
            if role and not keep_handle:
                await self._set_handle(project_id, role, None)

        if status != 0:
            raise StageError(f"{image_key} container exited with status {status}")
        logger.info(f"{image_key} container for project {project_id} finished")
