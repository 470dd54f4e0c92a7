"""编排服务

负责：
1. 启动状态机 - 探测容器运行时、扫描项目、依次拉取镜像
2. 项目训练状态表
3. 训练、导出、测试三条流水线
4. 对运行中训练容器的终止、暂停和恢复
"""

import logging
from typing import Any, Dict, List, Optional, Union

from .config import config
from .db import ProjectStore
from .errors import (
    InvalidTransitionError, PreconditionError, RuntimeUnavailableError
)
from .models import Checkpoint, Export, Project, ProjectStatus, Test, Video
from .pipeline import PipelineGuard, Step, run_steps
from .runtime import ContainerRuntime
from .stages import Exporter, Tester, Trainer
from .states import (
    PULL_SEQUENCE, ReadinessState, StatusTable, TrainingStatus,
    advance_readiness, is_valid_transition
)

logger = logging.getLogger(__name__)


class MLService:
    """机器学习编排服务

    Args:
        runtime: 容器运行时
        store: 项目存储
        trainer/exporter/tester: 阶段执行器，未给出时使用默认实现
        images: 镜像配置，未给出时读取配置文件
    """

    def __init__(self, runtime: ContainerRuntime, store: ProjectStore,
                 trainer: Optional[Trainer] = None, exporter: Optional[Exporter] = None,
                 tester: Optional[Tester] = None, images: Optional[Dict[str, str]] = None):
        self.runtime = runtime
        self.store = store
        self.images = images or config.get_images_config()
        self.trainer = trainer or Trainer(runtime, store, self.images)
        self.exporter = exporter or Exporter(runtime, store, self.images)
        self.tester = tester or Tester(runtime, store, self.images)

        self.readiness = ReadinessState.SCANNING_RUNTIME
        self.status = StatusTable()
        self.guard = PipelineGuard()

    # ===================== 启动状态机 =====================

    def _advance(self, target: ReadinessState) -> None:
        self.readiness = advance_readiness(self.readiness, target)
        logger.info(f"Readiness: {self.readiness.value}")

    async def boot(self) -> ReadinessState:
        """执行启动流程

        运行时探测失败时停在NO_RUNTIME，不拉取任何镜像。
        镜像按固定顺序逐个拉取，拉取失败时异常直接抛出，状态停在对应的拉取阶段。

        Returns:
            ReadinessState: 结束时的启动状态
        """
        if not await self.runtime.test_daemon():
            self._advance(ReadinessState.NO_RUNTIME)
            logger.error("Container runtime is not responding")
            return self.readiness

        self._advance(ReadinessState.SCANNING_PROJECTS)
        for project in await self.store.retrieve_all():
            self.add_status(project)

        for image_key, state in PULL_SEQUENCE:
            self._advance(state)
            await self.runtime.pull(self.images[image_key])

        self._advance(ReadinessState.READY)
        logger.info("Image pull complete")
        return self.readiness

    @property
    def is_ready(self) -> bool:
        return self.readiness == ReadinessState.READY

    def require_ready(self) -> None:
        """确认服务可以接受流水线请求

        Raises:
            RuntimeUnavailableError: 容器运行时不可用
            PreconditionError: 启动尚未完成
        """
        if self.readiness == ReadinessState.NO_RUNTIME:
            raise RuntimeUnavailableError("container runtime is not available")
        if not self.is_ready:
            raise PreconditionError(f"service is not ready ({self.readiness.value})")

    # ===================== 状态表 =====================

    def add_status(self, project: Project) -> None:
        self.status.add(project)

    def _ensure_status(self, project: Project) -> None:
        if project.id not in self.status:
            self.add_status(project)

    async def get_status(self, project_id: str) -> ProjectStatus:
        if project_id not in self.status:
            self._ensure_status(await self.store.retrieve_by_id(project_id))
        return self.status.get(project_id)

    async def update_checkpoints(self, project_id: str) -> Optional[int]:
        """同步检查点，并把当前训练轮数推进到最新检查点"""
        if project_id not in self.status:
            self._ensure_status(await self.store.retrieve_by_id(project_id))
        step = await self.trainer.update_checkpoints(project_id)
        if step is not None:
            await self.status.set_current_epoch(project_id, step)
        return step

    # ===================== 训练 =====================

    def train_steps(self, project_id: str) -> List[Step]:
        """训练流水线的步骤"""
        trainer = self.trainer
        return [
            Step("write parameter file", lambda ctx: trainer.write_parameter_file(project_id)),
            Step("handle old data", lambda ctx: trainer.handle_old_data(project_id)),
            Step("move data to mount", lambda ctx: trainer.move_data_to_mount(project_id)),
            Step("extract dataset", lambda ctx: trainer.extract_dataset(project_id)),
            Step("begin training", lambda ctx: self.status.begin_training(project_id)),
            Step("train model", lambda ctx: trainer.train_model(project_id)),
            Step("update checkpoints", lambda ctx: self.update_checkpoints(project_id)),
            Step("finish training", lambda ctx: self._finish_training(project_id)),
        ]

    async def start(self, project: Union[Project, str]) -> str:
        """运行训练流水线

        只信任传入项目的ID，项目内容重新从存储读取。

        Raises:
            PipelineBusyError: 该项目已有训练流水线在运行
            PreconditionError: 项目上还有训练容器
            NotFoundError: 项目或数据集不存在
            StageError: 某个步骤失败
        """
        project_id = project.id if isinstance(project, Project) else project
        project = await self.store.retrieve_by_id(project_id)

        with self.guard.hold(project_id):
            self._ensure_status(project)
            await self._reset_stale_status(project)

            await self.status.set_last_epoch(project_id, project.hyperparameters.epochs)
            await self.status.transition(project_id, TrainingStatus.PREPARING)

            await run_steps("train", self.train_steps(project_id))

        logger.info(f"Training complete for project {project_id}")
        return "training complete"

    async def _reset_stale_status(self, project: Project) -> None:
        """处理上一次失败的训练留下的状态

        项目上仍有训练容器时拒绝开始；没有容器但状态不是NOT_TRAINING时，
        说明上一次流水线中途失败，直接重置。
        """
        async with self.status.lock(project.id):
            if project.container_ids.train:
                raise PreconditionError(
                    f"training is already running for project {project.id}, halt it first"
                )
            current = self.status.get(project.id).training_status
            if current != TrainingStatus.NOT_TRAINING:
                logger.warning(f"Resetting stale {current.value} status of project {project.id}")
                await self.status.reset(project.id, locked=True)

    async def _finish_training(self, project_id: str) -> None:
        async with self.status.lock(project_id):
            await self.status.transition(project_id, TrainingStatus.NOT_TRAINING, locked=True)
            project = await self.store.retrieve_by_id(project_id)
            project.container_ids.train = None
            await self.store.persist(project)

    # ===================== 导出 =====================

    async def export(self, project_id: str, checkpoint_number: int, name: str) -> str:
        """把检查点导出为模型包

        检查点在导出容器运行期间被标记为"导出中"，无论成功与否都会清除该标记。
        """
        exporter = self.exporter
        step = checkpoint_number
        context = await run_steps("export", [
            Step("locate checkpoint", lambda ctx: exporter.locate_checkpoint(project_id, step)),
            Step("create export", lambda ctx: exporter.create_export(project_id, name, step),
                 result_key="export"),
            Step("create destination directory",
                 lambda ctx: exporter.create_destination_directory(ctx["export"])),
            Step("mark checkpoint in use",
                 lambda ctx: exporter.update_checkpoint_status(project_id, step, True)),
        ])

        try:
            await run_steps("export", [
                Step("write parameter file",
                     lambda ctx: exporter.write_parameter_file(project_id, step, ctx["export"])),
                Step("export checkpoint",
                     lambda ctx: exporter.export_checkpoint(project_id, ctx["export"])),
                Step("save export",
                     lambda ctx: exporter.save_export(project_id, ctx["export"], step)),
            ], context)
        finally:
            await exporter.update_checkpoint_status(project_id, step, False)

        logger.info(f"Exported checkpoint {step} of project {project_id} as {name}")
        return "exported"

    # ===================== 测试 =====================

    def test_steps(self, test_name: str, project_id: str, export_id: str, video_id: str) -> List[Step]:
        tester = self.tester
        return [
            Step("create test",
                 lambda ctx: tester.create_test(test_name, project_id, export_id, video_id),
                 result_key="test"),
            Step("fetch project", lambda ctx: self.store.retrieve_by_id(project_id),
                 result_key="project"),
            Step("mount model", lambda ctx: tester.mount_model(ctx["test"], ctx["project"]),
                 result_key="model_path"),
            Step("mount video", lambda ctx: tester.mount_video(ctx["test"], ctx["project"]),
                 result_key="video_path"),
            Step("write parameter file",
                 lambda ctx: tester.write_parameter_file(ctx["test"], ctx["model_path"], ctx["video_path"])),
            Step("test model", lambda ctx: tester.test_model(project_id, ctx["test"])),
            Step("save output video", lambda ctx: tester.save_output_vid(ctx["test"])),
            Step("save test", lambda ctx: tester.save_test(ctx["test"], project_id)),
        ]

    async def test(self, test_name: str, project_id: str, export_id: str, video_id: str) -> str:
        """在视频上测试导出的模型，不涉及训练状态"""
        await run_steps("test", self.test_steps(test_name, project_id, export_id, video_id))
        logger.info(f"Test {test_name} complete for project {project_id}")
        return "testing complete"

    # ===================== 训练容器控制 =====================

    async def halt(self, project_id: str) -> None:
        """终止训练容器

        Raises:
            PreconditionError: 没有训练容器
        """
        async with self.status.lock(project_id):
            project = await self.store.retrieve_by_id(project_id)
            handle = project.container_ids.train
            if not handle:
                logger.warning(f"Halt rejected for project {project_id}: no trainjob found")
                raise PreconditionError("no trainjob found")

            await self.runtime.kill(handle)
            self._ensure_status(project)
            await self.status.transition(project_id, TrainingStatus.NOT_TRAINING, locked=True)

            project = await self.store.retrieve_by_id(project_id)
            project.container_ids.train = None
            await self.store.persist(project)
        logger.info(f"Halted training for project {project_id}")

    async def pause_training(self, project_id: str) -> None:
        """暂停训练容器

        Raises:
            PreconditionError: 已经暂停，或者没有训练容器
            InvalidTransitionError: 当前不在训练中
        """
        async with self.status.lock(project_id):
            project = await self.store.retrieve_by_id(project_id)
            self._ensure_status(project)
            current = self.status.get(project_id).training_status
            if current == TrainingStatus.PAUSED:
                logger.warning(f"Pause rejected for project {project_id}: already paused")
                raise PreconditionError("training is already paused")
            handle = project.container_ids.train
            if not handle:
                logger.warning(f"Pause rejected for project {project_id}: no trainjob found")
                raise PreconditionError("no trainjob found")
            if not is_valid_transition(current, TrainingStatus.PAUSED):
                raise InvalidTransitionError(f"cannot pause training while {current.value}")

            await self.runtime.pause(handle)
            await self.status.transition(project_id, TrainingStatus.PAUSED, locked=True)
        logger.info(f"Paused training for project {project_id}")

    async def resume_training(self, project_id: str) -> None:
        """恢复已暂停的训练容器

        Raises:
            PreconditionError: 没有暂停，或者没有训练容器
        """
        async with self.status.lock(project_id):
            project = await self.store.retrieve_by_id(project_id)
            self._ensure_status(project)
            if self.status.get(project_id).training_status != TrainingStatus.PAUSED:
                logger.warning(f"Resume rejected for project {project_id}: not paused")
                raise PreconditionError("training is not paused")
            handle = project.container_ids.train
            if not handle:
                logger.warning(f"Resume rejected for project {project_id}: no trainjob found")
                raise PreconditionError("no trainjob found")

            await self.runtime.resume(handle)
            await self.status.transition(project_id, TrainingStatus.TRAINING, locked=True)
        logger.info(f"Resumed training for project {project_id}")

    # ===================== 查询 =====================

    async def get_checkpoints(self, project_id: str) -> List[Checkpoint]:
        project = await self.store.retrieve_by_id(project_id)
        return [project.checkpoints[step] for step in sorted(project.checkpoints)]

    async def get_exports(self, project_id: str) -> List[Export]:
        project = await self.store.retrieve_by_id(project_id)
        return list(project.exports.values())

    async def get_videos(self, project_id: str) -> List[Video]:
        project = await self.store.retrieve_by_id(project_id)
        return list(project.videos.values())

    async def get_tests(self, project_id: str) -> List[Test]:
        project = await self.store.retrieve_by_id(project_id)
        return list(project.tests.values())

    async def get_projects(self) -> List[Dict[str, Any]]:
        """所有项目及其训练状态"""
        rows = []
        for project in await self.store.retrieve_all():
            self._ensure_status(project)
            rows.append({"project": project, "status": self.status.get(project.id)})
        return rows
