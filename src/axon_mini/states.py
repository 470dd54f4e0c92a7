"""状态机定义

包含两个状态机：
1. ReadinessState - 服务启动进度，只能向前推进
2. TrainingStatus - 单个项目的训练状态

以及保存所有项目训练状态的StatusTable。
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from enum import Enum
from typing import Dict, Set, List, TYPE_CHECKING

from .errors import InvalidTransitionError, NotFoundError

if TYPE_CHECKING:
    from .models import Project, ProjectStatus

logger = logging.getLogger(__name__)


class ReadinessState(str, Enum):
    """服务启动状态"""
    NO_RUNTIME = "no_runtime"
    SCANNING_RUNTIME = "scanning_runtime"
    SCANNING_PROJECTS = "scanning_projects"
    PULL_DATASET_IMAGE = "pull_dataset_image"
    PULL_METRICS_IMAGE = "pull_metrics_image"
    PULL_TRAIN_IMAGE = "pull_train_image"
    PULL_EXPORT_IMAGE = "pull_export_image"
    PULL_TEST_IMAGE = "pull_test_image"
    READY = "ready"


# 镜像拉取顺序，键与配置中images的键一致
PULL_SEQUENCE = [
    ("dataset", ReadinessState.PULL_DATASET_IMAGE),
    ("metrics", ReadinessState.PULL_METRICS_IMAGE),
    ("train", ReadinessState.PULL_TRAIN_IMAGE),
    ("export", ReadinessState.PULL_EXPORT_IMAGE),
    ("test", ReadinessState.PULL_TEST_IMAGE),
]

READINESS_TRANSITIONS: Dict[ReadinessState, Set[ReadinessState]] = {
    ReadinessState.SCANNING_RUNTIME: {
        ReadinessState.NO_RUNTIME,
        ReadinessState.SCANNING_PROJECTS
    },
    ReadinessState.SCANNING_PROJECTS: {ReadinessState.PULL_DATASET_IMAGE},
    ReadinessState.PULL_DATASET_IMAGE: {ReadinessState.PULL_METRICS_IMAGE},
    ReadinessState.PULL_METRICS_IMAGE: {ReadinessState.PULL_TRAIN_IMAGE},
    ReadinessState.PULL_TRAIN_IMAGE: {ReadinessState.PULL_EXPORT_IMAGE},
    ReadinessState.PULL_EXPORT_IMAGE: {ReadinessState.PULL_TEST_IMAGE},
    ReadinessState.PULL_TEST_IMAGE: {ReadinessState.READY},
    ReadinessState.NO_RUNTIME: set(),  # 终止
    ReadinessState.READY: set(),       # 终止
}


class TrainingStatus(str, Enum):
    """项目训练状态"""
    NOT_TRAINING = "not_training"
    PREPARING = "preparing"
    TRAINING = "training"
    PAUSED = "paused"


# halt可以从任意状态回到NOT_TRAINING
TRAINING_TRANSITIONS: Dict[TrainingStatus, Set[TrainingStatus]] = {
    TrainingStatus.NOT_TRAINING: {TrainingStatus.PREPARING},
    TrainingStatus.PREPARING: {
        TrainingStatus.TRAINING,
        TrainingStatus.NOT_TRAINING
    },
    TrainingStatus.TRAINING: {
        TrainingStatus.PAUSED,
        TrainingStatus.NOT_TRAINING
    },
    TrainingStatus.PAUSED: {
        TrainingStatus.TRAINING,
        TrainingStatus.NOT_TRAINING
    },
}


def advance_readiness(current: ReadinessState, target: ReadinessState) -> ReadinessState:
    """推进启动状态

    Raises:
        InvalidTransitionError: 状态回退、跳跃或离开终止状态
    """
    if target not in READINESS_TRANSITIONS.get(current, set()):
        raise InvalidTransitionError(
            f"invalid readiness transition {current.value} -> {target.value}"
        )
    return target


def is_valid_transition(current: TrainingStatus, target: TrainingStatus) -> bool:
    """检查训练状态转换是否合法，相同状态视为合法"""
    return current == target or target in TRAINING_TRANSITIONS.get(current, set())


class StatusTable:
    """项目训练状态表

    服务实例独占，以项目ID为键。每个项目一把asyncio.Lock，
    所有写操作都在该锁内完成，保证同一项目的修改串行执行。
    需要"检查-执行-写入"的控制操作可以通过lock()持有锁，
    再调用带locked=True的方法。
    """

    def __init__(self):
        self._status: Dict[str, "ProjectStatus"] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, project_id: str) -> asyncio.Lock:
        if project_id not in self._locks:
            self._locks[project_id] = asyncio.Lock()
        return self._locks[project_id]

    @asynccontextmanager
    async def lock(self, project_id: str):
        """持有指定项目的状态锁"""
        async with self._lock_for(project_id):
            yield

    def __contains__(self, project_id: str) -> bool:
        return project_id in self._status

    def ids(self) -> List[str]:
        return list(self._status)

    def add(self, project: "Project") -> None:
        """为项目建立初始状态记录"""
        from .models import ProjectStatus

        self._status[project.id] = ProjectStatus(
            training_status=TrainingStatus.NOT_TRAINING,
            current_epoch=0,
            last_epoch=project.hyperparameters.epochs
        )

    def get(self, project_id: str) -> "ProjectStatus":
        """返回状态记录的副本

        Raises:
            NotFoundError: 项目没有状态记录
        """
        return self._record(project_id).model_copy()

    def _record(self, project_id: str) -> "ProjectStatus":
        try:
            return self._status[project_id]
        except KeyError:
            raise NotFoundError(f"no status found for project {project_id}")

    async def transition(self, project_id: str, target: TrainingStatus, locked: bool = False) -> None:
        """转换训练状态

        Args:
            project_id: 项目ID
            target: 目标状态
            locked: 调用方是否已持有该项目的锁

        Raises:
            InvalidTransitionError: 非法的状态转换
        """
        if locked:
            self._transition(project_id, target)
            return
        async with self._lock_for(project_id):
            self._transition(project_id, target)

    def _transition(self, project_id: str, target: TrainingStatus) -> None:
        record = self._record(project_id)
        current = record.training_status
        if not is_valid_transition(current, target):
            raise InvalidTransitionError(
                f"project {project_id} cannot go from {current.value} to {target.value}"
            )
        if current != target:
            logger.info(f"Project {project_id}: {current.value} -> {target.value}")
        record.training_status = target

    async def reset(self, project_id: str, locked: bool = False) -> None:
        """不经过转换表直接回到NOT_TRAINING"""
        if locked:
            self._record(project_id).training_status = TrainingStatus.NOT_TRAINING
            return
        async with self._lock_for(project_id):
            self._record(project_id).training_status = TrainingStatus.NOT_TRAINING

    async def begin_training(self, project_id: str) -> None:
        """PREPARING -> TRAINING，同时把当前轮数清零"""
        async with self._lock_for(project_id):
            self._transition(project_id, TrainingStatus.TRAINING)
            self._record(project_id).current_epoch = 0

    async def set_current_epoch(self, project_id: str, epoch: int) -> bool:
        """推进当前训练轮数

        只在TRAINING状态下向前推进，重复的值不会产生修改。

        Returns:
            bool: 是否发生了更新
        """
        async with self._lock_for(project_id):
            record = self._record(project_id)
            if record.training_status != TrainingStatus.TRAINING:
                return False
            if epoch <= record.current_epoch:
                return False
            record.current_epoch = epoch
            return True

    async def set_last_epoch(self, project_id: str, epoch: int) -> None:
        async with self._lock_for(project_id):
            self._record(project_id).last_epoch = epoch
