"""流水线步骤

每条流水线是一个有序的具名步骤列表，步骤依次await执行。
步骤之间通过上下文字典传递数据：步骤的返回值按result_key写入上下文，
后续步骤从上下文读取。任何一步失败都会终止后续步骤，已经产生的副作用不会回滚。
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Set

from .errors import OrchestratorError, PipelineBusyError, StageError

logger = logging.getLogger(__name__)


@dataclass
class Step:
    """流水线步骤

    Attributes:
        name: 步骤名称，出现在日志和错误信息中
        action: 接收上下文字典的协程函数
        result_key: 返回值写入上下文时使用的键，为None时丢弃返回值
    """
    name: str
    action: Callable[[Dict[str, Any]], Awaitable[Any]]
    result_key: Optional[str] = None


async def run_steps(pipeline: str, steps: Iterable[Step],
                    context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """依次执行步骤

    Args:
        pipeline: 流水线名称
        steps: 步骤列表
        context: 初始上下文

    Returns:
        Dict: 执行完成后的上下文

    Raises:
        OrchestratorError: 步骤抛出的编排异常原样传递(例如NotFoundError)
        StageError: 其他异常统一包装
    """
    context = {} if context is None else context
    for step in steps:
        logger.info(f"[{pipeline}] {step.name}")
        try:
            result = await step.action(context)
        except OrchestratorError as e:
            logger.error(f"[{pipeline}] {step.name} failed: {e}")
            if isinstance(e, StageError) and e.step is None:
                e.pipeline, e.step = pipeline, step.name
            raise
        except Exception as e:
            logger.error(f"[{pipeline}] {step.name} failed: {e}")
            raise StageError(f"{pipeline} step '{step.name}' failed: {e}",
                             pipeline=pipeline, step=step.name) from e
        if step.result_key:
            context[step.result_key] = result
    return context


class PipelineGuard:
    """同一项目同一时间只允许一条训练流水线"""

    def __init__(self):
        self._active: Set[str] = set()

    def is_active(self, project_id: str) -> bool:
        return project_id in self._active

    @contextmanager
    def hold(self, project_id: str):
        """占用项目，结束或失败时释放

        Raises:
            PipelineBusyError: 项目已被占用
        """
        if project_id in self._active:
            raise PipelineBusyError(f"project {project_id} already has a running training pipeline")
        self._active.add(project_id)
        try:
            yield
        finally:
            self._active.discard(project_id)
