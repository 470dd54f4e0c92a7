"""检查点轮询

训练期间定期同步检查点，推进状态表中的当前训练轮数。
"""

import asyncio
import logging
from typing import Optional

from .config import config
from .states import TrainingStatus

logger = logging.getLogger(__name__)


class CheckpointPoller:
    """定期为训练中的项目调用update_checkpoints"""

    def __init__(self, service, interval: Optional[float] = None):
        self.service = service
        self.interval = interval if interval is not None else config.get_polling_config().get('interval', 30)
        self._task: Optional[asyncio.Task] = None

    async def poll_once(self) -> int:
        """轮询一次

        单个项目同步失败只记录日志，不影响其他项目。

        Returns:
            int: 同步成功的项目数
        """
        polled = 0
        for project_id in self.service.status.ids():
            if self.service.status.get(project_id).training_status != TrainingStatus.TRAINING:
                continue
            try:
                await self.service.update_checkpoints(project_id)
                polled += 1
            except Exception as e:
                logger.error(f"Failed to update checkpoints for project {project_id}: {e}")
        return polled

    async def run(self) -> None:
        while True:
            await self.poll_once()
            await asyncio.sleep(self.interval)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
            logger.debug(f"Checkpoint poller started, interval {self.interval}s")
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
