"""基于Docker SDK的容器运行时

SDK的调用都是阻塞的，统一放到asyncio.to_thread中执行，
避免长时间的镜像拉取或容器等待阻塞事件循环。
"""

import asyncio
import logging
from functools import wraps
from typing import Dict, Optional

import docker
from docker.errors import APIError, DockerException, NotFound
from docker.utils import parse_repository_tag

from ..config import config
from ..errors import ContainerGoneError, NotFoundError, PreconditionError
from .base import ContainerRuntime

logger = logging.getLogger(__name__)


def retry_on_error(operation='default'):
    """重试装饰器

    Args:
        operation: 操作类型，用于获取对应的重试配置

    Returns:
        装饰器函数

    重试策略：
    1. 服务端错误(5xx): 临时错误，按配置重试
    2. 其他API异常: 直接抛出
    """
    retry_config = config.get_retry_config(operation)
    max_retries = retry_config.get('max_retries', 3)
    delay = retry_config.get('delay', 1)

    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            last_exception = None
            for attempt in range(max_retries):
                try:
                    return await func(*args, **kwargs)
                except APIError as e:
                    if not e.is_server_error():
                        raise
                    last_exception = e
                    logger.warning(
                        f"Docker server error during {operation}, retry "
                        f"{attempt + 1}/{max_retries}: {e}"
                    )
                    await asyncio.sleep(delay * (attempt + 1))
            raise last_exception
        return wrapper
    return decorator


class DockerRuntime(ContainerRuntime):
    """Docker容器运行时"""

    def __init__(self, base_url: Optional[str] = None, client=None):
        self._base_url = base_url
        self._client = client

    @property
    def client(self):
        if self._client is None:
            if self._base_url:
                self._client = docker.DockerClient(base_url=self._base_url)
            else:
                self._client = docker.from_env()
        return self._client

    async def test_daemon(self) -> bool:
        try:
            return bool(await asyncio.to_thread(lambda: self.client.ping()))
        except DockerException as e:
            logger.error(f"Docker daemon is not responding: {e}")
            return False

    async def pull(self, image: str) -> None:
        repository, tag = parse_repository_tag(image)
        logger.info(f"Pulling image {image}")
        await asyncio.to_thread(self.client.images.pull, repository, tag=tag or "latest")
        logger.info(f"Pulled image {image}")

    async def run(self, image: str, volumes: Dict[str, str], name: Optional[str] = None,
                  environment: Optional[Dict[str, str]] = None) -> str:
        binds = {
            host: {"bind": target, "mode": "rw"}
            for host, target in volumes.items()
        }
        container = await asyncio.to_thread(
            self.client.containers.run,
            image,
            detach=True,
            name=name,
            volumes=binds,
            environment=environment or {},
        )
        logger.info(f"Started container {container.id[:12]} from {image}")
        return container.id

    async def wait(self, handle: str) -> int:
        try:
            container = await asyncio.to_thread(self.client.containers.get, handle)
            result = await asyncio.to_thread(container.wait)
        except NotFound:
            raise ContainerGoneError(f"container {handle[:12]} disappeared")
        return int(result.get("StatusCode", -1))

    @retry_on_error(operation='kill')
    async def kill(self, handle: str) -> None:
        try:
            container = await asyncio.to_thread(self.client.containers.get, handle)
            await asyncio.to_thread(container.kill)
        except NotFound:
            logger.info(f"Container {handle[:12]} already deleted")
            return
        except APIError as e:
            if e.status_code == 409:  # 容器已停止
                logger.info(f"Container {handle[:12]} is not running")
                return
            raise
        logger.info(f"Killed container {handle[:12]}")

    @retry_on_error(operation='pause')
    async def pause(self, handle: str) -> None:
        container = await self._get(handle)
        try:
            await asyncio.to_thread(container.pause)
        except APIError as e:
            if e.status_code == 409:
                raise PreconditionError(f"container {handle[:12]} cannot be paused: {e.explanation}")
            raise
        logger.info(f"Paused container {handle[:12]}")

    @retry_on_error(operation='resume')
    async def resume(self, handle: str) -> None:
        container = await self._get(handle)
        try:
            await asyncio.to_thread(container.unpause)
        except APIError as e:
            if e.status_code == 409:
                raise PreconditionError(f"container {handle[:12]} cannot be resumed: {e.explanation}")
            raise
        logger.info(f"Resumed container {handle[:12]}")

    async def remove(self, handle: str) -> None:
        try:
            container = await asyncio.to_thread(self.client.containers.get, handle)
            await asyncio.to_thread(container.remove, force=True)
        except NotFound:
            logger.debug(f"Container {handle[:12]} already removed")

    async def _get(self, handle: str):
        try:
            return await asyncio.to_thread(self.client.containers.get, handle)
        except NotFound:
            raise NotFoundError(f"container {handle[:12]} not found")
