"""容器运行时接口"""

from abc import ABC, abstractmethod
from typing import Dict, Optional


class ContainerRuntime(ABC):
    """编排服务所需的最小容器控制接口

    容器句柄是运行时返回的不透明字符串，会被缓存在项目记录上。
    """

    @abstractmethod
    async def test_daemon(self) -> bool:
        """探测运行时是否可用"""

    @abstractmethod
    async def pull(self, image: str) -> None:
        """拉取镜像，镜像已存在时不做任何事"""

    @abstractmethod
    async def run(self, image: str, volumes: Dict[str, str], name: Optional[str] = None,
                  environment: Optional[Dict[str, str]] = None) -> str:
        """后台启动容器

        Args:
            image: 镜像
            volumes: 宿主机路径 -> 容器内路径
            name: 容器名称
            environment: 环境变量

        Returns:
            str: 容器句柄
        """

    @abstractmethod
    async def wait(self, handle: str) -> int:
        """等待容器退出并返回退出码

        Raises:
            ContainerGoneError: 等待过程中容器消失
        """

    @abstractmethod
    async def kill(self, handle: str) -> None:
        """终止容器，容器已不存在或已停止时视为成功"""

    @abstractmethod
    async def pause(self, handle: str) -> None:
        """暂停容器"""

    @abstractmethod
    async def resume(self, handle: str) -> None:
        """恢复已暂停的容器"""

    @abstractmethod
    async def remove(self, handle: str) -> None:
        """删除已退出的容器，容器不存在时视为成功"""
