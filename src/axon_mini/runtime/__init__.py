"""容器运行时模块"""
from .base import ContainerRuntime
from .docker_runtime import DockerRuntime, retry_on_error
