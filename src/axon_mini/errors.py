"""异常定义

所有异常都携带可读的错误信息，由调用方直接展示给用户。
"""


class OrchestratorError(Exception):
    """编排服务异常基类

    用于区分编排服务自身的错误和其他系统错误
    """
    pass


class RuntimeUnavailableError(OrchestratorError):
    """容器运行时不可用

    启动探测失败时抛出，服务保持在NO_RUNTIME状态
    """
    pass


class PreconditionError(OrchestratorError):
    """前置条件不满足

    例如暂停已暂停的训练、终止不存在的训练任务
    """
    pass


class InvalidTransitionError(PreconditionError):
    """非法的状态转换"""
    pass


class PipelineBusyError(PreconditionError):
    """同一项目已有正在运行的训练流水线"""
    pass


class NotFoundError(OrchestratorError):
    """项目、检查点、导出或视频不存在"""
    pass


class StageError(OrchestratorError):
    """流水线步骤执行失败

    Attributes:
        pipeline: 流水线名称
        step: 失败的步骤名称
    """

    def __init__(self, message: str, pipeline: str = None, step: str = None):
        super().__init__(message)
        self.pipeline = pipeline
        self.step = step


class ContainerGoneError(StageError):
    """等待中的容器消失(例如被外部删除)"""
    pass
