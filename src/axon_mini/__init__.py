"""axon-mini: 容器化机器学习训练编排"""
from .service import MLService
from .states import ReadinessState, TrainingStatus

__version__ = "0.1.0"
