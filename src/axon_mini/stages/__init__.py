"""阶段执行器"""
from .base import StageExecutor
from .trainer import Trainer
from .exporter import Exporter
from .tester import Tester
