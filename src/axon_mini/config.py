"""配置管理模块

该模块负责加载和管理axon-mini的配置信息，包括：
1. 加载配置文件
2. 提供配置访问接口
3. 配置缺失时回退到默认配置
"""

import os
import copy
import yaml
import logging
from typing import Dict, Any

DATASET_IMAGE = "gcperkins/wpilib-ml-dataset:latest"
METRICS_IMAGE = "gcperkins/wpilib-ml-metrics:latest"
TRAIN_IMAGE = "gcperkins/wpilib-ml-train:latest"
EXPORT_IMAGE = "gcperkins/wpilib-ml-tflite:latest"
TEST_IMAGE = "gcperkins/wpilib-ml-test:latest"

DEFAULT_CONFIG: Dict[str, Any] = {
    'images': {
        'dataset': DATASET_IMAGE,
        'metrics': METRICS_IMAGE,
        'train': TRAIN_IMAGE,
        'export': EXPORT_IMAGE,
        'test': TEST_IMAGE,
    },
    'retry': {
        'default': {
            'max_retries': 3,
            'delay': 1
        },
        'operations': {
            'kill': {'max_retries': 5, 'delay': 1},
            'pause': {'max_retries': 3, 'delay': 1},
            'resume': {'max_retries': 3, 'delay': 1},
        }
    },
    'logging': {
        'level': 'INFO',
        'format': '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    },
    'polling': {
        'interval': 30
    }
}


class Config:
    """配置管理类"""

    def __init__(self):
        self._config = copy.deepcopy(DEFAULT_CONFIG)
        self._logger = logging.getLogger(__name__)

    def load(self, config_path: str = None) -> None:
        """加载配置文件

        Args:
            config_path: 配置文件路径，如果为None则使用默认路径

        Raises:
            yaml.YAMLError: 配置文件格式错误
        """
        if config_path is None:
            config_path = os.environ.get(
                'AXON_MINI_CONFIG',
                os.path.join(os.path.dirname(__file__), '../../config/config.yaml')
            )

        try:
            with open(config_path, 'r') as f:
                loaded = yaml.safe_load(f) or {}
            self._config = _merge(copy.deepcopy(DEFAULT_CONFIG), loaded)
            self._logger.info(f"Loaded configuration from {config_path}")
        except FileNotFoundError:
            self._logger.warning(f"Config file not found: {config_path}, using default configuration")
            self._load_default_config()
        except yaml.YAMLError as e:
            self._logger.error(f"Failed to parse config file: {e}")
            raise

    def _load_default_config(self) -> None:
        """加载默认配置"""
        self._config = copy.deepcopy(DEFAULT_CONFIG)

    def get_retry_config(self, operation: str = None) -> Dict[str, Any]:
        """获取重试配置

        Args:
            operation: 操作类型，如果为None则返回默认配置

        Returns:
            重试配置字典
        """
        retry_config = self._config.get('retry', {})
        if operation:
            return retry_config.get('operations', {}).get(
                operation,
                retry_config.get('default', {})
            )
        return retry_config.get('default', {})

    def get_images_config(self) -> Dict[str, str]:
        """获取镜像配置"""
        return self._config.get('images', {})

    def get_logging_config(self) -> Dict[str, Any]:
        """获取日志配置"""
        return self._config.get('logging', {})

    def get_polling_config(self) -> Dict[str, Any]:
        """获取检查点轮询配置"""
        return self._config.get('polling', {})


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """递归合并配置，override中的值优先"""
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key] = _merge(base[key], value)
        else:
            base[key] = value
    return base

# 全局配置实例
config = Config()
