"""运行环境配置"""

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """环境变量配置"""
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True)

    # 工作目录，项目、导出和测试文件都放在这里
    WORKDIR: str = "axon-data"

    # 数据库配置
    DATABASE_FILENAME: str = "axon_mini.sqlite"

    # Docker配置，为None时使用环境变量(DOCKER_HOST等)
    DOCKER_BASE_URL: Optional[str] = None

    LOG_LEVEL: Optional[str] = None
    AXON_MINI_CONFIG: Optional[str] = None


settings = Settings()
