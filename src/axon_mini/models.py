"""项目数据模型定义"""

from typing import Dict, Optional, List
from datetime import datetime
from pydantic import BaseModel, Field, field_validator

from .states import TrainingStatus


class Hyperparameters(BaseModel):
    """训练超参数"""
    epochs: int = Field(1000, ge=1, description="训练的目标轮数")
    batch_size: int = Field(32, ge=1, description="批大小")
    eval_frequency: int = Field(1, ge=1, description="每隔多少轮评估一次")
    percent_evaluated: int = Field(50, ge=1, le=100, description="用于评估的数据比例")
    checkpoint: str = Field("default", description="起始检查点,default表示从预训练模型开始")


class ContainerIDs(BaseModel):
    """项目当前运行的容器句柄"""
    train: Optional[str] = Field(None, description="训练容器")
    export: Optional[str] = Field(None, description="导出容器")
    test: Optional[str] = Field(None, description="测试容器")


class Checkpoint(BaseModel):
    """训练检查点"""
    step: int = Field(..., ge=0, description="检查点对应的训练轮数")
    metrics: Dict[str, float] = Field(default_factory=dict, description="评估指标")
    exporting: bool = Field(False, description="是否正在被导出使用")
    export_ids: List[str] = Field(default_factory=list, description="由该检查点生成的导出")


class Export(BaseModel):
    """检查点导出结果"""
    id: str = Field(..., description="导出ID")
    name: str = Field(..., description="导出名称")
    project_id: str = Field(..., description="所属项目")
    checkpoint_step: int = Field(..., description="来源检查点")
    directory: str = Field(..., description="导出目录")
    tar_path: Optional[str] = Field(None, description="导出的模型包路径")
    created: datetime = Field(default_factory=datetime.utcnow, description="创建时间")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        if not v or not v.strip():
            raise ValueError("export name cannot be empty")
        v = v.strip()
        # 名称用作模型包文件名
        if "/" in v or "\\" in v or v in (".", ".."):
            raise ValueError("export name cannot contain path separators")
        return v


class Video(BaseModel):
    """测试用视频"""
    id: str = Field(..., description="视频ID")
    name: str = Field(..., description="视频名称")
    filename: str = Field(..., description="文件名")
    path: str = Field(..., description="文件路径")


class Test(BaseModel):
    """导出模型在视频上的测试"""
    id: str = Field(..., description="测试ID")
    name: str = Field(..., description="测试名称")
    project_id: str = Field(..., description="所属项目")
    export_id: str = Field(..., description="被测试的导出")
    video_id: str = Field(..., description="输入视频")
    directory: str = Field(..., description="测试目录")
    output_video: Optional[str] = Field(None, description="输出视频路径")
    created: datetime = Field(default_factory=datetime.utcnow, description="创建时间")

    # 避免pytest把该模型当作测试类收集
    __test__ = False


class Project(BaseModel):
    """训练项目"""
    id: str = Field(..., description="项目ID")
    name: str = Field(..., description="项目名称")
    directory: str = Field(..., description="项目目录")
    dataset_path: Optional[str] = Field(None, description="数据集压缩包路径")
    hyperparameters: Hyperparameters = Field(default_factory=Hyperparameters, description="超参数")
    container_ids: ContainerIDs = Field(default_factory=ContainerIDs, description="容器句柄")
    checkpoints: Dict[int, Checkpoint] = Field(default_factory=dict, description="检查点")
    exports: Dict[str, Export] = Field(default_factory=dict, description="导出")
    videos: Dict[str, Video] = Field(default_factory=dict, description="视频")
    tests: Dict[str, Test] = Field(default_factory=dict, description="测试")

    @field_validator("id")
    @classmethod
    def validate_id(cls, v):
        if not v or not v.strip():
            raise ValueError("project id cannot be empty")
        return v


class ProjectStatus(BaseModel):
    """项目训练状态"""
    training_status: TrainingStatus = Field(TrainingStatus.NOT_TRAINING, description="训练状态")
    current_epoch: int = Field(0, ge=0, description="当前训练轮数")
    last_epoch: int = Field(0, ge=0, description="目标训练轮数")
