"""数据库模型定义"""
from datetime import datetime
from pony.orm import Database, Required, Optional as PonyOptional, PrimaryKey, Json


def define_entities(db: Database):
    """在给定的Database上定义实体

    每个ProjectStore绑定自己的Database，因此实体按实例定义。
    """

    class ProjectRecord(db.Entity):
        """项目实体"""
        _table_ = 'projects'

        id = PrimaryKey(str)
        name = Required(str)
        directory = Required(str)
        dataset_path = PonyOptional(str, nullable=True)
        hyperparameters = Required(Json)
        container_ids = PonyOptional(Json)  # 角色 -> 容器句柄
        checkpoints = PonyOptional(Json)
        exports = PonyOptional(Json)
        videos = PonyOptional(Json)
        tests = PonyOptional(Json)
        created_at = Required(datetime, default=lambda: datetime.utcnow())
        updated_at = Required(datetime, default=lambda: datetime.utcnow())

    return ProjectRecord
