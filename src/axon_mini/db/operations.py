"""数据库操作函数"""
import os
from datetime import datetime
from typing import Any, Dict, List, Optional
from pony.orm import Database, db_session

from .models import define_entities

MAPPING_FIELDS = ('container_ids', 'checkpoints', 'exports', 'videos', 'tests')


def init_db(filename: str = 'axon_mini.sqlite'):
    """初始化数据库

    Returns:
        (db, ProjectRecord)
    """
    db = Database()
    entity = define_entities(db)
    if filename != ':memory:':
        filename = os.path.abspath(filename)
        os.makedirs(os.path.dirname(filename), exist_ok=True)
    db.bind(provider='sqlite', filename=filename, create_db=True)
    db.generate_mapping(create_tables=True)
    return db, entity


def _to_dict(record) -> Dict[str, Any]:
    data = {
        'id': record.id,
        'name': record.name,
        'directory': record.directory,
        'dataset_path': record.dataset_path,
        'hyperparameters': record.hyperparameters,
    }
    for field in MAPPING_FIELDS:
        data[field] = getattr(record, field) or {}
    return data


@db_session
def get_project(entity, project_id: str) -> Optional[Dict[str, Any]]:
    """获取项目"""
    record = entity.get(id=project_id)
    return _to_dict(record) if record else None


@db_session
def list_projects(entity) -> List[Dict[str, Any]]:
    """列出项目"""
    return [_to_dict(p) for p in entity.select().order_by(entity.created_at)]


@db_session
def save_project(entity, data: Dict[str, Any]) -> None:
    """创建或覆盖项目"""
    record = entity.get(id=data['id'])
    fields = {k: v for k, v in data.items() if k != 'id'}
    if record:
        record.set(updated_at=datetime.utcnow(), **fields)
    else:
        entity(id=data['id'], **fields)


@db_session
def delete_project(entity, project_id: str) -> bool:
    """删除项目"""
    record = entity.get(id=project_id)
    if record:
        record.delete()
        return True
    return False
