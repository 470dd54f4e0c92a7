"""数据库模块"""
from .models import define_entities
from .operations import (
    init_db,
    get_project,
    list_projects,
    save_project,
    delete_project,
)
from .store import ProjectStore
