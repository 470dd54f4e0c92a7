"""项目存储

提供编排服务使用的项目读写接口：
1. retrieve_all - 列出全部项目
2. retrieve_by_id - 按ID获取项目，不存在时抛出NotFoundError
3. persist - 保存项目
以及CLI使用的项目创建和视频上传。
"""

import asyncio
import logging
import os
import shutil
import uuid
from typing import Dict, Any, List, Optional

from ..errors import NotFoundError
from ..models import Hyperparameters, Project, Video
from .operations import delete_project, get_project, init_db, list_projects, save_project

logger = logging.getLogger(__name__)


class ProjectStore:
    """基于pony/SQLite的项目存储"""

    def __init__(self, filename: str = 'axon_mini.sqlite', workdir: str = 'axon-data'):
        self.db, self._entity = init_db(filename)
        self.workdir = os.path.abspath(workdir)

    async def retrieve_all(self) -> List[Project]:
        return [Project.model_validate(data) for data in list_projects(self._entity)]

    async def retrieve_by_id(self, project_id: str) -> Project:
        data = get_project(self._entity, project_id)
        if data is None:
            raise NotFoundError(f"project {project_id} not found")
        return Project.model_validate(data)

    async def persist(self, project: Project) -> None:
        save_project(self._entity, project.model_dump(mode='json'))
        logger.debug(f"Persisted project {project.id}")

    async def delete(self, project_id: str) -> None:
        if not delete_project(self._entity, project_id):
            raise NotFoundError(f"project {project_id} not found")

    async def create_project(self, name: str, dataset_path: Optional[str] = None,
                             hyperparameters: Optional[Dict[str, Any]] = None) -> Project:
        """创建项目并建立项目目录

        Args:
            name: 项目名称
            dataset_path: 数据集压缩包路径
            hyperparameters: 超参数，未给出的使用默认值

        Returns:
            Project: 新建的项目
        """
        project_id = uuid.uuid4().hex[:12]
        directory = os.path.join(self.workdir, 'projects', project_id)
        os.makedirs(directory, exist_ok=True)
        project = Project(
            id=project_id,
            name=name,
            directory=directory,
            dataset_path=os.path.abspath(dataset_path) if dataset_path else None,
            hyperparameters=Hyperparameters(**(hyperparameters or {}))
        )
        await self.persist(project)
        logger.info(f"Created project {name} ({project_id})")
        return project

    async def add_video(self, project_id: str, name: str, path: str) -> Video:
        """把视频复制到项目目录并登记

        Raises:
            NotFoundError: 项目或视频文件不存在
        """
        project = await self.retrieve_by_id(project_id)
        if not os.path.isfile(path):
            raise NotFoundError(f"video file {path} not found")

        video_id = uuid.uuid4().hex[:12]
        filename = os.path.basename(path)
        videos_dir = os.path.join(project.directory, 'videos')
        os.makedirs(videos_dir, exist_ok=True)
        destination = os.path.join(videos_dir, f"{video_id}-{filename}")
        await asyncio.to_thread(shutil.copyfile, path, destination)

        # 复制期间项目可能被其他协程修改，重新读取后再登记
        project = await self.retrieve_by_id(project_id)
        video = Video(id=video_id, name=name, filename=filename, path=destination)
        project.videos[video_id] = video
        await self.persist(project)
        logger.info(f"Added video {name} to project {project_id}")
        return video
