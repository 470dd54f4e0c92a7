"""测试阶段"""

import asyncio
import logging
import os
import shutil
import uuid

from ..errors import NotFoundError, StageError
from ..models import Project, Test
from .base import TEST_MOUNT, StageExecutor

logger = logging.getLogger(__name__)

TEST_PARAMETER_FILE = "testparameters.json"
OUTPUT_VIDEO = "inference.mp4"


class Tester(StageExecutor):
    """测试阶段执行器"""

    async def create_test(self, name: str, project_id: str, export_id: str, video_id: str) -> Test:
        """创建测试记录

        Raises:
            NotFoundError: 项目、导出或视频不存在
        """
        project = await self.store.retrieve_by_id(project_id)
        if export_id not in project.exports:
            raise NotFoundError(f"export {export_id} not found in project {project_id}")
        if video_id not in project.videos:
            raise NotFoundError(f"video {video_id} not found in project {project_id}")

        test_id = uuid.uuid4().hex[:12]
        directory = os.path.join(project.directory, "tests", test_id)
        os.makedirs(directory, exist_ok=True)
        return Test(
            id=test_id,
            name=name,
            project_id=project_id,
            export_id=export_id,
            video_id=video_id,
            directory=directory
        )

    async def mount_model(self, test: Test, project: Project) -> str:
        export = project.exports[test.export_id]
        if not export.tar_path or not os.path.isfile(export.tar_path):
            raise NotFoundError(f"model archive for export {export.id} not found")
        filename = os.path.basename(export.tar_path)
        await asyncio.to_thread(shutil.copyfile, export.tar_path, os.path.join(test.directory, filename))
        return f"{TEST_MOUNT}/{filename}"

    async def mount_video(self, test: Test, project: Project) -> str:
        video = project.videos[test.video_id]
        if not os.path.isfile(video.path):
            raise NotFoundError(f"video file {video.path} not found")
        await asyncio.to_thread(shutil.copyfile, video.path, os.path.join(test.directory, video.filename))
        return f"{TEST_MOUNT}/{video.filename}"

    async def write_parameter_file(self, test: Test, model_path: str, video_path: str) -> str:
        path = os.path.join(test.directory, TEST_PARAMETER_FILE)
        self.write_json(path, {
            "test-video": video_path,
            "model-tar": model_path,
        })
        return path

    async def test_model(self, project_id: str, test: Test) -> None:
        await self.run_to_completion(project_id, "test", "test", {test.directory: TEST_MOUNT})

    async def save_output_vid(self, test: Test) -> str:
        output = os.path.join(test.directory, OUTPUT_VIDEO)
        if not os.path.isfile(output):
            raise StageError(f"test {test.name} produced no output video")
        test.output_video = output
        return output

    async def save_test(self, test: Test, project_id: str) -> Test:
        project = await self.store.retrieve_by_id(project_id)
        project.tests[test.id] = test
        await self.store.persist(project)
        logger.info(f"Saved test {test.name} ({test.id}) for project {project_id}")
        return test
