"""Tests for the export and test pipelines with the real stage executors."""

import asyncio
import json
import os
import shutil

import pydantic
import pytest

from axon_mini.errors import NotFoundError, PreconditionError, StageError
from axon_mini.models import Checkpoint, Export
from axon_mini.stages import tester as tester_module
from axon_mini.stages.base import EXPORT_MOUNT, TEST_MOUNT
from axon_mini.states import TrainingStatus
from tests.conftest import IMAGES, wait_until


def _add_checkpoint(store, project, step):
    async def scenario():
        stored = await store.retrieve_by_id(project.id)
        stored.checkpoints[step] = Checkpoint(step=step, metrics={"precision": 0.5})
        await store.persist(stored)

    checkpoint_dir = os.path.join(project.directory, "train", "checkpoints")
    os.makedirs(checkpoint_dir, exist_ok=True)
    with open(os.path.join(checkpoint_dir, f"model.ckpt-{step}.index"), "w") as f:
        f.write("index")
    asyncio.run(scenario())


def _write_archive(export_name):
    """on_run hook that fakes the export container output."""
    def on_run(image, volumes):
        if image != IMAGES["export"]:
            return
        for host, target in volumes.items():
            if target == EXPORT_MOUNT:
                with open(os.path.join(host, f"{export_name}.tar.gz"), "wb") as f:
                    f.write(b"model")
    return on_run


def _write_inference(image, volumes):
    if image != IMAGES["test"]:
        return
    for host, target in volumes.items():
        if target == TEST_MOUNT:
            with open(os.path.join(host, "inference.mp4"), "wb") as f:
                f.write(b"video")


class TestExport:
    """Tests for MLService.export."""

    def test_export_checkpoint(self, service, store, runtime, project):
        _add_checkpoint(store, project, 10)
        runtime.on_run = _write_archive("power-cells-v1")

        result = asyncio.run(service.export(project.id, 10, "power-cells-v1"))

        assert result == "exported"
        saved = asyncio.run(store.retrieve_by_id(project.id))
        assert len(saved.exports) == 1
        export = next(iter(saved.exports.values()))
        assert export.name == "power-cells-v1"
        assert export.checkpoint_step == 10
        assert os.path.isfile(export.tar_path)
        assert saved.checkpoints[10].export_ids == [export.id]
        assert saved.checkpoints[10].exporting is False
        assert saved.container_ids.export is None

        with open(os.path.join(export.directory, "exportparameters.json")) as f:
            parameters = json.load(f)
        assert parameters["epochs"] == 10
        assert parameters["export-dir"] == EXPORT_MOUNT

        handle = runtime.handles_for(IMAGES["export"])[0]
        assert ("remove", handle) in runtime.calls

    def test_export_marks_checkpoint_in_use(self, service, store, runtime, project):
        _add_checkpoint(store, project, 10)
        runtime.hold_images.append(IMAGES["export"])

        async def scenario():
            task = asyncio.create_task(service.export(project.id, 10, "v1"))
            await wait_until(lambda: runtime.handles_for(IMAGES["export"]))
            during = (await store.retrieve_by_id(project.id)).checkpoints[10].exporting
            runtime.finish(runtime.handles_for(IMAGES["export"])[0], 1)
            with pytest.raises(StageError):
                await task
            after = (await store.retrieve_by_id(project.id)).checkpoints[10].exporting
            return during, after

        assert asyncio.run(scenario()) == (True, False)

    def test_failed_export_clears_guard(self, service, store, runtime, project):
        _add_checkpoint(store, project, 10)
        runtime.exit_code = 1

        with pytest.raises(StageError) as exc_info:
            asyncio.run(service.export(project.id, 10, "v1"))

        assert exc_info.value.step == "export checkpoint"
        saved = asyncio.run(store.retrieve_by_id(project.id))
        assert saved.checkpoints[10].exporting is False
        assert saved.exports == {}

    def test_missing_archive_is_stage_error(self, service, store, project):
        _add_checkpoint(store, project, 10)

        with pytest.raises(StageError) as exc_info:
            asyncio.run(service.export(project.id, 10, "v1"))

        assert exc_info.value.step == "save export"
        saved = asyncio.run(store.retrieve_by_id(project.id))
        assert saved.checkpoints[10].exporting is False

    @pytest.mark.parametrize("name", ["releases/v1", "..\\v1", ".."])
    def test_export_name_with_path_separator(self, service, store, runtime, project, name):
        _add_checkpoint(store, project, 10)

        with pytest.raises(PreconditionError, match="invalid export name"):
            asyncio.run(service.export(project.id, 10, name))

        saved = asyncio.run(store.retrieve_by_id(project.id))
        assert saved.checkpoints[10].exporting is False
        assert saved.exports == {}
        assert runtime.handles_for(IMAGES["export"]) == []

    def test_export_model_rejects_path_names(self):
        with pytest.raises(pydantic.ValidationError):
            Export(id="e1", name="a/b", project_id="p1", checkpoint_step=1, directory="/tmp/e1")
        assert Export(id="e1", name=" v1 ", project_id="p1", checkpoint_step=1,
                      directory="/tmp/e1").name == "v1"

    def test_unknown_checkpoint(self, service, runtime, project):
        with pytest.raises(NotFoundError):
            asyncio.run(service.export(project.id, 99, "v1"))
        assert runtime.handles_for(IMAGES["export"]) == []

    def test_export_does_not_touch_training_status(self, service, store, runtime, project):
        _add_checkpoint(store, project, 10)
        runtime.on_run = _write_archive("v1")

        asyncio.run(service.export(project.id, 10, "v1"))

        assert service.status.ids() == []
        assert asyncio.run(service.get_status(project.id)).training_status == TrainingStatus.NOT_TRAINING


class TestTest:
    """Tests for MLService.test."""

    @pytest.fixture
    def prepared(self, store, project, tmp_path):
        video_file = tmp_path / "match.mp4"
        video_file.write_bytes(b"raw video")

        async def scenario():
            video = await store.add_video(project.id, "qualification match", str(video_file))
            stored = await store.retrieve_by_id(project.id)
            export_dir = os.path.join(project.directory, "exports", "e1")
            os.makedirs(export_dir, exist_ok=True)
            tar_path = os.path.join(export_dir, "v1.tar.gz")
            with open(tar_path, "wb") as f:
                f.write(b"model")
            stored.exports["e1"] = Export(id="e1", name="v1", project_id=project.id,
                                          checkpoint_step=10, directory=export_dir,
                                          tar_path=tar_path)
            await store.persist(stored)
            return video

        return asyncio.run(scenario())

    def test_test_export_on_video(self, service, store, runtime, project, prepared):
        runtime.on_run = _write_inference

        result = asyncio.run(service.test("night run", project.id, "e1", prepared.id))

        assert result == "testing complete"
        tests = asyncio.run(service.get_tests(project.id))
        assert len(tests) == 1
        test = tests[0]
        assert test.name == "night run"
        assert os.path.isfile(test.output_video)
        assert os.path.isfile(os.path.join(test.directory, "v1.tar.gz"))
        assert os.path.isfile(os.path.join(test.directory, prepared.filename))

        with open(os.path.join(test.directory, "testparameters.json")) as f:
            parameters = json.load(f)
        assert parameters == {
            "test-video": f"{TEST_MOUNT}/{prepared.filename}",
            "model-tar": f"{TEST_MOUNT}/v1.tar.gz",
        }
        saved = asyncio.run(store.retrieve_by_id(project.id))
        assert saved.container_ids.test is None

    def test_unknown_video(self, service, project, prepared):
        with pytest.raises(NotFoundError):
            asyncio.run(service.test("night run", project.id, "e1", "missing"))

    def test_unknown_export(self, service, project, prepared):
        with pytest.raises(NotFoundError):
            asyncio.run(service.test("night run", project.id, "missing", prepared.id))

    def test_missing_output_video(self, service, project, prepared):
        with pytest.raises(StageError) as exc_info:
            asyncio.run(service.test("night run", project.id, "e1", prepared.id))
        assert exc_info.value.step == "save output video"
        assert asyncio.run(service.get_tests(project.id)) == []

    def test_mounts_copy_off_the_event_loop(self, service, runtime, project, prepared, monkeypatch):
        runtime.on_run = _write_inference
        offloaded = []
        original = asyncio.to_thread

        async def recording_to_thread(func, *args, **kwargs):
            offloaded.append(func)
            return await original(func, *args, **kwargs)

        monkeypatch.setattr(tester_module.asyncio, "to_thread", recording_to_thread)

        asyncio.run(service.test("night run", project.id, "e1", prepared.id))

        assert offloaded == [shutil.copyfile, shutil.copyfile]
