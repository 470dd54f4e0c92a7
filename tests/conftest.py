"""
Shared fixtures for axon-mini tests.

Provides an in-memory project store, a scripted container runtime and a
recording trainer so the orchestration service can be driven without Docker.
"""

import asyncio
from typing import Callable, Dict, List, Optional

import pytest

from axon_mini.config import DEFAULT_CONFIG
from axon_mini.db import ProjectStore
from axon_mini.errors import StageError
from axon_mini.runtime import ContainerRuntime
from axon_mini.service import MLService

IMAGES = dict(DEFAULT_CONFIG['images'])


class FakeRuntime(ContainerRuntime):
    """Container runtime double.

    Containers whose image is listed in ``hold_images`` keep running until
    ``finish`` or ``kill`` is called; others exit with ``exit_code`` at once.
    """

    def __init__(self, daemon: bool = True, fail_pull: Optional[str] = None,
                 exit_code: int = 0, on_run: Optional[Callable] = None):
        self.daemon = daemon
        self.fail_pull = fail_pull
        self.exit_code = exit_code
        self.on_run = on_run
        self.hold_images: List[str] = []
        self.calls: List[tuple] = []
        self.pulled: List[str] = []
        self.containers: Dict[str, dict] = {}
        self.pull_hook: Optional[Callable] = None
        self._exits: Dict[str, asyncio.Event] = {}
        self._codes: Dict[str, int] = {}

    async def test_daemon(self) -> bool:
        self.calls.append(("test_daemon",))
        return self.daemon

    async def pull(self, image: str) -> None:
        self.calls.append(("pull", image))
        if self.pull_hook:
            self.pull_hook(image)
        if image == self.fail_pull:
            raise RuntimeError(f"pull of {image} failed")
        self.pulled.append(image)

    async def run(self, image, volumes, name=None, environment=None) -> str:
        handle = f"container-{len(self.containers) + 1}"
        self.calls.append(("run", image))
        self.containers[handle] = {"image": image, "volumes": dict(volumes), "state": "running"}
        self._exits[handle] = asyncio.Event()
        if self.on_run:
            self.on_run(image, volumes)
        if image not in self.hold_images:
            self.finish(handle, self.exit_code)
        return handle

    def finish(self, handle: str, code: int = 0) -> None:
        self._codes[handle] = code
        self.containers[handle]["state"] = "exited"
        self._exits[handle].set()

    def handles_for(self, image: str) -> List[str]:
        return [h for h, c in self.containers.items() if c["image"] == image]

    async def wait(self, handle: str) -> int:
        await self._exits[handle].wait()
        return self._codes[handle]

    async def kill(self, handle: str) -> None:
        self.calls.append(("kill", handle))
        if handle in self.containers and self.containers[handle]["state"] != "exited":
            self.finish(handle, 137)

    async def pause(self, handle: str) -> None:
        self.calls.append(("pause", handle))
        self.containers[handle]["state"] = "paused"

    async def resume(self, handle: str) -> None:
        self.calls.append(("resume", handle))
        self.containers[handle]["state"] = "running"

    async def remove(self, handle: str) -> None:
        self.calls.append(("remove", handle))


class RecordingTrainer:
    """Trainer double that records every step together with the status seen."""

    def __init__(self, runtime: FakeRuntime, store: ProjectStore):
        self.runtime = runtime
        self.store = store
        self.service: Optional[MLService] = None
        self.calls: List[str] = []
        self.seen: List[tuple] = []
        self.latest_step: Optional[int] = None
        self.fail_on: Optional[str] = None
        self.train_started = False

    def _record(self, name: str, project_id: str) -> None:
        self.calls.append(name)
        if self.service is not None and project_id in self.service.status:
            status = self.service.status.get(project_id)
            self.seen.append((name, status.training_status, status.current_epoch))
        if name == self.fail_on:
            raise StageError(f"{name} failed")

    async def write_parameter_file(self, project_id):
        self._record("write_parameter_file", project_id)

    async def handle_old_data(self, project_id):
        self._record("handle_old_data", project_id)

    async def move_data_to_mount(self, project_id):
        self._record("move_data_to_mount", project_id)

    async def extract_dataset(self, project_id):
        self._record("extract_dataset", project_id)

    async def train_model(self, project_id):
        self._record("train_model", project_id)
        handle = await self.runtime.run(IMAGES["train"], {})
        project = await self.store.retrieve_by_id(project_id)
        project.container_ids.train = handle
        await self.store.persist(project)
        self.train_started = True
        status = await self.runtime.wait(handle)
        if status != 0:
            raise StageError(f"train container exited with status {status}")

    async def update_checkpoints(self, project_id):
        self._record("update_checkpoints", project_id)
        return self.latest_step


async def wait_until(condition: Callable[[], bool], limit: int = 200) -> None:
    """Yield to the event loop until ``condition`` holds."""
    for _ in range(limit):
        if condition():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


@pytest.fixture
def store(tmp_path):
    return ProjectStore(':memory:', str(tmp_path / "workdir"))


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def trainer(runtime, store):
    return RecordingTrainer(runtime, store)


@pytest.fixture
def service(runtime, store, trainer):
    svc = MLService(runtime, store, trainer=trainer, images=IMAGES)
    trainer.service = svc
    return svc


@pytest.fixture
def project(store):
    return asyncio.run(store.create_project("power-cells", hyperparameters={"epochs": 50}))
