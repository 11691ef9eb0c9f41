import itertools
import shutil
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from mcp_forge_sandbox.config import SandboxSettings
from mcp_forge_sandbox.containers.execution import CommandExecutor
from mcp_forge_sandbox.containers.lifecycle import ContainerManager
from mcp_forge_sandbox.images.provisioner import ImageProvisioner
from mcp_forge_sandbox.workflow.driver import SandboxRunner

FIXTURES = Path(__file__).parent.parent / "fixtures_data"

Frame = Tuple[Optional[bytes], Optional[bytes]]


@dataclass
class ExecScript:
    """What a fake exec produces: demuxed frames, then an exit code"""
    frames: List[Frame] = field(default_factory=list)
    exit_code: int = 0
    hang: bool = False


class FakeStream:
    """Stands in for the CancellableStream returned by exec_start(stream=True)."""

    def __init__(self, script: ExecScript):
        self.script = script
        self.closed = threading.Event()

    def __iter__(self):
        for frame in self.script.frames:
            yield frame
        if self.script.hang:
            self.closed.wait(timeout=10)

    def close(self):
        self.closed.set()


class FakeContainer:
    def __init__(self, engine: "FakeDockerClient", name: str, image: str, **kwargs):
        self.engine = engine
        self.name = name
        self.id = f"id-{name}"
        self.image = image
        self.options = kwargs
        self.labels = kwargs.get("labels") or {}
        self.status = "created"

    def start(self):
        if self.engine.fail_start:
            raise APIError("start failed")
        self.status = self.engine.start_status

    def stop(self, timeout=None):
        self.engine.calls.append(("stop", self.name, timeout))
        self.status = "exited"

    def remove(self, force=False):
        self.engine.calls.append(("remove", self.name, force))
        self.engine.containers_by_name.pop(self.name, None)


class FakeImages:
    def __init__(self, engine: "FakeDockerClient"):
        self.engine = engine

    def get(self, tag):
        if tag not in self.engine.present:
            raise ImageNotFound(f"No such image: {tag}")
        return tag

    def remove(self, tag, force=False):
        self.engine.calls.append(("image_remove", tag))
        self.engine.present.discard(tag)

    def prune(self, filters=None):
        self.engine.calls.append(("image_prune", filters))
        return {"ImagesDeleted": None}


class FakeContainers:
    def __init__(self, engine: "FakeDockerClient"):
        self.engine = engine

    def create(self, image, command=None, name=None, **kwargs):
        if self.engine.fail_create:
            raise APIError("create failed")
        container = FakeContainer(self.engine, name, image, command=command, **kwargs)
        self.engine.containers_by_name[name] = container
        self.engine.created.append(container)
        return container

    def get(self, name):
        try:
            return self.engine.containers_by_name[name]
        except KeyError:
            raise NotFound(f"No such container: {name}")

    def list(self, all=False, filters=None):
        label = (filters or {}).get("label")
        return [
            c for c in self.engine.containers_by_name.values() if label is None or label in c.labels
        ]

    def prune(self):
        self.engine.calls.append(("container_prune",))
        return {"ContainersDeleted": None}


class FakeNetworks:
    def __init__(self, engine: "FakeDockerClient"):
        self.engine = engine

    def prune(self):
        self.engine.calls.append(("network_prune",))
        return {"NetworksDeleted": None}


class FakeAPI:
    def __init__(self, engine: "FakeDockerClient"):
        self.engine = engine
        self._ids = itertools.count(1)
        self._execs: Dict[str, ExecScript] = {}

    def exec_create(self, container, cmd, stdout=True, stderr=True, workdir=None, environment=None):
        if self.engine.fail_exec_create:
            raise APIError("exec create failed")
        self.engine.commands.append(list(cmd))
        exec_id = f"exec-{next(self._ids)}"
        self._execs[exec_id] = self.engine.exec_handler(list(cmd))
        return {"Id": exec_id}

    def exec_start(self, exec_id, stream=False, demux=False):
        stream_obj = FakeStream(self._execs[exec_id])
        self.engine.streams.append(stream_obj)
        return stream_obj

    def exec_inspect(self, exec_id):
        if self.engine.fail_inspect:
            raise APIError("inspect failed")
        return {"ExitCode": self._execs[exec_id].exit_code, "Running": False}

    def prune_builds(self):
        self.engine.calls.append(("build_prune",))
        return {"SpaceReclaimed": 0}


def succeed_everything(argv: List[str]) -> ExecScript:
    return ExecScript()


class FakeDockerClient:
    """In-memory subset of docker.DockerClient used by the sandbox engine."""

    def __init__(self):
        self.present = set()
        self.containers_by_name: Dict[str, FakeContainer] = {}
        self.created: List[FakeContainer] = []
        self.commands: List[List[str]] = []
        self.streams: List[FakeStream] = []
        self.calls: List[tuple] = []
        self.pings = 0
        self.exec_handler: Callable[[List[str]], ExecScript] = succeed_everything
        self.ping_fails = False
        self.fail_create = False
        self.fail_start = False
        self.fail_exec_create = False
        self.fail_inspect = False
        self.start_status = "running"

        self.images = FakeImages(self)
        self.containers = FakeContainers(self)
        self.networks = FakeNetworks(self)
        self.api = FakeAPI(self)

    def ping(self):
        self.pings += 1
        if self.ping_fails:
            raise DockerException("Error while fetching server API version")
        return True

    def live_containers(self) -> List[str]:
        return list(self.containers_by_name)


@pytest.fixture
def engine() -> FakeDockerClient:
    return FakeDockerClient()


@pytest.fixture
def settings(tmp_path) -> SandboxSettings:
    build_context = tmp_path / "build"
    build_context.mkdir()
    (build_context / "Dockerfile").write_text("FROM scratch\n")
    (build_context / "docker-compose.yml").write_text("services: {}\n")
    return SandboxSettings(
        build_context=build_context,
        start_wait=0,
        stop_grace=0,
        flush_grace=0.5,
        test_timeout=5,
        install_timeout=5,
    )


@pytest.fixture
def foundry_project(tmp_path) -> Path:
    """Writable copy of the fixture Foundry project"""
    target = tmp_path / "foundry-project"
    shutil.copytree(FIXTURES / "foundry-project", target)
    return target


@pytest.fixture
def fake_build(engine, monkeypatch):
    """Replace the docker CLI build with one that just registers the tag."""
    builds = []

    async def run_build(argv, cwd, on_line=None):
        tag = argv[argv.index("-t") + 1]
        builds.append(tag)
        if on_line is not None:
            on_line(f"Successfully tagged {tag}")
        engine.present.add(tag)
        return 0, [f"Successfully tagged {tag}"]

    monkeypatch.setattr("mcp_forge_sandbox.images.provisioner.run_build", run_build)
    return builds


@pytest_asyncio.fixture
async def runner(engine, settings) -> SandboxRunner:
    return SandboxRunner(
        settings,
        ImageProvisioner(engine, settings),
        ContainerManager(engine, settings),
        CommandExecutor(engine, settings),
    )
