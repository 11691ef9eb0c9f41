import os
import re

import pytest

from mcp_forge_sandbox.config import SandboxSettings
from mcp_forge_sandbox.containers.lifecycle import (
    HOST_USER_HOME,
    KEEPALIVE_COMMAND,
    SANDBOX_LABEL,
    ContainerManager,
    ContainerSlot,
    generate_container_name,
    host_user,
)
from mcp_forge_sandbox.errors import (
    ConfigurationError,
    ContainerLifecycleError,
    ContainerStartError,
    DockerUnavailableError,
)
from mcp_forge_sandbox.types import ContainerState

IMAGE = "foundry-sandbox:latest"


@pytest.fixture
def manager(engine, settings):
    engine.present.add(IMAGE)
    return ContainerManager(engine, settings)


def test_generated_names_are_unique():
    names = {generate_container_name() for _ in range(50)}
    assert len(names) == 50
    assert all(re.match(r"^forge-sandbox-\d+-\w+$", name) for name in names)


@pytest.mark.asyncio
async def test_create_binds_project(manager, engine, foundry_project):
    context = await manager.create(IMAGE, foundry_project)

    assert context.state == ContainerState.RUNNING
    assert context.is_live
    assert context.workdir == "/workspace"
    container = engine.containers_by_name[context.name]
    assert container.options["command"] == KEEPALIVE_COMMAND
    assert container.options["volumes"] == {str(foundry_project): {"bind": "/workspace", "mode": "rw"}}
    assert container.options["working_dir"] == "/workspace"
    assert container.options["auto_remove"] is False
    assert container.options["environment"]["NODE_NO_WARNINGS"] == "1"
    assert await manager.list_live() == [context.name]


@pytest.mark.asyncio
@pytest.mark.skipif(not hasattr(os, "getuid"), reason="no POSIX user ids")
async def test_create_runs_as_host_user(manager, engine, foundry_project):
    context = await manager.create(IMAGE, foundry_project)

    container = engine.containers_by_name[context.name]
    assert container.options["user"] == f"{os.getuid()}:{os.getgid()}"
    assert container.options["user"] == host_user()
    assert container.options["environment"]["HOME"] == HOST_USER_HOME


@pytest.mark.asyncio
async def test_create_as_image_user_when_disabled(engine, settings, foundry_project):
    engine.present.add(IMAGE)
    settings = SandboxSettings(start_wait=0, stop_grace=0, run_as_host_user=False)
    manager = ContainerManager(engine, settings)

    context = await manager.create(IMAGE, foundry_project)

    container = engine.containers_by_name[context.name]
    assert "user" not in container.options
    assert "HOME" not in container.options["environment"]


@pytest.mark.asyncio
async def test_remove_is_idempotent(manager, engine, foundry_project):
    context = await manager.create(IMAGE, foundry_project)

    await manager.remove(context)
    await manager.remove(context)

    assert context.state == ContainerState.REMOVED
    assert await manager.list_live() == []
    assert ("stop", context.name, 0) in engine.calls
    assert [c for c in engine.calls if c[0] == "remove"] == [("remove", context.name, True)]


@pytest.mark.asyncio
async def test_remove_unknown_container_succeeds(manager, engine, foundry_project):
    context = await manager.create(IMAGE, foundry_project)
    engine.containers_by_name.clear()

    await manager.remove(context)
    assert context.state == ContainerState.REMOVED


@pytest.mark.asyncio
async def test_remove_swallows_engine_errors(manager, engine, foundry_project):
    context = await manager.create(IMAGE, foundry_project)

    def broken_get(name):
        raise ConnectionError("daemon went away")

    engine.containers.get = broken_get
    await manager.remove(context)
    assert context.state == ContainerState.REMOVED


@pytest.mark.asyncio
async def test_not_running_after_start(manager, engine, foundry_project):
    engine.start_status = "exited"

    with pytest.raises(ContainerStartError, match="status: exited"):
        await manager.create(IMAGE, foundry_project)
    assert engine.live_containers() == []


@pytest.mark.asyncio
async def test_start_failure_removes_partial_container(manager, engine, foundry_project):
    engine.fail_start = True

    with pytest.raises(ContainerLifecycleError, match="Failed to create container"):
        await manager.create(IMAGE, foundry_project)
    assert len(engine.created) == 1
    assert engine.live_containers() == []


@pytest.mark.asyncio
async def test_create_requires_image(engine, settings, foundry_project):
    manager = ContainerManager(engine, settings)
    with pytest.raises(ConfigurationError, match="not present"):
        await manager.create(IMAGE, foundry_project)
    assert engine.created == []


@pytest.mark.asyncio
async def test_create_requires_host_dir(manager, engine, tmp_path):
    with pytest.raises(ConfigurationError, match="Host directory not found"):
        await manager.create(IMAGE, tmp_path / "missing")
    assert engine.created == []


@pytest.mark.asyncio
async def test_create_pings_engine_first(manager, engine, foundry_project):
    engine.ping_fails = True
    with pytest.raises(DockerUnavailableError):
        await manager.create(IMAGE, foundry_project)
    assert engine.created == []


@pytest.mark.asyncio
async def test_slot_releases_on_exit(manager, engine, foundry_project):
    async with ContainerSlot(manager) as slot:
        context = await slot.open(IMAGE, foundry_project)
        assert slot.context is context
        assert engine.live_containers() == [context.name]

    assert slot.context is None
    assert context.state == ContainerState.REMOVED
    assert engine.live_containers() == []


@pytest.mark.asyncio
async def test_slot_is_single_use(manager, foundry_project):
    slot = ContainerSlot(manager)
    await slot.open(IMAGE, foundry_project)
    await slot.release()

    with pytest.raises(RuntimeError):
        await slot.open(IMAGE, foundry_project)


@pytest.mark.asyncio
async def test_release_of_empty_slot(manager):
    await ContainerSlot(manager).release()


@pytest.mark.asyncio
async def test_prune_is_best_effort(manager, engine):
    def broken_prune():
        raise ConnectionError("daemon went away")

    engine.networks.prune = broken_prune
    results = await manager.prune()

    assert "error" in results["networks"]
    assert ("container_prune",) in engine.calls
    assert ("image_prune", {"dangling": True}) in engine.calls
    assert ("build_prune",) in engine.calls


@pytest.mark.asyncio
async def test_list_live_filters_by_label(manager, engine, foundry_project):
    context = await manager.create(IMAGE, foundry_project)
    engine.containers.create(IMAGE, name="unrelated", labels={})
    assert await manager.list_live() == [context.name]
    assert engine.containers_by_name[context.name].labels == {SANDBOX_LABEL: "1"}
