"""Test MCP server implementation."""
import json

import anyio
import pytest
from mcp.shared.memory import create_connected_server_and_client_session
from mcp.types import INTERNAL_ERROR

from conftest import ExecScript
from mcp_forge_sandbox.errors import ConfigurationError
from mcp_forge_sandbox.server import init_server, parse_forge_test_arguments


@pytest.fixture
def runner_factory(runner):
    created = []

    def factory():
        created.append(runner)
        return runner

    factory.created = created
    return factory


async def call(server, name, arguments, log_messages=None):
    async def logging_callback(params):
        if log_messages is not None:
            log_messages.append(params)

    with anyio.fail_after(10):
        async with create_connected_server_and_client_session(
            server, logging_callback=logging_callback
        ) as client:
            result = await client.call_tool(name, arguments)
    assert len(result.content) == 1
    assert result.content[0].type == "text"
    return json.loads(result.content[0].text)


@pytest.mark.asyncio
async def test_list_tools(runner_factory):
    server = await init_server(runner_factory)
    with anyio.fail_after(10):
        async with create_connected_server_and_client_session(server) as client:
            listed = await client.list_tools()

    assert [tool.name for tool in listed.tools] == ["forge_test"]
    schema = listed.tools[0].inputSchema
    assert schema["required"] == ["projectRoot", "testFolderPath", "dependenciesManifestPath"]
    assert set(schema["properties"]) >= {"extraArgs", "enablePrune", "timeoutMs"}
    assert runner_factory.created == []


@pytest.mark.asyncio
async def test_forge_test_tool(runner_factory, engine, foundry_project, fake_build):
    engine.exec_handler = lambda argv: ExecScript(frames=[(b"Suite result: ok. 2 passed\n", None)])
    server = await init_server(runner_factory)
    log_messages = []

    result = await call(
        server,
        "forge_test",
        {
            "projectRoot": str(foundry_project),
            "testFolderPath": "test",
            "dependenciesManifestPath": "dependencies.json",
            "extraArgs": ["-vv"],
        },
        log_messages,
    )

    assert result["success"] is True
    data = result["data"]
    assert data["verdict"] == "PASS"
    assert data["exitCode"] == 0
    assert data["sandboxError"] is False
    assert "Suite result: ok" in data["rawOutput"]
    assert data["dependencies"]["attempted"] == 2
    assert engine.commands[-1][-1] == "-vv"
    assert any(str(m.data).startswith("Step 1/5") for m in log_messages)
    assert engine.live_containers() == []
    assert "Execution progress" in result["text"]
    assert "Test result: PASS" in result["text"]
    assert "Suite result: ok" in result["text"]


@pytest.mark.asyncio
async def test_runner_is_shared_between_calls(runner_factory, foundry_project, fake_build):
    server = await init_server(runner_factory)
    arguments = {
        "projectRoot": str(foundry_project),
        "testFolderPath": "test/Counter.t.sol",
        "dependenciesManifestPath": "dependencies.json",
    }

    with anyio.fail_after(10):
        async with create_connected_server_and_client_session(server) as client:
            await client.call_tool("forge_test", arguments)
            await client.call_tool("forge_test", arguments)

    assert len(runner_factory.created) == 1


@pytest.mark.asyncio
async def test_sandbox_error_envelope(runner_factory, engine, tmp_path):
    server = await init_server(runner_factory)

    result = await call(
        server,
        "forge_test",
        {
            "projectRoot": str(tmp_path / "missing"),
            "testFolderPath": "test",
            "dependenciesManifestPath": "dependencies.json",
        },
    )

    assert result["success"] is False
    assert result["data"]["sandboxError"] is True
    assert result["data"]["reason"].startswith("Sandbox error: Project root directory not found")
    assert engine.created == []
    assert runner_factory.created == []
    assert "Sandbox failure: FAIL" in result["text"]


@pytest.mark.asyncio
async def test_unknown_tool(runner_factory):
    server = await init_server(runner_factory)
    result = await call(server, "nonexistent_tool", {})
    assert result == {"success": False, "error": "Unknown tool: nonexistent_tool"}


@pytest.fixture
def docker_down(monkeypatch, tmp_path):
    monkeypatch.setenv("DOCKER_HOST", f"unix://{tmp_path}/missing-docker.sock")


@pytest.mark.asyncio
async def test_invalid_project_rejected_without_engine(docker_down, foundry_project):
    (foundry_project / "foundry.toml").unlink()
    server = await init_server()

    result = await call(
        server,
        "forge_test",
        {
            "projectRoot": str(foundry_project),
            "testFolderPath": "test",
            "dependenciesManifestPath": "dependencies.json",
        },
    )

    assert result["success"] is False
    assert result["data"]["sandboxError"] is True
    assert result["data"]["reason"].startswith("Sandbox error: foundry.toml not found")
    assert "Docker is not available" not in result["text"]


@pytest.mark.asyncio
async def test_valid_project_with_engine_down(docker_down, foundry_project):
    server = await init_server()

    result = await call(
        server,
        "forge_test",
        {
            "projectRoot": str(foundry_project),
            "testFolderPath": "test",
            "dependenciesManifestPath": "dependencies.json",
        },
    )

    assert result["success"] is False
    assert result["error"].startswith("Docker is not available")
    assert result["code"] == INTERNAL_ERROR


@pytest.mark.asyncio
async def test_runner_factory_failure(foundry_project):
    def broken_factory():
        raise ConfigurationError("no engine configured")

    server = await init_server(broken_factory)
    result = await call(
        server,
        "forge_test",
        {
            "projectRoot": str(foundry_project),
            "testFolderPath": "test",
            "dependenciesManifestPath": "dependencies.json",
        },
    )
    assert result["success"] is False
    assert result["error"] == "no engine configured"


def test_parse_arguments():
    parsed = parse_forge_test_arguments(
        {
            "projectRoot": "/p",
            "testFolderPath": "test",
            "dependenciesManifestPath": "deps.json",
            "extraArgs": ["-vvv"],
            "enablePrune": True,
            "timeoutMs": 5000,
        }
    )
    assert parsed == {
        "project_root": "/p",
        "test_selector": "test",
        "manifest_path": "deps.json",
        "extra_args": ["-vvv"],
        "enable_prune": True,
        "timeout": 5.0,
    }


@pytest.mark.parametrize(
    "override,message",
    [
        ({"projectRoot": ""}, "projectRoot is required"),
        ({"testFolderPath": None}, "testFolderPath is required"),
        ({"extraArgs": "-vvv"}, "extraArgs"),
        ({"enablePrune": "yes"}, "enablePrune"),
        ({"timeoutMs": 0}, "timeoutMs"),
        ({"timeoutMs": True}, "timeoutMs"),
    ],
)
def test_parse_arguments_rejects_invalid(override, message):
    arguments = {"projectRoot": "/p", "testFolderPath": "test", "dependenciesManifestPath": "deps.json"}
    arguments.update(override)
    with pytest.raises(ConfigurationError, match=message):
        parse_forge_test_arguments(arguments)
