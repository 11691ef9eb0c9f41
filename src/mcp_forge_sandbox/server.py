"""MCP server implementation."""
import asyncio
import json
from typing import Any, Callable, Dict, List, Optional

import mcp.types as types
from mcp.server import stdio
from mcp.server.lowlevel import Server
from mcp.server.models import InitializationOptions

from mcp_forge_sandbox import __version__
from mcp_forge_sandbox.errors import ConfigurationError, SandboxError, log_error
from mcp_forge_sandbox.logging import configure_logging, get_logger
from mcp_forge_sandbox.types import RunReport
from mcp_forge_sandbox.workflow.driver import SandboxRunner, create_runner, prepare_run
from mcp_forge_sandbox.workflow.report import rejected_report, render_report

logger = get_logger("server")

SERVER_NAME = "mcp-forge-sandbox"

tools = [
    types.Tool(
        name="forge_test",
        description=(
            "Run Foundry `forge test` for a Solidity project inside a throwaway Docker "
            "container, after installing the dependencies declared in a JSON manifest"
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "projectRoot": {
                    "type": "string",
                    "description": "Absolute path of the Foundry project (directory holding foundry.toml)",
                },
                "testFolderPath": {
                    "type": "string",
                    "description": "Test folder or single .sol file, relative to projectRoot",
                },
                "dependenciesManifestPath": {
                    "type": "string",
                    "description": "JSON manifest with forge/npm/yarn dependencies, relative to projectRoot",
                },
                "extraArgs": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Additional arguments appended to `forge test`",
                },
                "enablePrune": {
                    "type": "boolean",
                    "description": "Prune stopped containers, dangling images and build cache afterwards",
                },
                "timeoutMs": {
                    "type": "integer",
                    "minimum": 1,
                    "description": "Time budget for the test command in milliseconds",
                },
            },
            "required": ["projectRoot", "testFolderPath", "dependenciesManifestPath"],
        },
    ),
]


def parse_forge_test_arguments(arguments: Dict[str, Any]) -> Dict[str, Any]:
    """Map tool arguments onto SandboxRunner.run keyword arguments."""
    parsed: Dict[str, Any] = {}
    for key, target in (
        ("projectRoot", "project_root"),
        ("testFolderPath", "test_selector"),
        ("dependenciesManifestPath", "manifest_path"),
    ):
        value = arguments.get(key)
        if not isinstance(value, str) or not value.strip():
            raise ConfigurationError(f"{key} is required and must be a non-empty string")
        parsed[target] = value

    extra_args = arguments.get("extraArgs")
    if extra_args is not None:
        if not isinstance(extra_args, list) or not all(isinstance(a, str) for a in extra_args):
            raise ConfigurationError("extraArgs must be an array of strings")
        parsed["extra_args"] = extra_args

    enable_prune = arguments.get("enablePrune")
    if enable_prune is not None:
        if not isinstance(enable_prune, bool):
            raise ConfigurationError("enablePrune must be a boolean")
        parsed["enable_prune"] = enable_prune

    timeout_ms = arguments.get("timeoutMs")
    if timeout_ms is not None:
        if isinstance(timeout_ms, bool) or not isinstance(timeout_ms, int) or timeout_ms <= 0:
            raise ConfigurationError("timeoutMs must be a positive integer")
        parsed["timeout"] = timeout_ms / 1000

    return parsed


def envelope(payload: Dict[str, Any]) -> List[types.TextContent]:
    return [types.TextContent(type="text", text=json.dumps(payload))]


def report_envelope(report: RunReport) -> List[types.TextContent]:
    """The report as data, plus its plain-text rendering for the agent."""
    return envelope(
        {"success": not report.sandbox_error, "data": report.to_dict(), "text": render_report(report)}
    )


async def init_server(runner_factory: Optional[Callable[[], SandboxRunner]] = None) -> Server:
    logger.info(f"Registered tools: {', '.join(t.name for t in tools)}")

    server = Server(SERVER_NAME)
    runner_factory = runner_factory or create_runner
    # created on first use; shared so concurrent calls share one build lock
    runners: List[SandboxRunner] = []

    def get_runner() -> SandboxRunner:
        if not runners:
            runners.append(runner_factory())
        return runners[0]

    @server.list_tools()
    async def list_tools() -> List[types.Tool]:
        logger.debug("Tools requested")
        return tools

    @server.call_tool()
    async def call_tool(
        name: str, arguments: Dict[str, Any]
    ) -> list[types.TextContent | types.ImageContent | types.EmbeddedResource]:
        try:
            logger.debug(f"Tool call received: {name} with arguments {arguments}")

            if name != "forge_test":
                return envelope({"success": False, "error": f"Unknown tool: {name}"})

            kwargs = parse_forge_test_arguments(arguments or {})
            try:
                # creating the runner contacts the engine, so inputs go first
                prepare_run(
                    kwargs["project_root"],
                    kwargs["test_selector"],
                    kwargs["manifest_path"],
                    kwargs.get("extra_args"),
                )
            except ConfigurationError as e:
                log_error(e, {"tool": name}, logger)
                return report_envelope(rejected_report(e))

            session = server.request_context.session

            async def forward(level: str, message: str) -> None:
                await session.send_log_message(level=level, data=message, logger=SERVER_NAME)

            report = await get_runner().run(**kwargs, on_progress=forward)
            return report_envelope(report)

        except SandboxError as e:
            log_error(e, {"tool": name}, logger)
            return envelope({"success": False, "error": str(e), "code": e.code})
        except Exception as e:
            log_error(e, {"tool": name}, logger)
            return envelope({"success": False, "error": str(e)})

    @server.progress_notification()
    async def handle_progress(
        progress_token: str | int, progress: float, total: float | None = None
    ) -> None:
        """Handle progress notifications."""
        logger.debug(f"Progress notification: {progress}/{total if total else '?'}")

    return server


async def serve() -> None:
    configure_logging()
    logger.info("Starting MCP forge sandbox server")
    server = await init_server()
    async with stdio.stdio_server() as (read_stream, write_stream):
        init_options = InitializationOptions(
            server_name=SERVER_NAME,
            server_version=__version__,
            capabilities=types.ServerCapabilities(
                tools=types.ToolsCapability(listChanged=False),
                logging=types.LoggingCapability(),
            ),
        )
        await server.run(read_stream, write_stream, init_options)


def main() -> None:
    """Run the MCP server."""
    asyncio.run(serve())
