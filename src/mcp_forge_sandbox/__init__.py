"""MCP Forge Sandbox package."""

__version__ = "0.1.0"

from mcp_forge_sandbox.types import (
    DependencyManifest,
    ExecutionContext,
    ExecutionRequest,
    ExecutionResult,
    InstallSummary,
    RunReport,
    Verdict,
    WorkflowState,
)
from mcp_forge_sandbox.config import SandboxSettings
from mcp_forge_sandbox.workflow.driver import SandboxRunner, create_runner, prepare_run
from mcp_forge_sandbox.errors import (
    SandboxError,
    ConfigurationError,
    DockerUnavailableError,
    ImageBuildError,
    ContainerLifecycleError,
    ContainerStartError,
    CommandTimeoutError,
)

__all__ = [
    # Data model
    "DependencyManifest",
    "ExecutionContext",
    "ExecutionRequest",
    "ExecutionResult",
    "InstallSummary",
    "RunReport",
    "Verdict",
    "WorkflowState",

    # Configuration
    "SandboxSettings",

    # Orchestration
    "SandboxRunner",
    "create_runner",
    "prepare_run",

    # Error types
    "SandboxError",
    "ConfigurationError",
    "DockerUnavailableError",
    "ImageBuildError",
    "ContainerLifecycleError",
    "ContainerStartError",
    "CommandTimeoutError",
]
