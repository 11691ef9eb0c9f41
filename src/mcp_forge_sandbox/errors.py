"""Error taxonomy for the sandbox engine."""
import logging
from typing import Any, Dict, Optional, Sequence

from mcp.types import ErrorData, INTERNAL_ERROR, INVALID_PARAMS

from mcp_forge_sandbox.logging import log_with_data


def log_error(
    error: Exception,
    context: Optional[Dict[str, Any]] = None,
    logger: Optional[logging.Logger] = None,
) -> None:
    """Log an error with context."""
    logger = logger or logging.getLogger(__name__)

    error_info: Dict[str, Any] = {
        "error_type": error.__class__.__name__,
        "error_message": str(error),
    }
    if context:
        error_info["context"] = context
    if isinstance(error, SandboxError):
        error_info["code"] = error.code
        error_info["details"] = error.details

    log_with_data(logger, logging.ERROR, "Sandbox error occurred", error_info)


class SandboxError(Exception):
    """Base error for failures of the sandbox itself (not of the sandboxed test)."""

    def __init__(
        self,
        message: str,
        code: int = INTERNAL_ERROR,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.code = code
        self.details = details or {}

    def to_error_data(self) -> ErrorData:
        """Convert to ErrorData format."""
        return ErrorData(code=self.code, message=str(self), data=self.details)


class ConfigurationError(SandboxError):
    """Caller input or local configuration is missing or invalid."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=INVALID_PARAMS, details=details)


class BuildDescriptorNotFoundError(ConfigurationError):
    """No candidate directory holds the complete build descriptor pair."""

    def __init__(self, searched: Sequence[str], files: Sequence[str]):
        listing = "\n".join(f"  - {path}" for path in searched)
        super().__init__(
            f"Build descriptor ({', '.join(files)}) not found. Searched:\n{listing}\n"
            "Set FOUNDRY_MCP_BUILD_CONTEXT to the directory containing both files.",
            details={"searched": list(searched), "files": list(files)},
        )
        self.searched = list(searched)


class DockerUnavailableError(SandboxError):
    """The container engine did not answer the liveness probe."""

    def __init__(self, reason: str):
        super().__init__(
            f"Docker is not available. Please ensure Docker is running. Error: {reason}",
            details={"reason": reason},
        )


class ImageBuildError(SandboxError):
    """The image build subprocess exited nonzero."""

    def __init__(self, tag: str, returncode: int, output_tail: str):
        super().__init__(
            f"Failed to build sandbox image {tag} (exit code {returncode}):\n{output_tail}",
            details={"tag": tag, "returncode": returncode},
        )
        self.tag = tag
        self.returncode = returncode
        self.output_tail = output_tail


class ContainerLifecycleError(SandboxError):
    """Creating or starting the execution container failed."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details=details)


class ContainerStartError(ContainerLifecycleError):
    """The container was started but never reached the running state."""

    def __init__(self, name: str, status: str):
        super().__init__(
            f"Container {name} started but is not running (status: {status})",
            details={"name": name, "status": status},
        )


class CommandTimeoutError(SandboxError, TimeoutError):
    """A command inside the container exceeded its time budget."""

    def __init__(self, command: str, timeout: float):
        super().__init__(
            f"Command execution timeout after {int(timeout * 1000)}ms: {command}",
            details={"command": command, "timeout_ms": int(timeout * 1000)},
        )
        self.command = command
        self.timeout = timeout
