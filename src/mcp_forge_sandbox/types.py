"""Core type definitions"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional


class ImageState(Enum):
    UNKNOWN = "unknown"
    PRESENT = "present"
    BUILT = "built"


class ImageStatus(Enum):
    """Outcome of ensuring an image exists"""
    ALREADY_PRESENT = "already_present"
    BUILT_NOW = "built_now"


class ContainerState(Enum):
    CREATED = "created"
    RUNNING = "running"
    STOPPED = "stopped"
    REMOVED = "removed"


class Ecosystem(Enum):
    FORGE = "forge"
    NPM = "npm"
    YARN = "yarn"


class StreamKind(Enum):
    STDOUT = "stdout"
    STDERR = "stderr"


class Verdict(Enum):
    PASS = "PASS"
    FAIL = "FAIL"


class WorkflowState(Enum):
    IDLE = "idle"
    IMAGE_READY = "image_ready"
    CONTEXT_READY = "context_ready"
    DEPENDENCIES_INSTALLED = "dependencies_installed"
    COMMAND_EXECUTED = "command_executed"
    CLEANED = "cleaned"
    DONE = "done"
    FAILED = "failed"


@dataclass
class SandboxImage:
    """Execution image and where it is built from"""
    tag: str
    build_context: Optional[Path] = None
    dockerfile: Optional[Path] = None
    compose_file: Optional[Path] = None
    state: ImageState = ImageState.UNKNOWN


@dataclass(frozen=True)
class BuildDescriptor:
    """Located build-instructions and compose files sharing one directory"""
    context: Path
    dockerfile: Path
    compose_file: Path


@dataclass
class ExecutionContext:
    """Ephemeral container bound to a host directory"""
    name: str
    image: str
    host_dir: Path
    workdir: str
    state: ContainerState = ContainerState.CREATED
    container_id: Optional[str] = None

    @property
    def is_live(self) -> bool:
        return self.state in (ContainerState.CREATED, ContainerState.RUNNING)


@dataclass(frozen=True)
class ExecutionRequest:
    """One command to run inside a container"""
    command: str
    args: tuple[str, ...] = ()
    timeout: float = 300.0

    @property
    def argv(self) -> List[str]:
        return [self.command, *self.args]

    def display(self) -> str:
        return " ".join(self.argv)


@dataclass(frozen=True)
class OutputChunk:
    stream: StreamKind
    data: bytes


@dataclass(frozen=True)
class ExecutionResult:
    """Captured output and exit code; -1 means the exit code could not be inspected"""
    stdout: str
    stderr: str
    exit_code: int

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0

    @property
    def combined(self) -> str:
        if self.stderr:
            return f"{self.stdout}\n\nSTDERR:\n{self.stderr}"
        return self.stdout


@dataclass(frozen=True)
class DependencyManifest:
    """Canonical ``name[@version]`` tokens per ecosystem"""
    forge: tuple[str, ...] = ()
    npm: tuple[str, ...] = ()
    yarn: tuple[str, ...] = ()

    def tokens(self, ecosystem: Ecosystem) -> tuple[str, ...]:
        return getattr(self, ecosystem.value)

    @property
    def total(self) -> int:
        return len(self.forge) + len(self.npm) + len(self.yarn)

    def is_empty(self) -> bool:
        return self.total == 0


@dataclass(frozen=True)
class InstallFailure:
    ecosystem: Ecosystem
    dependency: str
    error: str


@dataclass
class InstallSummary:
    """Aggregate outcome of a dependency installation pass"""
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    failures: List[InstallFailure] = field(default_factory=list)

    def record_success(self) -> None:
        self.attempted += 1
        self.succeeded += 1

    def record_failure(self, failure: InstallFailure) -> None:
        self.attempted += 1
        self.failed += 1
        self.failures.append(failure)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "failures": [
                {"ecosystem": f.ecosystem.value, "dependency": f.dependency, "error": f.error}
                for f in self.failures
            ],
        }


@dataclass(frozen=True)
class FoundryConfig:
    """Fields read from a project's foundry.toml"""
    project_root: Path
    src: str = "src"
    out: str = "out"
    cache_path: str = "cache"
    libs: tuple[str, ...] = ("lib",)


@dataclass
class RunReport:
    """Final structured result of one sandboxed run"""
    verdict: Verdict
    raw_output: str
    progress_log: List[str]
    elapsed_ms: int
    reason: Optional[str] = None
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    sandbox_error: bool = False
    state: WorkflowState = WorkflowState.DONE
    dependencies: Optional[InstallSummary] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "verdict": self.verdict.value,
            "rawOutput": self.raw_output,
            "progressLog": list(self.progress_log),
            "elapsedMs": self.elapsed_ms,
            "exitCode": self.exit_code,
            "sandboxError": self.sandbox_error,
            "state": self.state.value,
        }
        if self.reason:
            data["reason"] = self.reason
        if self.dependencies is not None:
            data["dependencies"] = self.dependencies.to_dict()
        return data
