"""Dependency installation inside a running sandbox container."""

from typing import Optional, Sequence

from mcp_forge_sandbox.containers.execution import CommandExecutor, OutputCallback
from mcp_forge_sandbox.errors import SandboxError
from mcp_forge_sandbox.logging import get_logger
from mcp_forge_sandbox.types import (
    DependencyManifest,
    Ecosystem,
    ExecutionContext,
    ExecutionRequest,
    InstallFailure,
    InstallSummary,
)

logger = get_logger(__name__)

ERROR_TEXT_LIMIT = 2000

PROJECT_DEPENDENCY = "<project>"


def install_command(ecosystem: Ecosystem, token: str) -> list[str]:
    """Command that installs one dependency token."""
    match ecosystem:
        case Ecosystem.FORGE:
            # --no-git: the mounted project need not be a git working tree
            return ["forge", "install", "--no-git", token]
        case Ecosystem.NPM:
            return ["npm", "install", "--no-audit", "--no-fund", token]
        case Ecosystem.YARN:
            return ["yarn", "add", token]
    raise ValueError(f"Unsupported ecosystem: {ecosystem}")


def project_install_command(context: ExecutionContext) -> Optional[tuple[Ecosystem, list[str]]]:
    """Whole-project install when the mounted project declares a package.json."""
    if not (context.host_dir / "package.json").is_file():
        return None
    if (context.host_dir / "yarn.lock").is_file():
        return Ecosystem.YARN, ["yarn", "install"]
    return Ecosystem.NPM, ["npm", "install", "--no-audit", "--no-fund"]


def _error_text(stdout: str, stderr: str) -> str:
    text = (stderr or stdout).strip()
    return text[-ERROR_TEXT_LIMIT:]


class DependencyInstaller:
    """Installs manifest dependencies; individual failures never abort the pass."""

    def __init__(
        self,
        executor: CommandExecutor,
        timeout: float,
        lib_dirs: Sequence[str] = ("lib",),
        on_output: Optional[OutputCallback] = None,
    ):
        self.executor = executor
        self.timeout = timeout
        self.lib_dirs = tuple(lib_dirs) or ("lib",)
        self.on_output = on_output

    async def ensure_lib_dirs(self, context: ExecutionContext) -> None:
        request = ExecutionRequest(
            command="mkdir", args=("-p", *self.lib_dirs), timeout=self.timeout
        )
        try:
            result = await self.executor.exec(context, request)
        except SandboxError as e:
            logger.warning({"event": "lib_dirs_failed", "dirs": list(self.lib_dirs), "error": str(e)})
            return
        if not result.succeeded:
            logger.warning(
                {
                    "event": "lib_dirs_failed",
                    "dirs": list(self.lib_dirs),
                    "error": _error_text(result.stdout, result.stderr),
                }
            )

    async def install_one(
        self,
        context: ExecutionContext,
        ecosystem: Ecosystem,
        dependency: str,
        argv: list[str],
        summary: InstallSummary,
    ) -> None:
        """Run one install command and record its outcome."""
        request = ExecutionRequest(command=argv[0], args=tuple(argv[1:]), timeout=self.timeout)
        logger.info({"event": "dependency_install_start", "ecosystem": ecosystem.value, "dependency": dependency})

        try:
            result = await self.executor.exec(context, request, self.on_output)
        except SandboxError as e:
            error = str(e)
        else:
            if result.succeeded:
                summary.record_success()
                logger.info(
                    {"event": "dependency_installed", "ecosystem": ecosystem.value, "dependency": dependency}
                )
                return
            error = f"exit code {result.exit_code}: {_error_text(result.stdout, result.stderr)}"

        summary.record_failure(InstallFailure(ecosystem=ecosystem, dependency=dependency, error=error))
        logger.warning(
            {
                "event": "dependency_install_failed",
                "ecosystem": ecosystem.value,
                "dependency": dependency,
                "error": error,
            }
        )

    async def install_all(
        self, context: ExecutionContext, manifest: DependencyManifest
    ) -> InstallSummary:
        summary = InstallSummary()

        await self.ensure_lib_dirs(context)

        project_install = project_install_command(context)
        if project_install is not None:
            ecosystem, argv = project_install
            await self.install_one(context, ecosystem, PROJECT_DEPENDENCY, argv, summary)

        for ecosystem in (Ecosystem.NPM, Ecosystem.YARN, Ecosystem.FORGE):
            for token in manifest.tokens(ecosystem):
                await self.install_one(
                    context, ecosystem, token, install_command(ecosystem, token), summary
                )

        logger.info(
            {
                "event": "dependencies_complete",
                "attempted": summary.attempted,
                "succeeded": summary.succeeded,
                "failed": summary.failed,
            }
        )
        return summary
