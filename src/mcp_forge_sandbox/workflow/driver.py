"""Orchestration of one sandboxed `forge test` run.

A run walks IDLE -> IMAGE_READY -> CONTEXT_READY -> DEPENDENCIES_INSTALLED ->
COMMAND_EXECUTED, then always CLEANED, and ends in DONE or FAILED. The
container is released in a ``finally`` block so no exit path leaks it.
"""

import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import docker

from mcp_forge_sandbox.config import SandboxSettings
from mcp_forge_sandbox.containers.engine import connect_engine
from mcp_forge_sandbox.containers.execution import CommandExecutor, OutputBuffer
from mcp_forge_sandbox.containers.lifecycle import ContainerManager, ContainerSlot
from mcp_forge_sandbox.dependencies.installer import DependencyInstaller
from mcp_forge_sandbox.dependencies.manifest import load_manifest
from mcp_forge_sandbox.errors import CommandTimeoutError, SandboxError, log_error
from mcp_forge_sandbox.images.provisioner import ImageProvisioner
from mcp_forge_sandbox.logging import get_logger
from mcp_forge_sandbox.project.foundry import (
    build_test_args,
    parse_foundry_toml,
    resolve_project_root,
    resolve_test_selector,
)
from mcp_forge_sandbox.types import (
    DependencyManifest,
    ExecutionRequest,
    ExecutionResult,
    FoundryConfig,
    ImageStatus,
    InstallSummary,
    RunReport,
    StreamKind,
    WorkflowState,
)
from mcp_forge_sandbox.workflow.progress import (
    ProgressListener,
    ProgressLog,
    StepTimer,
    format_duration,
)
from mcp_forge_sandbox.workflow.report import (
    TIMEOUT_EXIT_CODE,
    completed_report,
    sandbox_error_report,
    timeout_report,
)

logger = get_logger(__name__)

TOTAL_STEPS = 5


@dataclass(frozen=True)
class RunPlan:
    """Validated inputs of one run"""
    project_root: Path
    foundry: FoundryConfig
    manifest: DependencyManifest
    match_pattern: str
    forge_args: List[str]


def prepare_run(
    project_root: str | Path,
    test_selector: str,
    manifest_path: str | Path,
    extra_args: Optional[List[str]] = None,
) -> RunPlan:
    """Check every caller input; raises ConfigurationError without touching the engine."""
    root = resolve_project_root(project_root)
    foundry = parse_foundry_toml(root)
    manifest = load_manifest(root, manifest_path)
    match_pattern = resolve_test_selector(root, test_selector)
    return RunPlan(
        project_root=root,
        foundry=foundry,
        manifest=manifest,
        match_pattern=match_pattern,
        forge_args=build_test_args(match_pattern, extra_args),
    )


class SandboxRunner:
    """Runs Foundry tests in throwaway containers.

    One runner is shared per process so that its provisioner's build lock
    covers every concurrent run.
    """

    def __init__(
        self,
        settings: SandboxSettings,
        provisioner: ImageProvisioner,
        containers: ContainerManager,
        executor: CommandExecutor,
    ):
        self.settings = settings
        self.provisioner = provisioner
        self.containers = containers
        self.executor = executor

    def _enter(self, current: WorkflowState, state: WorkflowState) -> WorkflowState:
        logger.debug({"event": "workflow_state", "from": current.value, "to": state.value})
        return state

    async def run(
        self,
        project_root: str | Path,
        test_selector: str,
        manifest_path: str | Path,
        extra_args: Optional[List[str]] = None,
        enable_prune: Optional[bool] = None,
        timeout: Optional[float] = None,
        on_progress: Optional[ProgressListener] = None,
    ) -> RunReport:
        started = time.monotonic()
        progress = ProgressLog(on_progress)
        slot = ContainerSlot(self.containers)
        test_output = OutputBuffer()
        prune = self.settings.enable_prune if enable_prune is None else enable_prune
        timeout = timeout or self.settings.test_timeout

        state = WorkflowState.IDLE
        image_status: Optional[ImageStatus] = None
        summary: Optional[InstallSummary] = None
        result: Optional[ExecutionResult] = None
        timed_out: Optional[CommandTimeoutError] = None
        failure: Optional[SandboxError] = None

        await progress.add(f"Starting forge test run in {project_root}")
        try:
            async with StepTimer(progress, 1, TOTAL_STEPS, "Validating project"):
                plan = prepare_run(project_root, test_selector, manifest_path, extra_args)

            tag = self.settings.image
            async with StepTimer(progress, 2, TOTAL_STEPS, f"Ensuring sandbox image {tag}"):
                image_status = await self.provisioner.ensure_image(
                    tag, on_line=lambda line: progress.record(f"[build] {line}")
                )
            await progress.add(
                f"Image {tag} built" if image_status == ImageStatus.BUILT_NOW else f"Image {tag} already present"
            )
            state = self._enter(state, WorkflowState.IMAGE_READY)

            async with StepTimer(progress, 3, TOTAL_STEPS, "Creating sandbox container"):
                context = await slot.open(tag, plan.project_root, self.settings.workdir)
            await progress.add(f"Container {context.name} running, project mounted at {context.workdir}")
            state = self._enter(state, WorkflowState.CONTEXT_READY)

            installer = DependencyInstaller(
                self.executor, self.settings.install_timeout, lib_dirs=plan.foundry.libs
            )
            async with StepTimer(
                progress, 4, TOTAL_STEPS, f"Installing {plan.manifest.total} declared dependencies"
            ):
                summary = await installer.install_all(context, plan.manifest)
            for item in summary.failures:
                await progress.add(
                    f"Dependency warning: {item.ecosystem.value} {item.dependency} failed to install",
                    level="warning",
                )
            state = self._enter(state, WorkflowState.DEPENDENCIES_INSTALLED)

            request = ExecutionRequest(command="forge", args=tuple(plan.forge_args), timeout=timeout)
            try:
                async with StepTimer(progress, 5, TOTAL_STEPS, f"Running {request.display()}"):
                    result = await self.executor.exec(context, request, test_output.write)
            except CommandTimeoutError as e:
                timed_out = e
            state = self._enter(state, WorkflowState.COMMAND_EXECUTED)
        except SandboxError as e:
            failure = e
            log_error(e, {"project_root": str(project_root), "state": state.value}, logger)
            await progress.add(f"Sandbox error: {e}", level="error")
        finally:
            await slot.release()
            state = self._enter(state, WorkflowState.CLEANED)
            await progress.add("Sandbox container removed")
            await self._after_cleanup(progress, prune, image_status)

        elapsed_ms = int((time.monotonic() - started) * 1000)
        if failure is not None:
            report = sandbox_error_report(failure, progress.entries, elapsed_ms, summary)
        elif timed_out is not None:
            partial = ExecutionResult(
                stdout=test_output.text(StreamKind.STDOUT),
                stderr=test_output.text(StreamKind.STDERR),
                exit_code=TIMEOUT_EXIT_CODE,
            )
            report = timeout_report(timed_out, partial.combined, progress.entries, elapsed_ms, summary)
        else:
            assert result is not None
            report = completed_report(result, progress.entries, elapsed_ms, summary)

        report.state = self._enter(state, report.state)
        await progress.add(f"Finished: {report.verdict.value} in {format_duration(elapsed_ms)}")
        report.progress_log = progress.entries
        logger.info(
            {
                "event": "run_complete",
                "verdict": report.verdict.value,
                "exit_code": report.exit_code,
                "sandbox_error": report.sandbox_error,
                "elapsed_ms": elapsed_ms,
            }
        )
        return report

    async def _after_cleanup(
        self, progress: ProgressLog, prune: bool, image_status: Optional[ImageStatus]
    ) -> None:
        """Opt-in housekeeping; failures are logged inside each helper."""
        if prune:
            await self.containers.prune()
            await progress.add("Pruned stopped containers, dangling images and build cache")
        if self.settings.cleanup_image and image_status == ImageStatus.BUILT_NOW:
            await self.provisioner.remove_image(self.settings.image)
            await progress.add(f"Removed image {self.settings.image}")


def create_runner(
    settings: Optional[SandboxSettings] = None, client: Optional[docker.DockerClient] = None
) -> SandboxRunner:
    settings = settings or SandboxSettings.from_env()
    client = client or connect_engine()
    return SandboxRunner(
        settings,
        ImageProvisioner(client, settings),
        ContainerManager(client, settings),
        CommandExecutor(client, settings),
    )
