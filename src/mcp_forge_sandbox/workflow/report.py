"""Verdicts, failure reasons and report rendering."""

import re
from typing import List, Optional

from mcp_forge_sandbox.errors import SandboxError
from mcp_forge_sandbox.types import (
    ExecutionResult,
    InstallSummary,
    RunReport,
    Verdict,
    WorkflowState,
)
from mcp_forge_sandbox.workflow.progress import ProgressLog, format_duration

FAILURE_PATTERN = re.compile(
    r"(Error|Failed|Revert|ReentrancyGuard|AssertionError|Unable to resolve)[^\n]*"
)
GENERIC_FAILURE_REASON = "Test execution failed"
SANDBOX_ERROR_PREFIX = "Sandbox error: "

TIMEOUT_EXIT_CODE = 137


def extract_failure_reason(output: str) -> str:
    match = FAILURE_PATTERN.search(output)
    return match.group(0).strip() if match else GENERIC_FAILURE_REASON


def verdict_for(exit_code: int) -> Verdict:
    return Verdict.PASS if exit_code == 0 else Verdict.FAIL


def completed_report(
    result: ExecutionResult,
    progress: List[str],
    elapsed_ms: int,
    dependencies: Optional[InstallSummary] = None,
) -> RunReport:
    """Report for a run that reached test execution."""
    output = result.combined
    verdict = verdict_for(result.exit_code)
    return RunReport(
        verdict=verdict,
        reason=extract_failure_reason(output) if verdict == Verdict.FAIL else None,
        raw_output=output,
        stdout=result.stdout,
        stderr=result.stderr,
        exit_code=result.exit_code,
        progress_log=progress,
        elapsed_ms=elapsed_ms,
        dependencies=dependencies,
    )


def timeout_report(
    error: SandboxError,
    partial_output: str,
    progress: List[str],
    elapsed_ms: int,
    dependencies: Optional[InstallSummary] = None,
) -> RunReport:
    """The test command ran out of time: a failing test, not a broken sandbox."""
    return RunReport(
        verdict=Verdict.FAIL,
        reason=f"Test command timed out: {error}",
        raw_output=partial_output,
        exit_code=TIMEOUT_EXIT_CODE,
        progress_log=progress,
        elapsed_ms=elapsed_ms,
        dependencies=dependencies,
    )


def sandbox_error_report(
    error: Exception,
    progress: List[str],
    elapsed_ms: int,
    dependencies: Optional[InstallSummary] = None,
) -> RunReport:
    return RunReport(
        verdict=Verdict.FAIL,
        reason=f"{SANDBOX_ERROR_PREFIX}{error}",
        raw_output="",
        progress_log=progress,
        elapsed_ms=elapsed_ms,
        sandbox_error=True,
        state=WorkflowState.FAILED,
        dependencies=dependencies,
    )


def render_report(report: RunReport) -> str:
    """Plain-text rendering: progress first, then verdict, then raw output."""
    rule = "=" * 55
    lines = [rule, "Execution progress", rule]
    lines.extend(f"  {i}. {entry}" for i, entry in enumerate(report.progress_log, 1))

    if report.dependencies is not None and report.dependencies.failed:
        lines.append("")
        lines.append(
            f"Dependency warnings: {report.dependencies.failed} of "
            f"{report.dependencies.attempted} installs failed"
        )
        lines.extend(
            f"  - [{f.ecosystem.value}] {f.dependency}: {f.error.splitlines()[0] if f.error else ''}"
            for f in report.dependencies.failures
        )

    lines.append("")
    lines.append(rule)
    headline = "Sandbox failure" if report.sandbox_error else "Test result"
    lines.append(f"{headline}: {report.verdict.value}")
    if report.reason:
        lines.append(f"Reason: {report.reason}")
    lines.append(f"Total time: {format_duration(report.elapsed_ms)} ({report.elapsed_ms}ms)")
    lines.append(rule)

    if report.raw_output:
        lines.append("")
        lines.append("Test output:")
        lines.append("-" * 55)
        lines.append(report.raw_output)
        lines.append("-" * 55)
    return "\n".join(lines)


def rejected_report(error: SandboxError) -> RunReport:
    """Report for inputs refused before any engine call."""
    progress = ProgressLog()
    progress.record(f"{SANDBOX_ERROR_PREFIX}{error}", level="error")
    return sandbox_error_report(error, progress.entries, 0)
