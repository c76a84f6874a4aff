"""Console output formatting utilities for actionsmith."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from ..model import JobResult, RunResult, StepResult


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, suppress per-step progress (errors still print)
        """
        self.debug = debug
        self.quiet = quiet
        # jobs print from worker threads
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        with self._lock:
            for line in lines:
                print(line, file=sys.stderr if err else sys.stdout)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        workflow: str,
        event: str,
        ref: str,
        environment: Optional[str],
        job_count: int,
    ) -> None:
        """Print run start information."""
        self._out(
            "\nRUN STARTED",
            f"Workflow: {workflow}",
            f"Event: {event} ({ref})",
            f"Environment: {environment or '-'}",
            f"Jobs: {job_count}",
            "",
        )

    def print_job_start(self, name: str) -> None:
        if not self.quiet:
            self._out(f"\nJOB STARTED: {name}")

    def print_step(self, name: str) -> None:
        if not self.quiet:
            self._out(f"STEP: {name}")

    def print_success(self, name: str) -> None:
        if not self.quiet:
            self._out(f"JOB SUCCEEDED: {name}")

    def print_retry(self, name: str, attempt: int, attempts: int, delay: float) -> None:
        self._out(f"RETRY: {name} (attempt {attempt}/{attempts} failed, next in {delay:.1f}s)")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        is_job: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason/error message (already redacted)
            exit_code: Optional exit code
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        lines = [f"{prefix}: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            # first line only outside debug mode
            lines.append(f"Error: {reason.splitlines()[0] if reason else 'Unknown error'}")
        self._out(*lines)

    def print_job_skipped(self, name: str, reason: str) -> None:
        if not self.quiet:
            self._out(f"\nJOB SKIPPED: {name} ({reason})")

    def print_plan(self, workflow: str, levels: List[List[str]]) -> None:
        """Print topological levels; jobs on one level may run concurrently."""
        lines = [f"\nPLAN: {workflow}"]
        for idx, level in enumerate(levels, start=1):
            lines.append(f"  Stage {idx}: {', '.join(level)}")
        self._out(*lines)

    def print_results(self, run: "RunResult") -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for job in run.jobs.values():
            lines.extend(_job_lines(job, indent=2))
        if run.outputs:
            lines.append("OUTPUTS")
            for k, v in run.outputs.items():
                lines.append(f"  {k}={v}")
        lines.append(f"RUN {run.status.value.upper()} ({run.run_id})")
        self._out(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        for detail in details or []:
            lines.append(f"  {detail}")
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


def _step_lines(step: "StepResult", indent: int) -> List[str]:
    pad = " " * indent
    lines = [f"{pad}- {step.name}: {step.status.value.upper()}"
             + ("" if step.blocking else " (continue-on-error)")]
    for child in step.children:
        lines.extend(_step_lines(child, indent + 2))
    return lines


def _job_lines(job: "JobResult", indent: int) -> List[str]:
    pad = " " * indent
    status = job.status.value.upper()
    if job.reason:
        status += f" ({job.reason})"
    lines = [f"{pad}{job.name}: {status}"]
    for step in job.steps:
        lines.extend(_step_lines(step, indent + 2))
    for nested in job.jobs.values():
        lines.extend(_job_lines(nested, indent + 2))
    return lines


# Global console instance (initialized by the CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
