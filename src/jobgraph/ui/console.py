"""Console output formatting utilities for jobgraph."""

from __future__ import annotations

import sys
import threading
from typing import List, Optional

from ..model import JobResult, JobStatus, RunResult


STATUS_LABELS = {
    JobStatus.SUCCEEDED: "SUCCESS",
    JobStatus.FAILED: "FAILED",
    JobStatus.SKIPPED: "SKIPPED",
    JobStatus.CANCELLED: "CANCELLED",
}


class Console:
    """Centralized console output formatting. Safe to call from worker threads."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, suppress progress lines; failures go to stderr (results still print)
        """
        self.debug = debug
        self.quiet = quiet
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        with self._lock:
            for line in lines:
                print(line, file=sys.stderr if err else sys.stdout)

    def _progress(self, *lines: str) -> None:
        if not self.quiet:
            self._out(*lines)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        workflow: str,
        run_id: str,
        ref: str,
        event: str,
        job_count: int,
    ) -> None:
        """Print run start information."""
        self._progress(
            "\nRUN STARTED",
            f"Workflow: {workflow}",
            f"Run ID: {run_id}",
            f"Trigger: {event} {ref}",
            f"Jobs: {job_count}",
            "",
        )

    def print_job_start(self, name: str) -> None:
        """Print job start message."""
        self._progress(f"JOB STARTED: {name}")

    def print_step(self, job: str, name: str) -> None:
        """Print step start message."""
        self._progress(f"[{job}] STEP: {name}")

    def print_step_skipped(self, job: str, name: str) -> None:
        self._progress(f"[{job}] STEP SKIPPED: {name}")

    def print_job_finished(self, result: JobResult) -> None:
        """Print job completion; failures include the failing step and its first error line."""
        label = STATUS_LABELS.get(result.status, result.status.value.upper())
        if result.status is JobStatus.FAILED:
            lines = [f"JOB FAILED: {result.name}"]
            if result.failed_step:
                lines.append(f"  Step: {result.failed_step}")
            if result.error:
                error_line = result.error.split("\n")[0]
                lines.append(f"  Error: {result.error if self.debug else error_line}")
            self._out(*lines, err=self.quiet)
        else:
            self._progress(f"JOB {label}: {result.name} ({result.duration:.1f}s)")

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped message."""
        self._progress(f"JOB SKIPPED: {name} ({reason})")

    def print_run_cancelled(self, run_id: str, reason: str) -> None:
        self._out(f"\nRUN CANCELLED: {run_id} ({reason})", err=self.quiet)

    def print_plan(self, batches: List[List[str]]) -> None:
        """Print the ready batches of a job graph."""
        self.print_header("PLAN")
        for idx, batch in enumerate(batches, start=1):
            self._out(f"  Batch {idx}: {', '.join(batch)}")

    def print_results(self, result: RunResult) -> None:
        """Print final results summary: every job, plus failure details."""
        lines = ["", "=" * 40, f"RESULTS: {result.status.value.upper()}", "=" * 40]
        for name, job in result.jobs.items():
            label = STATUS_LABELS.get(job.status, job.status.value.upper())
            if job.status is JobStatus.SKIPPED and job.skip_reason is not None:
                label = f"{label} ({job.skip_reason.value})"
            lines.append(f"  {name}: {label}")
            if job.outputs:
                for key, value in sorted(job.outputs.items()):
                    lines.append(f"      {key}={value}")
        failures = [j for j in result.jobs.values() if j.status is JobStatus.FAILED]
        for job in failures:
            lines.append("")
            lines.append(f"FAILURE: {job.name}" + (f" / step '{job.failed_step}'" if job.failed_step else ""))
            for err_line in (job.error or "Unknown error").splitlines():
                lines.append(f"  {err_line}")
        if result.artifacts:
            lines.append("")
            lines.append("ARTIFACTS:")
            for name, handle in sorted(result.artifacts.items()):
                lines.append(f"  {name}: {handle}")
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
        lines.extend(f"  {d}" for d in details or [])
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            self._out("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)), err=True)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


# Global console instance (will be initialized by CLI)
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
