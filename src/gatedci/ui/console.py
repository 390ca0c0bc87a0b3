"""Console output formatting utilities for gatedci."""

from __future__ import annotations

import sys
import threading
from typing import Optional

from gatedci.model import JobState, PipelineResult, Trigger


STATE_LABELS = {
    JobState.SUCCEEDED: "SUCCESS",
    JobState.FAILED: "FAILED",
    JobState.NOT_ELIGIBLE: "NOT ELIGIBLE",
    JobState.SKIPPED: "SKIPPED",
    JobState.CANCELLED: "CANCELLED",
}


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show full step output and stack traces
        """
        self.debug = debug
        # matrix jobs print from worker threads
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        pipeline: str,
        trigger: Trigger,
        job_count: int,
    ) -> None:
        """Print run start information."""
        self._out(
            "\nRUN STARTED",
            f"Pipeline: {pipeline}",
            f"Ref: {trigger.ref} ({trigger.event.value})",
            f"Jobs: {job_count}",
            "",
        )

    def print_not_triggered(self, pipeline: str, trigger: Trigger) -> None:
        self._out(f"\nPipeline {pipeline} does not run on {trigger.event.value} events")

    def print_job_start(self, name: str) -> None:
        """Print job start message."""
        self._out(f"\nJOB STARTED: {name}")

    def print_step(self, job: str, name: str) -> None:
        """Print step start message."""
        self._out(f"[{job}] STEP: {name}")

    def print_step_output(self, job: str, output: str) -> None:
        """Full step output, debug mode only. `output` must already be redacted."""
        if self.debug and output:
            self._out(*(f"[{job}]   {line}" for line in output.rstrip().splitlines()))

    def print_job_finished(self, name: str, state: JobState, duration: Optional[float] = None) -> None:
        label = STATE_LABELS.get(state, state.value.upper())
        if duration is not None:
            self._out(f"[{name}] STATUS: {label} ({duration:.1f}s)")
        else:
            self._out(f"[{name}] STATUS: {label}")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        output: str = "",
    ) -> None:
        """
        Print step failure message.

        Args:
            name: "[job] step" label
            reason: Failure reason
            exit_code: Optional exit code
            hint: Optional hint for user
            output: Redacted tail of the step output
        """
        lines = [f"STEP FAILED: {name}", f"Error: {reason}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if hint:
            lines.append(f"Hint: {hint}")
        if output:
            # last lines only unless debugging
            tail = output.rstrip().splitlines()
            if not self.debug:
                tail = tail[-20:]
            lines.extend(f"  {line}" for line in tail)
        self._out(*lines)

    def print_gate(self, name: str, state: JobState, reason: str) -> None:
        """Print why a job was not run."""
        label = STATE_LABELS.get(state, state.value.upper())
        self._out(f"\nJOB {label}: {name}", f"Reason: {reason}")

    def print_plan_job(self, name: str, reason: str) -> None:
        """Print job selection plan."""
        self._out(f"  {name} ({reason})")

    def print_plan_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped in plan."""
        self._out(f"  {name} (skipped: {reason})")

    def print_results(self, result: PipelineResult) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for name, r in result.jobs.items():
            lines.append(f"  {name}: {STATE_LABELS.get(r.state, r.state.value.upper())}")
        lines.append(f"Overall: {result.status.value.upper()}")
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
        if details:
            lines.extend(f"  {detail}" for detail in details)
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
