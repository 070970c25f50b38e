"""Console output formatting utilities for stageci."""

from __future__ import annotations

import sys
import threading
from typing import Optional

from stageci.events import Event, PipelineCompleted, PostActionFailed, StageCompleted, StageStarted, StepOutcome
from stageci.model import PipelineResult, PipelineSpec, Stage, StageStatus


TOOL_HINTS = {
    "mvn": "Install Maven or use the project's ./mvnw wrapper.",
    "docker": "Install Docker and ensure the daemon is running.",
    "kubectl": "Install kubectl and check your kubeconfig.",
    "trivy": "Install trivy or run it from its container image.",
    "python3": "Install Python 3 or fix PATH (python3).",
}

_STATUS_LABELS = {
    StageStatus.SUCCEEDED: "SUCCESS",
    StageStatus.FAILED: "FAILED",
    StageStatus.SKIPPED: "SKIPPED",
    StageStatus.PENDING: "PENDING",
    StageStatus.RUNNING: "RUNNING",
}


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug
        # parallel stages print from worker threads
        self._lock = threading.Lock()

    def _print(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._print(f"\n{title}", "-" * len(title))

    def print_run_started(self, pipeline: str, source: str, stage_count: int) -> None:
        """Print run start information."""
        self._print(
            "\nRUN STARTED",
            f"Pipeline: {pipeline}",
            f"Source: {source}",
            f"Stages: {stage_count}",
            "",
        )

    def print_stage_start(self, path: str) -> None:
        self._print(f"STAGE STARTED: {path}")

    def print_stage_done(self, path: str, status: StageStatus, reason: Optional[str] = None) -> None:
        line = f"STAGE {_STATUS_LABELS[status]}: {path}"
        if reason and status is StageStatus.FAILED:
            line += f" ({reason.splitlines()[0]})"
        self._print(line)

    def print_step(self, path: str, step: str, exit_code: int, succeeded: bool, soft_failed: bool) -> None:
        """Print step result line."""
        if soft_failed:
            mark = f"exit={exit_code}, ignored"
        elif succeeded:
            mark = "ok"
        else:
            mark = f"exit={exit_code}"
        self._print(f"[{path}] STEP: {step} ({mark})")

    def print_output_line(self, line: str) -> None:
        self._print(f"  | {line}")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        output: Optional[str] = None,
    ) -> None:
        """
        Print failure summary for the stage that failed the pipeline.

        Args:
            name: Stage path
            reason: Failure reason/error message
            exit_code: Optional exit code of the failing step
            hint: Optional hint for user
            output: Captured (already redacted) output of the failing step
        """
        lines = [f"\nSTAGE FAILED: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if hint:
            lines.append(f"Hint: {hint}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            lines.append(f"Error: {error_line}")
        if output:
            lines.append("Output (tail):")
            lines.extend(f"  | {line}" for line in output.rstrip("\n").splitlines()[-40:])
        self._print(*lines)

    def print_post_failure(self, owner: str, label: str, error: str) -> None:
        self._print(f"POST FAILED: {owner} [{label}] {error}", err=True)

    def print_plan(self, spec: PipelineSpec) -> None:
        """Print the stage tree."""
        self._print(f"PIPELINE: {spec.name}")
        for stage in spec.stages:
            self._print_stage_tree(stage, depth=1)
        for action in spec.post:
            self._print(f"  post[{action.condition.value}]: {len(action.steps)} step(s)")

    def _print_stage_tree(self, stage: Stage, depth: int) -> None:
        pad = "  " * depth
        extra = []
        if stage.credentials:
            extra.append("credentials=" + ",".join(b.id for b in stage.credentials))
        if stage.post:
            extra.append("post=" + ",".join(a.condition.value for a in stage.post))
        suffix = f" [{'; '.join(extra)}]" if extra else ""
        self._print(f"{pad}{stage.name} ({stage.kind.value}){suffix}")
        for step in stage.steps:
            soft = " (continue on error)" if step.continue_on_error else ""
            self._print(f"{pad}  - {step.name}: {step.display}{soft}")
        for child in stage.children:
            self._print_stage_tree(child, depth + 1)

    def print_results(self, result: PipelineResult) -> None:
        """Print final results summary."""
        lines = ["\n" + "=" * 40, "RESULTS", "=" * 40]
        for r in result.root.iter_results():
            if r is result.root:
                continue
            depth = r.path.count(".")
            duration = f" {r.duration:.1f}s" if r.duration is not None else ""
            timed = " (timed out)" if r.timed_out else ""
            lines.append(f"  {'  ' * depth}{r.name}: {_STATUS_LABELS[r.status]}{timed}{duration}")
        for p in result.post:
            lines.append(f"  post[{p.label}]: {'ok' if p.ok else 'FAILED'}")
        lines.append(f"\nPIPELINE: {_STATUS_LABELS[result.status]}")
        self._print(*lines)

    def print_first_failure(self, result: PipelineResult) -> None:
        report = result.first_failure()
        if report is None:
            return
        hint = None
        if report.exit_code == 127 and report.output:
            hint = next((h for tool, h in TOOL_HINTS.items() if tool in report.output), None)
        self.print_failure(
            report.stage,
            report.reason or "failed",
            exit_code=report.exit_code,
            hint=hint,
            output=report.output,
        )

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
        self._print(*lines, err=True)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            self._print(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._print(f"[DEBUG] {message}", err=True)


class ConsoleEventSink:
    """Renders run events through a Console."""

    def __init__(self, console: Console):
        self.console = console

    def __call__(self, event: Event) -> None:
        if isinstance(event, StageStarted):
            self.console.print_stage_start(event.path)
        elif isinstance(event, StepOutcome):
            o = event.outcome
            self.console.print_step(event.path, o.step, o.exit_code, o.succeeded, o.soft_failed)
        elif isinstance(event, StageCompleted):
            self.console.print_stage_done(event.path, event.status, event.reason)
        elif isinstance(event, PostActionFailed):
            self.console.print_post_failure(event.owner, event.label, event.error)
        elif isinstance(event, PipelineCompleted):
            self.console.print_debug(f"pipeline {event.name} finished: {event.status.value}")


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
