# executor.py
from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from collections import deque
from pathlib import Path
from typing import Callable, Deque, Optional

from . import settings
from .credentials import RedactionFilter
from .env import EnvironmentScope
from .model import ExecutionOutcome, Step

logger = logging.getLogger(__name__)


class CancelToken:
    """
    Run-wide cancellation flag shared by every in-flight step.

    Setting it (directly or when the run timeout fires) makes each running
    step terminate its process and report a timed-out outcome.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)


class OutputTail:
    """Keeps the last `limit` characters of a stream, a line at a time (0 = unbounded)."""

    def __init__(self, limit: int):
        self.limit = limit
        self.size = 0
        self._lines: Deque[str] = deque()

    def append(self, line: str) -> None:
        self._lines.append(line)
        self.size += len(line)
        # drop whole lines while the rest still covers the limit
        while self.limit and len(self._lines) > 1 and self.size - len(self._lines[0]) >= self.limit:
            self.size -= len(self._lines.popleft())

    def text(self) -> str:
        out = "".join(self._lines)
        if self.limit and len(out) > self.limit:
            out = out[-self.limit:]
        return out


class StepExecutor:
    """Runs one external command inside an environment scope."""

    def __init__(
        self,
        workspace: str | Path = ".",
        *,
        redaction: RedactionFilter | None = None,
        output_tail: int | None = None,
        kill_grace: float | None = None,
        on_output: Optional[Callable[[str], None]] = None,
        poll_interval: float = 0.05,
    ):
        """
        Args:
            workspace: Directory every step runs in (step.cwd is relative to it)
            redaction: Shared filter applied to all output before it is kept or shown
            output_tail: Captured characters retained per step
            kill_grace: Seconds between SIGTERM and SIGKILL on cancellation
            on_output: Receives redacted lines of steps that do not capture output
        """
        self.workspace = Path(workspace).resolve()
        self.redaction = redaction or RedactionFilter()
        self.output_tail = settings.OUTPUT_TAIL if output_tail is None else output_tail
        self.kill_grace = settings.KILL_GRACE if kill_grace is None else kill_grace
        self.on_output = on_output
        self.poll_interval = poll_interval

    # ------------------------------------------------------------------

    def run(self, step: Step, scope: EnvironmentScope, cancel: CancelToken | None = None) -> ExecutionOutcome:
        start = time.monotonic()

        if cancel is not None and cancel.is_set():
            return self._outcome(step, -1, start, None, timed_out=True)

        env = scope.flatten()
        cwd = self.workspace
        if step.cwd:
            cwd = (self.workspace / scope.interpolate(step.cwd)).resolve()
        if not cwd.is_dir():
            return self._outcome(step, 1, start, f"cwd not found: {cwd}")

        shell = isinstance(step.command, str)
        try:
            proc = subprocess.Popen(
                step.command if shell else list(step.command),
                shell=shell,
                cwd=str(cwd),
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                start_new_session=True,  # own process group, so cancellation reaches grandchildren
            )
        except (FileNotFoundError, PermissionError) as e:
            return self._outcome(step, 127, start, str(e))

        tail = OutputTail(self.output_tail)
        reader = threading.Thread(
            target=self._pump,
            args=(proc, tail, step.captures_output),
            name=f"stageci-output-{proc.pid}",
            daemon=True,
        )
        reader.start()

        timed_out = False
        try:
            while True:
                try:
                    proc.wait(timeout=self.poll_interval)
                    break
                except subprocess.TimeoutExpired:
                    if cancel is not None and cancel.is_set():
                        timed_out = True
                        self._stop(proc)
                        break
        except BaseException:
            # the step has its own session, so a terminal SIGINT never reached it
            self._stop(proc)
            raise

        reader.join(timeout=max(self.kill_grace, 1.0))
        output = tail.text() if step.captures_output else None
        return self._outcome(step, proc.returncode, start, output, timed_out=timed_out)

    # ------------------------------------------------------------------

    def _pump(self, proc: subprocess.Popen, tail: OutputTail, capture: bool) -> None:
        assert proc.stdout is not None
        for line in proc.stdout:
            if capture:
                tail.append(self.redaction.redact(line))
            elif self.on_output is not None:
                self.on_output(self.redaction.redact(line.rstrip("\n")))
        proc.stdout.close()

    def _stop(self, proc: subprocess.Popen) -> None:
        logger.info("cancelling pid %s", proc.pid)
        self._signal(proc, signal.SIGTERM)
        try:
            proc.wait(timeout=self.kill_grace)
        except subprocess.TimeoutExpired:
            logger.warning("pid %s ignored SIGTERM for %.1fs, killing", proc.pid, self.kill_grace)
            self._signal(proc, signal.SIGKILL)
            proc.wait()

    @staticmethod
    def _signal(proc: subprocess.Popen, sig: int) -> None:
        try:
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            pass
        except (AttributeError, PermissionError):
            proc.send_signal(sig)

    def _outcome(
        self,
        step: Step,
        exit_code: int | None,
        start: float,
        output: str | None,
        *,
        timed_out: bool = False,
    ) -> ExecutionOutcome:
        code = -1 if exit_code is None else exit_code
        failed = code != 0 or timed_out
        # A cancelled step is never absorbed by continue_on_error
        soft = failed and step.continue_on_error and not timed_out

        captured = None
        if output is not None:
            captured = self.redaction.redact(output)
            if self.output_tail and len(captured) > self.output_tail:
                captured = captured[-self.output_tail:]

        outcome = ExecutionOutcome(
            step=step.name,
            exit_code=code,
            duration_ms=int((time.monotonic() - start) * 1000),
            succeeded=not failed or soft,
            soft_failed=soft,
            timed_out=timed_out,
            captured_output=captured,
        )
        logger.debug("step %r exit=%s succeeded=%s", step.name, code, outcome.succeeded)
        return outcome
