import os
import threading
import time

import pytest

from stageci.credentials import RedactionFilter
from stageci.dsl import sh
from stageci.env import EnvironmentScope
from stageci.executor import CancelToken, OutputTail, StepExecutor


def test_runs_with_flattened_scope(executor, root_scope):
    scope = root_scope.derive({"GREETING": "hello", "WHO": "${GREETING}-world"})
    outcome = executor.run(sh("echo", 'echo "$WHO"'), scope)

    assert outcome.exit_code == 0
    assert outcome.succeeded
    assert outcome.captured_output.strip() == "hello-world"
    assert outcome.duration_ms >= 0


def test_non_zero_exit_fails_by_default(executor, root_scope):
    outcome = executor.run(sh("boom", "echo nope; exit 3"), root_scope)

    assert outcome.exit_code == 3
    assert not outcome.succeeded
    assert not outcome.soft_failed
    assert "nope" in outcome.captured_output


def test_continue_on_error_keeps_real_exit_code(executor, root_scope):
    outcome = executor.run(sh("lint", "exit 1", continue_on_error=True), root_scope)

    assert outcome.succeeded
    assert outcome.soft_failed
    assert outcome.exit_code == 1


def test_argv_command_with_missing_binary_is_127(executor, root_scope):
    outcome = executor.run(sh("missing", ["definitely-not-a-real-tool-xyz", "--version"]), root_scope)

    assert outcome.exit_code == 127
    assert not outcome.succeeded


def test_argv_command_runs_without_shell(executor, root_scope):
    outcome = executor.run(sh("printf", ["printf", "%s|", "a b", "$HOME"]), root_scope)

    assert outcome.captured_output == "a b|$HOME|"


def test_captured_output_is_redacted_and_tailed(tmp_path, root_scope):
    redaction = RedactionFilter()
    redaction.register("topsecret")
    executor = StepExecutor(tmp_path, redaction=redaction, output_tail=20)

    outcome = executor.run(sh("leak", "printf 'xxxxxxxxxxxxxxxxxxxxxxxxxxxxxx'; echo topsecret"), root_scope)

    assert "topsecret" not in outcome.captured_output
    assert outcome.captured_output.endswith("****\n")
    assert len(outcome.captured_output) == 20


def test_uncaptured_output_is_forwarded_redacted(tmp_path, root_scope):
    redaction = RedactionFilter()
    redaction.register("hunter2")
    lines = []
    executor = StepExecutor(tmp_path, redaction=redaction, on_output=lines.append)

    outcome = executor.run(sh("stream", "echo one; echo pw=hunter2", capture=False), root_scope)

    assert outcome.captured_output is None
    assert lines == ["one", "pw=****"]


def test_cwd_is_relative_to_workspace_and_interpolated(tmp_path, root_scope):
    (tmp_path / "svc-a").mkdir()
    executor = StepExecutor(tmp_path)
    scope = root_scope.derive({"SERVICE": "svc-a"})

    outcome = executor.run(sh("pwd", "pwd", cwd="${SERVICE}"), scope)

    assert outcome.captured_output.strip().endswith("svc-a")


def test_missing_cwd_fails_without_spawning(executor, root_scope):
    outcome = executor.run(sh("pwd", "pwd", cwd="nowhere"), root_scope)

    assert not outcome.succeeded
    assert "cwd not found" in outcome.captured_output


def test_already_cancelled_token_does_not_spawn(executor, root_scope, tmp_path):
    token = CancelToken()
    token.cancel("timeout")

    outcome = executor.run(sh("touch", "touch ran"), root_scope, token)

    assert outcome.timed_out
    assert not outcome.succeeded
    assert not (tmp_path / "ran").exists()


def test_cancel_terminates_running_process(executor, root_scope):
    token = CancelToken()
    threading.Timer(0.3, token.cancel).start()

    started = time.monotonic()
    outcome = executor.run(sh("sleep", "sleep 10", continue_on_error=True), root_scope, token)

    assert time.monotonic() - started < 5
    assert outcome.timed_out
    # cancellation is never absorbed by continue_on_error
    assert not outcome.succeeded
    assert not outcome.soft_failed


def test_scope_variables_reach_the_process_only(tmp_path):
    executor = StepExecutor(tmp_path)
    scope = EnvironmentScope.root({"ONLY_THIS": "yes"})

    outcome = executor.run(sh("env", ["/usr/bin/env"]), scope)

    assert outcome.captured_output.strip() == "ONLY_THIS=yes"


def test_output_tail_holds_only_the_last_characters():
    tail = OutputTail(100)
    for i in range(10_000):
        tail.append(f"line {i:05d}\n")

    # never more than the limit plus one partially-covering line
    assert tail.size < 100 + len("line 00000\n")
    assert len(tail.text()) == 100
    assert tail.text().endswith("line 09999\n")


def test_large_output_keeps_a_redacted_tail(tmp_path, root_scope):
    redaction = RedactionFilter()
    redaction.register("hunter22")
    executor = StepExecutor(tmp_path, redaction=redaction, output_tail=200)
    step = sh("noisy", 'i=0; while [ $i -lt 5000 ]; do echo "row $i token=hunter22"; i=$((i+1)); done')

    outcome = executor.run(step, root_scope)

    assert outcome.succeeded
    assert len(outcome.captured_output) == 200
    assert outcome.captured_output.endswith("row 4999 token=****\n")
    assert "hunter22" not in outcome.captured_output


class _InterruptingToken(CancelToken):
    """Raises KeyboardInterrupt from the executor's wait loop after a few polls."""

    def __init__(self, polls):
        super().__init__()
        self.polls = polls

    def is_set(self):
        self.polls -= 1
        if self.polls <= 0:
            raise KeyboardInterrupt
        return False


def test_interrupt_terminates_step_process(tmp_path, root_scope):
    executor = StepExecutor(tmp_path, kill_grace=1.0, poll_interval=0.05)
    step = sh("hang", "echo $$ > step.pid; exec sleep 30")

    started = time.monotonic()
    with pytest.raises(KeyboardInterrupt):
        executor.run(step, root_scope, _InterruptingToken(polls=20))

    assert time.monotonic() - started < 5
    pid = int((tmp_path / "step.pid").read_text())
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)
