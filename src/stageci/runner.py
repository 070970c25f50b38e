# runner.py
from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from contextlib import ExitStack
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Mapping, Optional, Tuple

from .credentials import CredentialStore, RedactionFilter, SecretBackend
from .env import EnvironmentScope
from .errors import CredentialError, StageAborted, StepFailure, TimedOut
from .events import EventBus, EventSink, PipelineCompleted, StageCompleted, StageStarted, StepOutcome
from .executor import CancelToken, StepExecutor
from .model import (
    ExecutionOutcome,
    PipelineResult,
    PipelineSpec,
    Stage,
    StageKind,
    StageResult,
    StageStatus,
)
from .post import PostActionDispatcher

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _Body:
    """Mutable bookkeeping for a stage while it runs; frozen into a StageResult at the end."""
    status: StageStatus = StageStatus.RUNNING
    children: List[StageResult] = field(default_factory=list)
    steps: List[ExecutionOutcome] = field(default_factory=list)
    reason: str | None = None
    timed_out: bool = False

    def fail(self, reason: str, *, timed_out: bool = False) -> None:
        self.status = StageStatus.FAILED
        self.reason = reason
        self.timed_out = self.timed_out or timed_out


class ExecutionEngine:
    """
    Walks a stage graph and runs it to completion.

    - Leaf stages run their steps in order; the first effective failure stops the stage.
    - Sequential composites skip every sibling after a failed child.
    - Parallel composites run every child concurrently and always join all of them.
    - A stage's own post actions run right after it terminates.
    - Pipeline post actions run once the root is terminal, even after a timeout.
    """

    def __init__(
        self,
        executor: StepExecutor | None = None,
        credentials: CredentialStore | None = None,
        *,
        events: EventBus | None = None,
        max_workers: int | None = None,
        timeout: float | None = None,
    ):
        self.credentials = credentials or CredentialStore()
        self.executor = executor or StepExecutor(redaction=self.credentials.redaction)
        if self.executor.redaction is not self.credentials.redaction:
            # bound secrets are registered on the store's filter; output must be masked by the same one
            logger.debug("re-pointing executor redaction at the credential store filter")
            self.executor.redaction = self.credentials.redaction
        self.events = events or EventBus()
        self.post = PostActionDispatcher(self.executor, self.events)
        self.max_workers = max_workers
        self.timeout = timeout

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self, spec: PipelineSpec, scope: EnvironmentScope | None = None) -> PipelineResult:
        base = scope if scope is not None else EnvironmentScope.root(os.environ)
        pipeline_scope = base.derive(spec.env)
        cancel = CancelToken()

        timer: Optional[threading.Timer] = None
        if self.timeout:
            timer = threading.Timer(self.timeout, cancel.cancel, args=("timeout",))
            timer.daemon = True
            timer.start()

        with ExitStack() as stack:
            try:
                bound = stack.enter_context(self.credentials.bind_all(spec.credentials, pipeline_scope))
            except CredentialError as e:
                root = self._aborted(spec.root(), spec.name, str(StageAborted(spec.name, str(e))))
                bound = pipeline_scope
            else:
                try:
                    root = self._run_stage(spec.root(), bound, cancel, prefix="", is_root=True)
                except BaseException:
                    # interrupted: stop every in-flight step before unwinding
                    cancel.cancel("interrupted")
                    raise
            finally:
                if timer is not None:
                    timer.cancel()

            result = PipelineResult(root=root)
            # Pipeline post actions get a fresh token: cleanup must run even after a timeout
            post = self.post.dispatch(spec.post, result.status, bound, owner=spec.name, subject=result)
            result = result.with_post(post)

        self.events.emit(PipelineCompleted(name=spec.name, status=result.status))
        return result

    # ------------------------------------------------------------------
    # Stage walking
    # ------------------------------------------------------------------

    def _run_stage(
        self,
        stage: Stage,
        scope: EnvironmentScope,
        cancel: CancelToken,
        prefix: str,
        *,
        is_root: bool = False,
    ) -> StageResult:
        path = f"{prefix}.{stage.name}" if prefix else stage.name
        if cancel.is_set():
            return self._skipped(stage, path)

        started = _now()
        self.events.emit(StageStarted(path=path))
        body = _Body()
        stage_scope = scope.derive(stage.env)
        post = ()

        with ExitStack() as stack:
            try:
                bound = stack.enter_context(self.credentials.bind_all(stage.credentials, stage_scope))
            except CredentialError as e:
                bound = stage_scope
                body.fail(str(StageAborted(path, str(e))))
                body.children = [self._skipped(c, f"{path}.{c.name}") for c in stage.children]
                logger.error("%s", body.reason)
            else:
                child_prefix = "" if is_root else path
                try:
                    self._run_body(stage, bound, cancel, path, child_prefix, body)
                except Exception as e:
                    logger.exception("internal error while running stage %s", path)
                    body.fail(str(StageAborted(path, f"{type(e).__name__}: {e}")))

            if body.status is StageStatus.RUNNING:
                body.status = StageStatus.SUCCEEDED

            result = StageResult(
                name=stage.name,
                path=path,
                kind=stage.kind,
                status=body.status,
                started_at=started,
                ended_at=_now(),
                children=tuple(body.children),
                steps=tuple(body.steps),
                reason=body.reason,
                timed_out=body.timed_out,
            )
            if stage.post:
                post = self.post.dispatch(stage.post, result.status, bound, owner=path, subject=result, cancel=cancel)

        if post:
            result = replace(result, post=tuple(post))
        self.events.emit(
            StageCompleted(path=path, status=result.status, reason=result.reason, duration=result.duration)
        )
        return result

    def _run_body(
        self,
        stage: Stage,
        scope: EnvironmentScope,
        cancel: CancelToken,
        path: str,
        child_prefix: str,
        body: _Body,
    ) -> None:
        if stage.kind is StageKind.LEAF:
            self._run_leaf(stage, scope, cancel, path, body)
        elif stage.kind is StageKind.SEQUENTIAL:
            self._run_sequential(stage, scope, cancel, path, child_prefix, body)
        else:
            self._run_parallel(stage, scope, cancel, path, child_prefix, body)

        if body.status is StageStatus.RUNNING and cancel.is_set():
            # Interrupted part-way: some child never got to start
            if any(c.status is StageStatus.SKIPPED for c in body.children):
                body.fail(str(TimedOut(path, self.timeout)), timed_out=True)

    def _run_leaf(self, stage: Stage, scope: EnvironmentScope, cancel: CancelToken, path: str, body: _Body) -> None:
        for step in stage.steps:
            if cancel.is_set():
                body.fail(str(TimedOut(path, self.timeout)), timed_out=True)
                return

            outcome = self.executor.run(step, scope, cancel)
            body.steps.append(outcome)
            self.events.emit(StepOutcome(path=path, outcome=outcome))

            if outcome.timed_out:
                body.fail(str(TimedOut(path, self.timeout)), timed_out=True)
                return
            if not outcome.succeeded:
                body.fail(str(StepFailure(stage=path, step=step.name, exit_code=outcome.exit_code)))
                return
            if outcome.soft_failed:
                logger.info("[%s] step '%s' exited %s (continue_on_error)", path, step.name, outcome.exit_code)

    def _run_sequential(
        self, stage: Stage, scope: EnvironmentScope, cancel: CancelToken, path: str, prefix: str, body: _Body
    ) -> None:
        failed: StageResult | None = None
        for child in stage.children:
            child_path = f"{prefix}.{child.name}" if prefix else child.name
            if failed is not None:
                body.children.append(self._skipped(child, child_path))
                continue
            result = self._run_stage(child, scope, cancel, prefix)
            body.children.append(result)
            if result.status is StageStatus.FAILED:
                failed = result

        if failed is not None:
            body.fail(str(StageAborted(path, f"stage '{failed.path}' failed")),
                      timed_out=failed.timed_out)

    def _run_parallel(
        self, stage: Stage, scope: EnvironmentScope, cancel: CancelToken, path: str, prefix: str, body: _Body
    ) -> None:
        if not stage.children:
            return

        workers = len(stage.children)
        if self.max_workers:
            workers = max(1, min(workers, self.max_workers))

        # One task per child; results are collected in declared order, not completion order
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"stageci-{stage.name}") as pool:
            futures = [pool.submit(self._run_stage, child, scope, cancel, prefix) for child in stage.children]
            try:
                done, _ = wait(futures, return_when=FIRST_EXCEPTION)
                for f in done:
                    if f.exception() is not None:
                        raise f.exception()
                results = [f.result() for f in futures]
            except BaseException:
                # the pool joins its workers on exit; cancel so they finish promptly
                cancel.cancel("interrupted")
                raise

        body.children.extend(results)
        failed = [r for r in results if r.status is StageStatus.FAILED]
        if failed:
            names = ", ".join(r.path for r in failed)
            body.fail(str(StageAborted(path, f"parallel branch(es) failed: {names}")),
                      timed_out=any(r.timed_out for r in failed))

    # ------------------------------------------------------------------

    def _skipped(self, stage: Stage, path: str) -> StageResult:
        return StageResult(
            name=stage.name,
            path=path,
            kind=stage.kind,
            status=StageStatus.SKIPPED,
            children=tuple(self._skipped(c, f"{path}.{c.name}") for c in stage.children),
        )

    def _aborted(self, stage: Stage, path: str, reason: str) -> StageResult:
        now = _now()
        return StageResult(
            name=stage.name,
            path=path,
            kind=stage.kind,
            status=StageStatus.FAILED,
            started_at=now,
            ended_at=now,
            children=tuple(self._skipped(c, c.name) for c in stage.children),
            reason=reason,
        )


def run_pipeline(
    spec: PipelineSpec,
    *,
    workspace: str | Path = ".",
    env: Mapping[str, str] | None = None,
    backend: SecretBackend | None = None,
    timeout: float | None = None,
    max_workers: int | None = None,
    sinks: Iterable[EventSink] = (),
    strict_env: bool = False,
    redaction_marker: str | None = None,
    on_output=None,
) -> PipelineResult:
    """
    Convenience wrapper wiring the executor, credential store and engine together.

    env defaults to a copy of os.environ and becomes the root scope.
    """
    redaction = RedactionFilter(marker=redaction_marker) if redaction_marker else RedactionFilter()
    credentials = CredentialStore(backend, redaction=redaction)
    executor = StepExecutor(workspace, redaction=redaction, on_output=on_output)
    engine = ExecutionEngine(
        executor,
        credentials,
        events=EventBus(sinks),
        max_workers=max_workers,
        timeout=timeout,
    )
    root_env = dict(os.environ) if env is None else dict(env)
    return engine.run(spec, EnvironmentScope.root(root_env, strict=strict_env))


def summarize(result: PipelineResult) -> List[Tuple[str, str]]:
    """(path, status) for every stage below the root, in declared order."""
    return [(r.path, r.status.value) for r in result.root.iter_results() if r is not result.root]
