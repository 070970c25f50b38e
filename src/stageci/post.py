# post.py
from __future__ import annotations

import logging
from typing import Any, Iterable, List

from .env import EnvironmentScope
from .errors import PostActionFailure
from .events import EventBus, PostActionFailed
from .executor import CancelToken, StepExecutor
from .model import ExecutionOutcome, PostAction, PostActionOutcome, PostCondition, StageStatus

logger = logging.getLogger(__name__)


def select_post_actions(actions: Iterable[PostAction], status: StageStatus) -> List[PostAction]:
    """
    Blocks to run for a final status, in dispatch order:
    always, then success XOR failure, then cleanup.
    """
    actions = list(actions)
    outcome_condition = PostCondition.SUCCESS if status is StageStatus.SUCCEEDED else PostCondition.FAILURE
    ordered: List[PostAction] = []
    for condition in (PostCondition.ALWAYS, outcome_condition, PostCondition.CLEANUP):
        ordered.extend(a for a in actions if a.condition is condition)
    return ordered


class PostActionDispatcher:
    """
    Runs post-action blocks for a finished stage or pipeline.

    Every selected block runs even if an earlier one failed; failures are
    logged and recorded on the returned outcomes only.
    """

    def __init__(self, executor: StepExecutor, events: EventBus | None = None):
        self.executor = executor
        self.events = events or EventBus()

    def dispatch(
        self,
        actions: Iterable[PostAction],
        status: StageStatus,
        scope: EnvironmentScope,
        *,
        owner: str,
        subject: Any = None,
        cancel: CancelToken | None = None,
    ) -> List[PostActionOutcome]:
        if not status.terminal or status is StageStatus.SKIPPED:
            return []

        outcomes: List[PostActionOutcome] = []
        for action in select_post_actions(actions, status):
            outcome = self._run_block(action, scope, owner=owner, subject=subject, cancel=cancel)
            if not outcome.ok:
                failure = PostActionFailure(owner=owner, condition=action.condition.value, message=outcome.error or "")
                logger.warning("%s", failure)
                self.events.emit(PostActionFailed(owner=owner, label=action.label, error=outcome.error or ""))
            outcomes.append(outcome)
        return outcomes

    def _run_block(
        self,
        action: PostAction,
        scope: EnvironmentScope,
        *,
        owner: str,
        subject: Any,
        cancel: CancelToken | None,
    ) -> PostActionOutcome:
        ran: List[ExecutionOutcome] = []
        error: str | None = None

        for step in action.steps:
            try:
                result = self.executor.run(step, scope, cancel)
            except Exception as e:
                error = f"step '{step.name}' raised {type(e).__name__}: {e}"
                break
            ran.append(result)
            if not result.succeeded:
                error = f"step '{step.name}' exited {result.exit_code}"
                break

        if error is None and action.handler is not None:
            try:
                action.handler(subject)
            except Exception as e:
                error = f"handler raised {type(e).__name__}: {e}"

        return PostActionOutcome(
            owner=owner,
            condition=action.condition,
            label=action.label,
            ok=error is None,
            error=error,
            steps=tuple(ran),
        )
