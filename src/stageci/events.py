# events.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, List

from .model import ExecutionOutcome, StageStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Event:
    """Base class for run events."""


@dataclass(frozen=True)
class StageStarted(Event):
    path: str


@dataclass(frozen=True)
class StageCompleted(Event):
    path: str
    status: StageStatus
    reason: str | None = None
    duration: float | None = None


@dataclass(frozen=True)
class StepOutcome(Event):
    path: str
    outcome: ExecutionOutcome


@dataclass(frozen=True)
class PostActionFailed(Event):
    owner: str
    label: str
    error: str


@dataclass(frozen=True)
class PipelineCompleted(Event):
    name: str
    status: StageStatus


EventSink = Callable[[Event], None]


class EventBus:
    """Fans events out to sinks. A broken sink never fails the run."""

    def __init__(self, sinks: Iterable[EventSink] = ()):
        self.sinks: List[EventSink] = list(sinks)

    def add(self, sink: EventSink) -> None:
        self.sinks.append(sink)

    def emit(self, event: Event) -> None:
        for sink in self.sinks:
            try:
                sink(event)
            except Exception as e:
                logger.warning("Event sink %r failed on %s: %s", sink, type(event).__name__, e)


class LoggingEventSink:
    def __init__(self, log: logging.Logger | None = None):
        self.log = log or logging.getLogger("stageci.events")

    def __call__(self, event: Event) -> None:
        if isinstance(event, StageStarted):
            self.log.info("stage started: %s", event.path)
        elif isinstance(event, StageCompleted):
            self.log.info("stage completed: %s status=%s", event.path, event.status.value)
        elif isinstance(event, StepOutcome):
            o = event.outcome
            self.log.info(
                "step %s/%s exit=%s succeeded=%s duration_ms=%s",
                event.path, o.step, o.exit_code, o.succeeded, o.duration_ms,
            )
        elif isinstance(event, PostActionFailed):
            self.log.warning("post action %s/%s failed: %s", event.owner, event.label, event.error)
        elif isinstance(event, PipelineCompleted):
            self.log.info("pipeline %s completed status=%s", event.name, event.status.value)


class RecordingEventSink:
    """Keeps every event in memory (tests, embedding)."""

    def __init__(self) -> None:
        self.events: List[Event] = []

    def __call__(self, event: Event) -> None:
        self.events.append(event)

    def of_type(self, kind: type) -> list:
        return [e for e in self.events if isinstance(e, kind)]
