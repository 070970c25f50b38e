# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union


class StageKind(str, Enum):
    LEAF = "leaf"
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (StageStatus.SUCCEEDED, StageStatus.FAILED, StageStatus.SKIPPED)


class CredentialKind(str, Enum):
    USERNAME_PASSWORD = "username_password"
    SECRET = "secret"
    SSH_KEY = "ssh_key"


class PostCondition(str, Enum):
    ALWAYS = "always"
    SUCCESS = "success"
    FAILURE = "failure"
    CLEANUP = "cleanup"


# Secret components each credential kind may expose to a scope
CREDENTIAL_COMPONENTS: Dict[CredentialKind, Tuple[str, ...]] = {
    CredentialKind.USERNAME_PASSWORD: ("username", "password"),
    CredentialKind.SECRET: ("secret",),
    CredentialKind.SSH_KEY: ("key", "username", "passphrase"),
}


Command = Union[str, Sequence[str]]


@dataclass(frozen=True)
class Step:
    """A single external command inside a leaf stage."""
    name: str
    command: Command
    continue_on_error: bool = False
    captures_output: bool = True
    cwd: str | None = None

    @property
    def display(self) -> str:
        if isinstance(self.command, str):
            return self.command
        return " ".join(self.command)


@dataclass(frozen=True)
class CredentialBinding:
    """
    Maps the components of a stored credential onto variable names.

    variable_map: component -> env var, e.g. {"username": "REG_USER", "password": "REG_PASS"}
    """
    id: str
    kind: CredentialKind
    variable_map: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        allowed = CREDENTIAL_COMPONENTS[self.kind]
        unknown = sorted(set(self.variable_map) - set(allowed))
        if unknown:
            raise ValueError(
                f"Credential binding {self.id!r} ({self.kind.value}) maps unknown components {unknown}. "
                f"Allowed: {list(allowed)}"
            )
        if not self.variable_map:
            raise ValueError(f"Credential binding {self.id!r} does not map any variables")


@dataclass(frozen=True)
class PostAction:
    """A block of steps (and/or a Python handler) run after a stage or the pipeline."""
    condition: PostCondition
    steps: Tuple[Step, ...] = ()
    handler: Optional[Callable[[Any], None]] = None
    name: str | None = None

    @property
    def label(self) -> str:
        return self.name or self.condition.value


@dataclass(frozen=True)
class Stage:
    """
    A node of the stage graph.

    Leaf stages own steps; sequential/parallel composites own children.
    """
    name: str
    kind: StageKind = StageKind.LEAF
    steps: Tuple[Step, ...] = ()
    children: Tuple["Stage", ...] = ()
    env: Dict[str, str] = field(default_factory=dict)
    credentials: Tuple[CredentialBinding, ...] = ()
    post: Tuple[PostAction, ...] = ()

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Stage name must not be empty")
        if self.kind is StageKind.LEAF and self.children:
            raise ValueError(f"Leaf stage '{self.name}' cannot have children")
        if self.kind is not StageKind.LEAF and self.steps:
            raise ValueError(
                f"{self.kind.value.capitalize()} stage '{self.name}' cannot have steps; "
                "put them on a leaf child"
            )
        _check_unique_names(self.children, owner=self.name)

    @property
    def is_leaf(self) -> bool:
        return self.kind is StageKind.LEAF

    def walk(self, prefix: str = ""):
        """Yield (path, stage) for this stage and all descendants, in declared order."""
        path = f"{prefix}.{self.name}" if prefix else self.name
        yield path, self
        for child in self.children:
            yield from child.walk(path)


@dataclass(frozen=True)
class PipelineSpec:
    """Top-level stages run in order, as an implicit sequential root."""
    name: str
    stages: Tuple[Stage, ...]
    env: Dict[str, str] = field(default_factory=dict)
    credentials: Tuple[CredentialBinding, ...] = ()
    post: Tuple[PostAction, ...] = ()

    def __post_init__(self) -> None:
        _check_unique_names(self.stages, owner=self.name)

    def root(self) -> Stage:
        # env, credentials and post are applied by the engine around the root
        return Stage(name=self.name, kind=StageKind.SEQUENTIAL, children=self.stages)


def _check_unique_names(stages: Sequence[Stage], owner: str) -> None:
    names = [s.name for s in stages]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ValueError(f"Duplicate stage names under '{owner}': {dupes}")


# ----------------------------------------------------------------------
# Results
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class ExecutionOutcome:
    """What happened when one step ran."""
    step: str
    exit_code: int
    duration_ms: int
    succeeded: bool
    soft_failed: bool = False
    timed_out: bool = False
    captured_output: str | None = None


@dataclass(frozen=True)
class PostActionOutcome:
    owner: str
    condition: PostCondition
    label: str
    ok: bool
    error: str | None = None
    steps: Tuple[ExecutionOutcome, ...] = ()


@dataclass(frozen=True)
class StageResult:
    """Terminal record of a stage; children are in declared order."""
    name: str
    path: str
    kind: StageKind
    status: StageStatus
    started_at: datetime | None = None
    ended_at: datetime | None = None
    children: Tuple["StageResult", ...] = ()
    steps: Tuple[ExecutionOutcome, ...] = ()
    post: Tuple[PostActionOutcome, ...] = ()
    reason: str | None = None
    timed_out: bool = False

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()

    def find(self, path: str) -> Optional["StageResult"]:
        if self.path == path:
            return self
        for child in self.children:
            hit = child.find(path)
            if hit is not None:
                return hit
        return None

    def iter_results(self):
        yield self
        for child in self.children:
            yield from child.iter_results()


@dataclass(frozen=True)
class FailureReport:
    stage: str
    reason: str | None
    step: str | None = None
    exit_code: int | None = None
    output: str | None = None


@dataclass(frozen=True)
class PipelineResult:
    root: StageResult
    post: Tuple[PostActionOutcome, ...] = ()

    @property
    def status(self) -> StageStatus:
        return self.root.status

    @property
    def succeeded(self) -> bool:
        return self.status is StageStatus.SUCCEEDED

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1

    def with_post(self, post: List[PostActionOutcome]) -> "PipelineResult":
        return PipelineResult(root=self.root, post=tuple(post))

    def first_failure(self) -> FailureReport | None:
        """
        The first failed leaf in declared order (not completion order),
        with its failing step's redacted output.
        """
        if self.succeeded:
            return None
        leaf = _first_failed_leaf(self.root)
        if leaf is None:
            return FailureReport(stage=self.root.path, reason=self.root.reason)
        failing = next((o for o in leaf.steps if not o.succeeded), None)
        if failing is None:
            return FailureReport(stage=leaf.path, reason=leaf.reason)
        return FailureReport(
            stage=leaf.path,
            reason=leaf.reason,
            step=failing.step,
            exit_code=failing.exit_code,
            output=failing.captured_output,
        )


def _first_failed_leaf(result: StageResult) -> StageResult | None:
    if result.status is not StageStatus.FAILED:
        return None
    for child in result.children:
        hit = _first_failed_leaf(child)
        if hit is not None:
            return hit
    # Failed with no failed child: the failure happened here (leaf or aborted composite)
    return result
