# src/stageci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

from .model import (
    Command,
    CredentialBinding,
    CredentialKind,
    PipelineSpec,
    PostAction,
    PostCondition,
    Stage,
    StageKind,
    Step,
)


# ---------------------------------------------------------------------
# Step helper
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: Command,
    *,
    cwd: str | None = None,
    continue_on_error: bool = False,
    capture: bool = True,
) -> Step:
    """Create a shell step. continue_on_error=True is the `|| true` pattern."""
    if not isinstance(cmd, str):
        cmd = tuple(cmd)
    return Step(name=name, command=cmd, cwd=cwd, continue_on_error=continue_on_error, captures_output=capture)


# ---------------------------------------------------------------------
# Post-action helpers
# ---------------------------------------------------------------------

def _post(condition: PostCondition, steps: Sequence[Step], handler, name) -> PostAction:
    if not steps and handler is None:
        raise ValueError(f"post '{condition.value}' needs at least one step or a handler")
    return PostAction(condition=condition, steps=tuple(steps), handler=handler, name=name)


def always(*steps: Step, handler: Optional[Callable[[Any], None]] = None, name: str | None = None) -> PostAction:
    return _post(PostCondition.ALWAYS, steps, handler, name)


def success(*steps: Step, handler: Optional[Callable[[Any], None]] = None, name: str | None = None) -> PostAction:
    return _post(PostCondition.SUCCESS, steps, handler, name)


def failure(*steps: Step, handler: Optional[Callable[[Any], None]] = None, name: str | None = None) -> PostAction:
    return _post(PostCondition.FAILURE, steps, handler, name)


def cleanup(*steps: Step, handler: Optional[Callable[[Any], None]] = None, name: str | None = None) -> PostAction:
    return _post(PostCondition.CLEANUP, steps, handler, name)


# ---------------------------------------------------------------------
# Credential helpers
# ---------------------------------------------------------------------

def username_password(id: str, username_var: str, password_var: str) -> CredentialBinding:
    return CredentialBinding(
        id=id,
        kind=CredentialKind.USERNAME_PASSWORD,
        variable_map={"username": username_var, "password": password_var},
    )


def secret_text(id: str, var: str) -> CredentialBinding:
    return CredentialBinding(id=id, kind=CredentialKind.SECRET, variable_map={"secret": var})


def ssh_key(id: str, key_file_var: str, *, username_var: str | None = None,
            passphrase_var: str | None = None) -> CredentialBinding:
    """The key is written to a private temp file; key_file_var holds its path."""
    mapping = {"key": key_file_var}
    if username_var:
        mapping["username"] = username_var
    if passphrase_var:
        mapping["passphrase"] = passphrase_var
    return CredentialBinding(id=id, kind=CredentialKind.SSH_KEY, variable_map=mapping)


# ---------------------------------------------------------------------
# Stage helpers
# ---------------------------------------------------------------------

def stage(
    name: str,
    *steps: Step,
    env: Optional[Dict[str, Any]] = None,
    credentials: Optional[Sequence[CredentialBinding]] = None,
    post: Optional[Sequence[PostAction]] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> Stage:
    """Leaf stage: an ordered list of steps."""
    steps_final = list(steps)
    if not steps_final:
        raise ValueError(f"stage({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return Stage(
        name=name,
        kind=StageKind.LEAF,
        steps=tuple(steps_final),
        env=_env(env),
        credentials=tuple(credentials or ()),
        post=tuple(post or ()),
    )


def sequential(
    name: str,
    *children: Union[Stage, List[Stage]],
    env: Optional[Dict[str, Any]] = None,
    credentials: Optional[Sequence[CredentialBinding]] = None,
    post: Optional[Sequence[PostAction]] = None,
) -> Stage:
    return Stage(
        name=name,
        kind=StageKind.SEQUENTIAL,
        children=_flatten(children),
        env=_env(env),
        credentials=tuple(credentials or ()),
        post=tuple(post or ()),
    )


def parallel(
    name: str,
    *children: Union[Stage, List[Stage]],
    env: Optional[Dict[str, Any]] = None,
    credentials: Optional[Sequence[CredentialBinding]] = None,
    post: Optional[Sequence[PostAction]] = None,
) -> Stage:
    """
    Composite whose children run concurrently. Children writing to the same
    workspace path must be serialized by the author (wrap them in sequential()).
    """
    return Stage(
        name=name,
        kind=StageKind.PARALLEL,
        children=_flatten(children),
        env=_env(env),
        credentials=tuple(credentials or ()),
        post=tuple(post or ()),
    )


def _env(env: Optional[Dict[str, Any]]) -> Dict[str, str]:
    # force values to str for env compatibility
    return {k: str(v) for k, v in (env or {}).items()}


def _flatten(children: Iterable[Union[Stage, List[Stage]]]) -> tuple:
    out: List[Stage] = []
    for c in children:
        if isinstance(c, Stage):
            out.append(c)
        else:
            out.extend(c)
    return tuple(out)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander.

    Example:
        parallel("tests", matrix("jdk", ["17", "21"]).stages(
            lambda v: stage(f"test-jdk{v}", sh("test", "./mvnw test"), env={"JDK": v})
        ))
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def stages(self, builder: Callable[[Any], Stage]) -> List[Stage]:
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Pipeline helper (single-file story)
# ---------------------------------------------------------------------

def pipeline(
    name: str,
    *stages: Union[Stage, List[Stage]],
    env: Optional[Dict[str, Any]] = None,
    credentials: Optional[Sequence[CredentialBinding]] = None,
    post: Optional[Sequence[PostAction]] = None,
) -> PipelineSpec:
    """
    Users can write, in stageci_pipeline.py:

        from stageci.dsl import pipeline, stage, sh

        def pipeline_spec():
            return pipeline("app", stage("build", sh("compile", "make")))

    Or define PIPELINE = pipeline(...) directly.
    """
    flat = _flatten(stages)
    if not flat:
        raise ValueError(f"pipeline({name!r}) must have at least one stage")
    return PipelineSpec(
        name=name,
        stages=flat,
        env=_env(env),
        credentials=tuple(credentials or ()),
        post=tuple(post or ()),
    )
