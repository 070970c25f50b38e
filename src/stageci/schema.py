# schema.py
"""
Wire schema for pipelines supplied as structured data (JSON).

The pydantic models validate the incoming document; ``to_spec`` turns it
into the immutable dataclass model the engine runs.
"""
from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .model import (
    CredentialBinding,
    CredentialKind,
    PipelineSpec,
    PostAction,
    PostCondition,
    Stage,
    StageKind,
    Step,
)


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid")


class StepDoc(_Strict):
    name: str
    command: Union[str, List[str]]
    continue_on_error: bool = False
    captures_output: bool = True
    cwd: Optional[str] = None


class CredentialDoc(_Strict):
    id: str
    kind: CredentialKind
    variables: Dict[str, str] = Field(default_factory=dict)


class PostDoc(_Strict):
    condition: PostCondition
    steps: List[StepDoc] = Field(default_factory=list)
    name: Optional[str] = None


class StageDoc(_Strict):
    name: str
    kind: Literal["leaf", "sequential", "parallel"] = "leaf"
    steps: List[StepDoc] = Field(default_factory=list)
    children: List["StageDoc"] = Field(default_factory=list)
    env: Dict[str, Any] = Field(default_factory=dict)
    credentials: List[CredentialDoc] = Field(default_factory=list)
    post: List[PostDoc] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_shape(self) -> "StageDoc":
        if self.kind == "leaf" and self.children:
            raise ValueError(f"leaf stage '{self.name}' cannot have children")
        if self.kind != "leaf" and self.steps:
            raise ValueError(f"{self.kind} stage '{self.name}' cannot have steps")
        return self


class PipelineDoc(_Strict):
    name: str
    stages: List[StageDoc]
    env: Dict[str, Any] = Field(default_factory=dict)
    credentials: List[CredentialDoc] = Field(default_factory=list)
    post: List[PostDoc] = Field(default_factory=list)


StageDoc.model_rebuild()


# ----------------------------------------------------------------------
# Document <-> model
# ----------------------------------------------------------------------

def _step(doc: StepDoc) -> Step:
    command = doc.command if isinstance(doc.command, str) else tuple(doc.command)
    return Step(
        name=doc.name,
        command=command,
        continue_on_error=doc.continue_on_error,
        captures_output=doc.captures_output,
        cwd=doc.cwd,
    )


def _binding(doc: CredentialDoc) -> CredentialBinding:
    return CredentialBinding(id=doc.id, kind=doc.kind, variable_map=dict(doc.variables))


def _post(doc: PostDoc) -> PostAction:
    return PostAction(condition=doc.condition, steps=tuple(_step(s) for s in doc.steps), name=doc.name)


def _stage(doc: StageDoc) -> Stage:
    return Stage(
        name=doc.name,
        kind=StageKind(doc.kind),
        steps=tuple(_step(s) for s in doc.steps),
        children=tuple(_stage(c) for c in doc.children),
        env={k: str(v) for k, v in doc.env.items()},
        credentials=tuple(_binding(c) for c in doc.credentials),
        post=tuple(_post(p) for p in doc.post),
    )


def to_spec(doc: PipelineDoc) -> PipelineSpec:
    return PipelineSpec(
        name=doc.name,
        stages=tuple(_stage(s) for s in doc.stages),
        env={k: str(v) for k, v in doc.env.items()},
        credentials=tuple(_binding(c) for c in doc.credentials),
        post=tuple(_post(p) for p in doc.post),
    )


def pipeline_from_dict(data: Dict[str, Any]) -> PipelineSpec:
    """Validate a parsed document and build the model (raises pydantic.ValidationError / ValueError)."""
    return to_spec(PipelineDoc.model_validate(data))


def _step_dict(step: Step) -> dict:
    d: Dict[str, Any] = {
        "name": step.name,
        "command": step.command if isinstance(step.command, str) else list(step.command),
    }
    if step.continue_on_error:
        d["continue_on_error"] = True
    if not step.captures_output:
        d["captures_output"] = False
    if step.cwd is not None:
        d["cwd"] = step.cwd
    return d


def _binding_dict(b: CredentialBinding) -> dict:
    return {"id": b.id, "kind": b.kind.value, "variables": dict(b.variable_map)}


def _post_dict(p: PostAction) -> dict:
    # Python handlers have no wire form; only steps are serialized
    d: Dict[str, Any] = {"condition": p.condition.value, "steps": [_step_dict(s) for s in p.steps]}
    if p.name:
        d["name"] = p.name
    return d


def _stage_dict(stage: Stage) -> dict:
    d: Dict[str, Any] = {"name": stage.name, "kind": stage.kind.value}
    if stage.steps:
        d["steps"] = [_step_dict(s) for s in stage.steps]
    if stage.children:
        d["children"] = [_stage_dict(c) for c in stage.children]
    if stage.env:
        d["env"] = dict(stage.env)
    if stage.credentials:
        d["credentials"] = [_binding_dict(b) for b in stage.credentials]
    if stage.post:
        d["post"] = [_post_dict(p) for p in stage.post]
    return d


def pipeline_to_dict(spec: PipelineSpec) -> dict:
    """Reverse of pipeline_from_dict()."""
    d: Dict[str, Any] = {"name": spec.name, "stages": [_stage_dict(s) for s in spec.stages]}
    if spec.env:
        d["env"] = dict(spec.env)
    if spec.credentials:
        d["credentials"] = [_binding_dict(b) for b in spec.credentials]
    if spec.post:
        d["post"] = [_post_dict(p) for p in spec.post]
    return d
