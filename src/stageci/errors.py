# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


class StageCIError(Exception):
    """Base class for every error raised by stageci."""


@dataclass
class StepFailure(StageCIError):
    """A step exited non-zero and its policy does not absorb the failure."""
    stage: str
    step: str
    exit_code: int
    output: str | None = None

    def __str__(self) -> str:
        return f"[{self.stage}] step '{self.step}' failed (exit={self.exit_code})"


class CredentialError(StageCIError):
    """Any failure on the credential resolution boundary."""


class CredentialNotFound(CredentialError):
    def __init__(self, credential_id: str):
        super().__init__(f"Credential not found: {credential_id!r}")
        self.credential_id = credential_id


class CredentialBackendUnavailable(CredentialError):
    def __init__(self, credential_id: str, reason: str):
        super().__init__(f"Secret backend unavailable while resolving {credential_id!r}: {reason}")
        self.credential_id = credential_id
        self.reason = reason


class CredentialKindMismatch(CredentialError):
    def __init__(self, credential_id: str, expected: str, actual: str):
        super().__init__(
            f"Credential {credential_id!r} is registered as {actual!r}, binding expects {expected!r}"
        )
        self.credential_id = credential_id


@dataclass
class StageAborted(StageCIError):
    """A stage stopped before its steps could finish (credential failure etc.)."""
    stage: str
    cause: str

    def __str__(self) -> str:
        return f"[{self.stage}] aborted: {self.cause}"


@dataclass
class TimedOut(StageCIError):
    stage: str
    timeout: float | None = None

    def __str__(self) -> str:
        if self.timeout is None:
            return f"[{self.stage}] cancelled"
        return f"[{self.stage}] timed out after {self.timeout:g}s"


@dataclass
class PostActionFailure(StageCIError):
    """Non-fatal: logged and recorded, never changes a finalized status."""
    owner: str
    condition: str
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        return f"[{self.owner}] post '{self.condition}' failed: {self.message}"


class UndefinedVariable(KeyError, StageCIError):
    def __init__(self, name: str):
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"Undefined variable: ${{{self.name}}}"


class PipelineLoadError(StageCIError):
    """The pipeline file could not be found, imported or validated."""
