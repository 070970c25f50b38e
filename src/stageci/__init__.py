from .dsl import (
    sh, stage, sequential, parallel, matrix, pipeline,
    always, success, failure, cleanup,
    username_password, secret_text, ssh_key,
)
from .env import EnvironmentScope
from .credentials import CredentialStore, RedactionFilter, InMemorySecretBackend, JsonFileSecretBackend, EnvSecretBackend
from .executor import StepExecutor, CancelToken
from .runner import ExecutionEngine, run_pipeline
from .post import PostActionDispatcher
from .loader import load_pipeline
from .model import Step, Stage, StageKind, StageStatus, PipelineSpec, PipelineResult, StageResult, ExecutionOutcome

__all__ = [
    "sh", "stage", "sequential", "parallel", "matrix", "pipeline",
    "always", "success", "failure", "cleanup",
    "username_password", "secret_text", "ssh_key",
    "EnvironmentScope", "CredentialStore", "RedactionFilter",
    "InMemorySecretBackend", "JsonFileSecretBackend", "EnvSecretBackend",
    "StepExecutor", "CancelToken", "ExecutionEngine", "run_pipeline", "PostActionDispatcher",
    "load_pipeline",
    "Step", "Stage", "StageKind", "StageStatus", "PipelineSpec", "PipelineResult", "StageResult", "ExecutionOutcome",
]
