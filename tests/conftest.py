import os

import pytest

from stageci.credentials import CredentialStore, InMemorySecretBackend, RedactionFilter
from stageci.env import EnvironmentScope
from stageci.events import EventBus, RecordingEventSink
from stageci.executor import StepExecutor
from stageci.runner import ExecutionEngine

BASE_ENV = {"PATH": os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin")}


@pytest.fixture
def backend():
    return InMemorySecretBackend()


@pytest.fixture
def recorder():
    return RecordingEventSink()


@pytest.fixture
def root_scope():
    return EnvironmentScope.root(BASE_ENV)


@pytest.fixture
def executor(tmp_path):
    return StepExecutor(tmp_path, redaction=RedactionFilter(), kill_grace=1.0)


@pytest.fixture
def make_engine(tmp_path, backend, recorder):
    def _make(**kwargs):
        redaction = RedactionFilter()
        store = CredentialStore(backend, redaction=redaction)
        executor = StepExecutor(tmp_path, redaction=redaction, kill_grace=1.0)
        return ExecutionEngine(executor, store, events=EventBus([recorder]), **kwargs)

    return _make
