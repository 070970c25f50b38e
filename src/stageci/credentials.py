# credentials.py
from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Mapping, Protocol

from .env import EnvironmentScope
from .errors import CredentialBackendUnavailable, CredentialKindMismatch, CredentialNotFound
from .model import CREDENTIAL_COMPONENTS, CredentialBinding, CredentialKind

logger = logging.getLogger(__name__)

DEFAULT_MARKER = "****"


# ---------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------

class RedactionFilter:
    """
    Registry of secret literals masked out of any retained/displayed text.

    Shared by every concurrent stage of a run, so insertion is lock-guarded.
    """

    # Very short values would mask ordinary text ("a", "on", ...)
    MIN_LENGTH = 3

    def __init__(self, marker: str = DEFAULT_MARKER):
        self.marker = marker
        self._secrets: set[str] = set()
        self._lock = threading.Lock()

    def register(self, value: str | None) -> None:
        if not value:
            return
        candidates = {value}
        # multi-line secrets (keys) may leak one line at a time
        if "\n" in value:
            candidates.update(line.strip() for line in value.splitlines())
        with self._lock:
            for c in candidates:
                if len(c) >= self.MIN_LENGTH:
                    self._secrets.add(c)

    def __len__(self) -> int:
        with self._lock:
            return len(self._secrets)

    def redact(self, text: str | None) -> str | None:
        if not text:
            return text
        with self._lock:
            secrets = sorted(self._secrets, key=len, reverse=True)
        for secret in secrets:
            if secret in text:
                text = text.replace(secret, self.marker)
        return text


# ---------------------------------------------------------------------
# Secret backends
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class SecretRecord:
    kind: CredentialKind
    values: Dict[str, str] = field(default_factory=dict)


class SecretBackend(Protocol):
    def fetch(self, credential_id: str) -> SecretRecord:
        """Return the record or raise CredentialNotFound / CredentialBackendUnavailable."""
        ...


class InMemorySecretBackend:
    """Dictionary-backed backend; handy for tests and embedding."""

    def __init__(self, records: Mapping[str, SecretRecord] | None = None):
        self._records: Dict[str, SecretRecord] = dict(records or {})

    def add(self, credential_id: str, kind: CredentialKind, **values: str) -> None:
        self._records[credential_id] = SecretRecord(kind=kind, values=dict(values))

    def fetch(self, credential_id: str) -> SecretRecord:
        try:
            return self._records[credential_id]
        except KeyError:
            raise CredentialNotFound(credential_id) from None


class JsonFileSecretBackend:
    """
    Reads a JSON document of the form:

        {"registry": {"kind": "username_password",
                      "values": {"username": "bot", "password": "..."}}}

    The file is re-read on every fetch so rotated secrets are picked up.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def fetch(self, credential_id: str) -> SecretRecord:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise CredentialBackendUnavailable(credential_id, str(e)) from e

        if not isinstance(data, dict):
            raise CredentialBackendUnavailable(credential_id, f"{self.path} must contain a JSON object")

        entry = data.get(credential_id)
        if entry is None:
            raise CredentialNotFound(credential_id)
        try:
            kind = CredentialKind(entry["kind"])
            values = {str(k): str(v) for k, v in (entry.get("values") or {}).items()}
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise CredentialBackendUnavailable(credential_id, f"malformed entry: {e}") from e
        return SecretRecord(kind=kind, values=values)


class EnvSecretBackend:
    """
    Reads credentials from process variables named
    ``<PREFIX><ID>_<COMPONENT>`` (ID upper-cased, '-' and '.' become '_'),
    with the kind in ``<PREFIX><ID>_KIND``.
    """

    def __init__(self, environ: Mapping[str, str] | None = None, prefix: str = "STAGECI_CRED_"):
        self._environ = environ if environ is not None else os.environ
        self.prefix = prefix

    def _key(self, credential_id: str, part: str) -> str:
        ident = credential_id.upper().replace("-", "_").replace(".", "_")
        return f"{self.prefix}{ident}_{part.upper()}"

    def fetch(self, credential_id: str) -> SecretRecord:
        raw_kind = self._environ.get(self._key(credential_id, "kind"))
        if raw_kind is None:
            raise CredentialNotFound(credential_id)
        try:
            kind = CredentialKind(raw_kind.lower())
        except ValueError as e:
            raise CredentialBackendUnavailable(credential_id, f"unknown kind {raw_kind!r}") from e

        values = {}
        for component in CREDENTIAL_COMPONENTS[kind]:
            v = self._environ.get(self._key(credential_id, component))
            if v is not None:
                values[component] = v
        return SecretRecord(kind=kind, values=values)


# ---------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------

class CredentialStore:
    """
    Binds stored credentials into child scopes for the duration of a block.

        with store.bind(binding, scope) as child:
            executor.run(step, child)
    """

    def __init__(self, backend: SecretBackend | None = None, redaction: RedactionFilter | None = None):
        self.backend: SecretBackend = backend or InMemorySecretBackend()
        self.redaction = redaction or RedactionFilter()

    def lookup(self, binding: CredentialBinding) -> SecretRecord:
        try:
            record = self.backend.fetch(binding.id)
        except (CredentialNotFound, CredentialBackendUnavailable):
            raise
        except Exception as e:  # backend bugs / transport errors
            raise CredentialBackendUnavailable(binding.id, f"{type(e).__name__}: {e}") from e
        if record.kind is not binding.kind:
            raise CredentialKindMismatch(binding.id, binding.kind.value, record.kind.value)
        return record

    @contextmanager
    def bind(self, binding: CredentialBinding, scope: EnvironmentScope) -> Iterator[EnvironmentScope]:
        record = self.lookup(binding)

        missing = sorted(c for c in binding.variable_map if c not in record.values)
        if missing:
            raise CredentialNotFound(f"{binding.id} (missing components {missing})")

        for component, value in record.values.items():
            if value and len(value) < self.redaction.MIN_LENGTH:
                logger.warning(
                    "credential %s: %s is shorter than %d characters and will not be masked in output",
                    binding.id, component, self.redaction.MIN_LENGTH,
                )
            self.redaction.register(value)

        values: Dict[str, str] = {}
        temp_files: List[Path] = []
        try:
            for component, var in binding.variable_map.items():
                value = record.values[component]
                if binding.kind is CredentialKind.SSH_KEY and component == "key":
                    key_path = _write_key_file(value)
                    temp_files.append(key_path)
                    value = str(key_path)
                values[var] = value

            child = scope.derive_literal(values)
            logger.debug("bound credential %s -> %s", binding.id, sorted(values))
            try:
                yield child
            finally:
                child.purge()
        finally:
            for var in list(values):
                values[var] = ""
            values.clear()
            for path in temp_files:
                _shred(path)

    @contextmanager
    def bind_all(self, bindings, scope: EnvironmentScope) -> Iterator[EnvironmentScope]:
        """Nest several bindings; later ones shadow earlier ones."""
        if not bindings:
            yield scope
            return
        first, rest = bindings[0], bindings[1:]
        with self.bind(first, scope) as child:
            with self.bind_all(rest, child) as inner:
                yield inner


def _write_key_file(content: str) -> Path:
    fd, name = tempfile.mkstemp(prefix="stageci-key-")
    try:
        os.write(fd, content.encode("utf-8"))
        if not content.endswith("\n"):
            os.write(fd, b"\n")
    finally:
        os.close(fd)
    os.chmod(name, 0o600)
    return Path(name)


def _shred(path: Path) -> None:
    try:
        size = path.stat().st_size
        with open(path, "r+b") as fh:
            fh.write(b"\0" * size)
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("could not remove key file %s: %s", path, e)
