# settings.py
# Runner-wide knobs, read from STAGECI_* environment variables.
from __future__ import annotations

import os


def _float(name: str, default: float | None) -> float | None:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _int(name: str, default: int | None) -> int | None:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


DEFAULT_PIPELINE = os.environ.get("STAGECI_PIPELINE", "stageci_pipeline.py")
RUN_TIMEOUT = _float("STAGECI_TIMEOUT", None)         # seconds, None = no limit
MAX_WORKERS = _int("STAGECI_MAX_WORKERS", None)       # cap on parallel fan-out
OUTPUT_TAIL = _int("STAGECI_OUTPUT_TAIL", 4000)       # captured chars kept per step
KILL_GRACE = _float("STAGECI_KILL_GRACE", 5.0)        # seconds between SIGTERM and SIGKILL
REDACTION_MARKER = os.environ.get("STAGECI_REDACTION_MARKER", "****")
STRICT_ENV = _bool("STAGECI_STRICT_ENV", False)
SECRETS_FILE = os.environ.get("STAGECI_SECRETS_FILE")
