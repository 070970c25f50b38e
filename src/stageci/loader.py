# loader.py
from __future__ import annotations

import json
import runpy
from pathlib import Path

from pydantic import ValidationError

from .errors import PipelineLoadError
from .model import PipelineSpec
from .schema import pipeline_from_dict


# ----------------------------------------------------------------------
# Pipeline loading (local file)
# ----------------------------------------------------------------------

def load_pipeline(path: str | Path) -> PipelineSpec:
    """
    Load a pipeline from a file.

    A ``.py`` file must define either:
      - pipeline_spec() -> PipelineSpec
      - PIPELINE = PipelineSpec(...)

    A ``.json`` file must hold a document matching ``stageci.schema.PipelineDoc``.
    """
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise PipelineLoadError(f"Pipeline file not found: {p}")
    if p.suffix == ".py":
        return _load_python(p)
    if p.suffix == ".json":
        return _load_json(p)
    raise PipelineLoadError(f"Pipeline must be a .py or .json file, got: {p.name}")


def _load_python(p: Path) -> PipelineSpec:
    module_name = f"stageci_pipeline_{p.stem}"
    try:
        globals_dict = runpy.run_path(str(p), run_name=module_name)
    except Exception as e:
        raise PipelineLoadError(f"Error while importing {p.name}: {type(e).__name__}: {e}") from e

    spec = None
    factory = globals_dict.get("pipeline_spec")
    if callable(factory):
        try:
            spec = factory()
        except ValueError as e:
            raise PipelineLoadError(f"{p.name}: invalid pipeline: {e}") from e
    elif "PIPELINE" in globals_dict:
        spec = globals_dict["PIPELINE"]

    if not isinstance(spec, PipelineSpec):
        raise PipelineLoadError(
            f"{p.name} must define pipeline_spec() -> PipelineSpec or PIPELINE = PipelineSpec(...). "
            "Build it with stageci.dsl.pipeline(...)."
        )
    return spec


def _load_json(p: Path) -> PipelineSpec:
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise PipelineLoadError(f"Could not read {p.name}: {e}") from e
    try:
        return pipeline_from_dict(data)
    except ValidationError as e:
        raise PipelineLoadError(f"{p.name} is not a valid pipeline document:\n{e}") from e
    except ValueError as e:
        raise PipelineLoadError(f"{p.name}: invalid pipeline: {e}") from e
