import json
import textwrap

import pytest
from pydantic import ValidationError

from stageci.dsl import always, parallel, pipeline, secret_text, sh, stage
from stageci.errors import PipelineLoadError
from stageci.loader import load_pipeline
from stageci.model import CredentialKind, PostCondition, StageKind
from stageci.schema import pipeline_from_dict, pipeline_to_dict

DOC = {
    "name": "svc",
    "env": {"REGISTRY": "registry.local", "RETRIES": 3},
    "stages": [
        {"name": "build", "steps": [{"name": "compile", "command": "make"}]},
        {
            "name": "checks",
            "kind": "parallel",
            "children": [
                {"name": "lint", "steps": [{"name": "ruff", "command": ["ruff", "check"], "continue_on_error": True}]},
                {"name": "unit", "steps": [{"name": "pytest", "command": "pytest -q"}]},
            ],
        },
        {
            "name": "push",
            "steps": [{"name": "push", "command": "docker push x"}],
            "credentials": [{"id": "registry", "kind": "secret", "variables": {"secret": "TOKEN"}}],
        },
    ],
    "post": [{"condition": "always", "steps": [{"name": "prune", "command": "docker image prune -f"}]}],
}


def test_from_dict_builds_model():
    spec = pipeline_from_dict(DOC)

    assert [s.name for s in spec.stages] == ["build", "checks", "push"]
    assert spec.env == {"REGISTRY": "registry.local", "RETRIES": "3"}
    checks = spec.stages[1]
    assert checks.kind is StageKind.PARALLEL
    assert checks.children[0].steps[0].command == ("ruff", "check")
    assert checks.children[0].steps[0].continue_on_error
    assert spec.stages[2].credentials[0].kind is CredentialKind.SECRET
    assert spec.post[0].condition is PostCondition.ALWAYS


def test_to_dict_of_dsl_pipeline_loads_back():
    spec = pipeline(
        "p",
        stage("a", sh("x", ["echo", "hi"], cwd="sub"), credentials=[secret_text("t", "T")]),
        parallel("b", stage("c", sh("y", "true", continue_on_error=True))),
        post=[always(sh("z", "true"), name="tidy")],
    )

    assert pipeline_from_dict(pipeline_to_dict(spec)) == spec


def test_handlers_are_not_serialized():
    spec = pipeline("p", stage("a", sh("x", "true")), post=[always(sh("z", "true"), handler=print)])

    assert pipeline_to_dict(spec)["post"] == [{"condition": "always", "steps": [{"name": "z", "command": "true"}]}]


@pytest.mark.parametrize(
    "stage_doc",
    [
        {"name": "x", "steps": [{"name": "a", "command": "true"}], "children": [{"name": "y"}]},
        {"name": "x", "kind": "parallel", "steps": [{"name": "a", "command": "true"}]},
        {"name": "x", "kind": "fan-out"},
        {"name": "x", "steps": [{"name": "a", "command": "true", "retries": 2}]},
    ],
)
def test_invalid_documents_are_rejected(stage_doc):
    with pytest.raises(ValidationError):
        pipeline_from_dict({"name": "p", "stages": [stage_doc]})


def test_model_rules_apply_to_documents():
    doc = {"name": "p", "stages": [{"name": "a", "steps": []}, {"name": "a", "steps": []}]}

    with pytest.raises(ValueError, match="Duplicate"):
        pipeline_from_dict(doc)


def test_load_json_pipeline(tmp_path):
    path = tmp_path / "ci.pipeline.json"
    path.write_text(json.dumps(DOC))

    assert load_pipeline(path).name == "svc"


def test_load_invalid_json_pipeline(tmp_path):
    path = tmp_path / "ci.pipeline.json"
    path.write_text('{"name": "svc"')

    with pytest.raises(PipelineLoadError, match="Could not read"):
        load_pipeline(path)

    path.write_text(json.dumps({"name": "svc"}))
    with pytest.raises(PipelineLoadError, match="not a valid pipeline document"):
        load_pipeline(path)


def test_load_python_factory(tmp_path):
    path = tmp_path / "stageci_pipeline.py"
    path.write_text(textwrap.dedent("""
        from stageci.dsl import pipeline, stage, sh

        def pipeline_spec():
            return pipeline("py", stage("build", sh("make", "make")))
    """))

    assert load_pipeline(path).name == "py"


def test_load_python_constant(tmp_path):
    path = tmp_path / "release_pipeline.py"
    path.write_text(textwrap.dedent("""
        from stageci.dsl import pipeline, stage, sh

        PIPELINE = pipeline("const", stage("build", sh("make", "make")))
    """))

    assert load_pipeline(path).name == "const"


def test_load_python_without_pipeline(tmp_path):
    path = tmp_path / "empty_pipeline.py"
    path.write_text("X = 1\n")

    with pytest.raises(PipelineLoadError, match="must define pipeline_spec"):
        load_pipeline(path)


def test_load_python_import_error(tmp_path):
    path = tmp_path / "broken_pipeline.py"
    path.write_text("import definitely_not_a_module_xyz\n")

    with pytest.raises(PipelineLoadError, match="Error while importing"):
        load_pipeline(path)


def test_load_python_invalid_graph(tmp_path):
    path = tmp_path / "bad_pipeline.py"
    path.write_text(textwrap.dedent("""
        from stageci.dsl import pipeline, stage

        def pipeline_spec():
            return pipeline("bad", stage("empty"))
    """))

    with pytest.raises(PipelineLoadError, match="invalid pipeline"):
        load_pipeline(path)


def test_load_missing_and_unsupported_files(tmp_path):
    with pytest.raises(PipelineLoadError, match="not found"):
        load_pipeline(tmp_path / "nope.py")

    yaml_file = tmp_path / "ci.yaml"
    yaml_file.write_text("name: x\n")
    with pytest.raises(PipelineLoadError, match=".py or .json"):
        load_pipeline(yaml_file)
