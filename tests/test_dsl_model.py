import pytest

from stageci.dsl import matrix, parallel, pipeline, secret_text, sequential, sh, ssh_key, stage, username_password
from stageci.model import (
    CredentialBinding,
    CredentialKind,
    PipelineResult,
    Stage,
    StageKind,
    StageResult,
    StageStatus,
    Step,
)


def test_sh_normalizes_argv_to_tuple():
    step = sh("build", ["docker", "build", "."])

    assert step.command == ("docker", "build", ".")
    assert step.display == "docker build ."


def test_stage_applies_default_cwd_only_where_missing():
    s = stage("svc", sh("a", "make"), sh("b", "make", cwd="other"), cwd="services/api")

    assert [st.cwd for st in s.steps] == ["services/api", "other"]


def test_stage_requires_steps():
    with pytest.raises(ValueError, match="at least one step"):
        stage("empty")


def test_pipeline_requires_stages():
    with pytest.raises(ValueError, match="at least one stage"):
        pipeline("nothing")


def test_env_values_are_stringified():
    s = stage("x", sh("a", "true"), env={"RETRIES": 3, "DEBUG": True})

    assert s.env == {"RETRIES": "3", "DEBUG": "True"}


def test_leaf_cannot_have_children():
    with pytest.raises(ValueError, match="cannot have children"):
        Stage(name="bad", kind=StageKind.LEAF, children=(stage("c", sh("a", "true")),))


def test_composite_cannot_have_steps():
    with pytest.raises(ValueError, match="cannot have steps"):
        Stage(name="bad", kind=StageKind.PARALLEL, steps=(Step("a", "true"),))


def test_sibling_names_must_be_unique():
    with pytest.raises(ValueError, match="Duplicate stage names"):
        parallel("p", stage("a", sh("x", "true")), stage("a", sh("y", "true")))

    with pytest.raises(ValueError, match="Duplicate stage names"):
        pipeline("p", stage("a", sh("x", "true")), stage("a", sh("y", "true")))


def test_same_name_allowed_under_different_parents():
    spec = pipeline(
        "p",
        sequential("one", stage("test", sh("x", "true"))),
        sequential("two", stage("test", sh("x", "true"))),
    )

    paths = [path for path, _ in spec.root().walk()]
    assert paths == ["p", "p.one", "p.one.test", "p.two", "p.two.test"]


def test_matrix_expands_into_children():
    par = parallel(
        "tests",
        matrix("jdk", ["17", "21"]).stages(
            lambda v: stage(f"jdk{v}", sh("test", "./mvnw test"), env={"JDK": v})
        ),
    )

    assert [c.name for c in par.children] == ["jdk17", "jdk21"]
    assert par.children[1].env == {"JDK": "21"}


def test_credential_helpers_map_components():
    assert username_password("reg", "U", "P").variable_map == {"username": "U", "password": "P"}
    assert secret_text("tok", "T").kind is CredentialKind.SECRET

    key = ssh_key("deploy", "KEY_FILE", username_var="SSH_USER")
    assert key.variable_map == {"key": "KEY_FILE", "username": "SSH_USER"}


def test_credential_binding_rejects_unknown_components():
    with pytest.raises(ValueError, match="unknown components"):
        CredentialBinding(id="x", kind=CredentialKind.SECRET, variable_map={"password": "P"})

    with pytest.raises(ValueError, match="does not map any variables"):
        CredentialBinding(id="x", kind=CredentialKind.SECRET, variable_map={})


def test_pipeline_root_is_sequential_over_top_level_stages():
    spec = pipeline("p", stage("a", sh("x", "true")), env={"A": "1"})
    root = spec.root()

    assert root.kind is StageKind.SEQUENTIAL
    assert root.children == spec.stages
    assert root.env == {}


def test_pipeline_result_exit_code_follows_root_status():
    ok = PipelineResult(root=StageResult("p", "p", StageKind.SEQUENTIAL, StageStatus.SUCCEEDED))
    bad = PipelineResult(root=StageResult("p", "p", StageKind.SEQUENTIAL, StageStatus.FAILED))

    assert ok.exit_code == 0
    assert bad.exit_code == 1
    assert bad.first_failure().stage == "p"


def test_stage_status_terminal():
    assert StageStatus.SKIPPED.terminal
    assert not StageStatus.RUNNING.terminal
