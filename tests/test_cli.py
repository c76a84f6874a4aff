import json
import textwrap

import pytest
from click.testing import CliRunner

from actionsmith.cli import cli, parse_pairs

WORKFLOW = """
from actionsmith import input_, job, secret, sh, wf

def workflow():
    return wf(
        "ci",
        job("build", sh("Build", "echo building ${{ inputs.target }}", id="b")),
        job("test", sh("Test", "echo token=$TOKEN", env={"TOKEN": "${{ secrets.API_TOKEN }}"}), needs=["build"]),
        inputs=[input_("target", default="all")],
        secrets=[secret("API_TOKEN")],
        on=["push"],
    )
"""

FAILING = """
from actionsmith import job, sh, wf

WORKFLOW = wf("ci", job("build", sh("Build", "exit 3")), job("after", sh("After", "echo after"), needs=["build"]))
"""

CYCLIC = """
from actionsmith import job, sh, wf

WORKFLOW = wf("ci", job("a", sh("a", "true"), needs=["b"]), job("b", sh("b", "true"), needs=["a"]))
"""

RELEASE = """
from actionsmith import input_, job, sh, wf

WORKFLOW = wf("release", job("tag", sh("Tag", "echo ${{ inputs.version }}")), inputs=[input_("version", required=True)])
"""


@pytest.fixture
def cli_runner(monkeypatch):
    monkeypatch.setenv("ACTIONSMITH_SECRET_API_TOKEN", "cli-s3cret-value")
    return CliRunner()


def write_workflow(path, body):
    path.write_text(textwrap.dedent(body), encoding="utf-8")
    return str(path)


def test_run_success_writes_redacted_results(cli_runner, tmp_path):
    wf_file = write_workflow(tmp_path / "ci_workflow.py", WORKFLOW)
    results = tmp_path / "results.json"

    res = cli_runner.invoke(cli, [
        "run", "--workflow", wf_file, "--ref", "refs/heads/main", "--sha", "abc",
        "--input", "target=web", "--results-file", str(results),
    ])
    assert res.exit_code == 0, res.output

    tree = json.loads(results.read_text(encoding="utf-8"))
    assert tree["status"] == "success"
    assert tree["jobs"]["build"]["steps"]["0"]["log"] == "building web"
    assert tree["jobs"]["test"]["steps"]["0"]["log"] == "token=***"
    assert "cli-s3cret-value" not in res.output


def test_run_failure_exits_non_zero(cli_runner, tmp_path):
    wf_file = write_workflow(tmp_path / "ci_workflow.py", FAILING)
    res = cli_runner.invoke(cli, ["run", "--workflow", wf_file, "--ref", "refs/heads/main"])
    assert res.exit_code == 1


def test_run_rejects_unaccepted_event(cli_runner, tmp_path):
    wf_file = write_workflow(tmp_path / "ci_workflow.py", WORKFLOW)
    res = cli_runner.invoke(cli, ["run", "--workflow", wf_file, "--event", "schedule", "--ref", "refs/heads/main"])
    assert res.exit_code == 1
    assert "trigger_mismatch" in res.output


def test_run_persists_to_database(cli_runner, tmp_path):
    from actionsmith.store import RunStore

    wf_file = write_workflow(tmp_path / "ci_workflow.py", WORKFLOW)
    db = f"sqlite:///{tmp_path / 'runs.db'}"
    res = cli_runner.invoke(cli, ["run", "--workflow", wf_file, "--ref", "refs/heads/main", "--db", db])
    assert res.exit_code == 0, res.output
    runs = RunStore(db).list_runs()
    assert len(runs) == 1 and runs[0]["status"] == "success"


def test_validate(cli_runner, tmp_path):
    ok = write_workflow(tmp_path / "ok_workflow.py", WORKFLOW)
    res = cli_runner.invoke(cli, ["validate", "--workflow", ok])
    assert res.exit_code == 0
    assert "ci: OK (2 jobs)" in res.output

    bad = write_workflow(tmp_path / "bad_workflow.py", CYCLIC)
    res = cli_runner.invoke(cli, ["validate", "--workflow", bad])
    assert res.exit_code == 1
    assert "cyclic_dependency" in res.output


def test_validate_checks_given_inputs(cli_runner, tmp_path):
    wf_file = write_workflow(tmp_path / "release_workflow.py", RELEASE)
    assert cli_runner.invoke(cli, ["validate", "--workflow", wf_file]).exit_code == 0
    assert cli_runner.invoke(cli, ["validate", "--workflow", wf_file, "--input", "version=1.0"]).exit_code == 0

    res = cli_runner.invoke(cli, ["validate", "--workflow", wf_file, "--input", "channel=beta"])
    assert res.exit_code == 1
    assert "does not declare input" in res.output


def test_run_refuses_protected_environment_from_other_refs(cli_runner, tmp_path, monkeypatch):
    from actionsmith import settings

    monkeypatch.setattr(settings, "PROTECTED_ENVIRONMENTS", ("production",))
    monkeypatch.setattr(settings, "PROTECTED_REFS", ("refs/heads/main",))
    wf_file = write_workflow(tmp_path / "ci_workflow.py", WORKFLOW)
    res = cli_runner.invoke(cli, ["run", "--workflow", wf_file, "--ref", "refs/heads/feature", "--env", "production"])
    assert res.exit_code == 1
    assert "protected_environment" in res.output


def test_plan(cli_runner, tmp_path):
    wf_file = write_workflow(tmp_path / "ci_workflow.py", WORKFLOW)
    res = cli_runner.invoke(cli, ["plan", "--workflow", wf_file])
    assert res.exit_code == 0
    assert res.output.index("build") < res.output.index("test")


def test_missing_workflow_file(cli_runner, tmp_path):
    res = cli_runner.invoke(cli, ["validate", "--workflow", str(tmp_path / "nope")])
    assert res.exit_code == 1
    assert "Workflow file not found" in res.output


def test_parse_pairs():
    assert parse_pairs(("a=1", "b=x=y"), "--input") == {"a": "1", "b": "x=y"}
    with pytest.raises(Exception):
        parse_pairs(("novalue",), "--input")
