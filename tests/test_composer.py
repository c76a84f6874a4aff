import pytest

from actionsmith.composer import Composer, Registry, aggregate_status
from actionsmith.dsl import action, call, input_, job, output, secret, sh, uses, wf
from actionsmith.errors import (
    InvalidCallError,
    MissingRequiredInputError,
    UnknownReferenceError,
)
from actionsmith.executor import CommandOutcome
from actionsmith.model import JobResult, Status
from actionsmith.orchestrator import Orchestrator, Trigger


@pytest.fixture
def setup_node():
    return action(
        "setup-node",
        sh("Install", "install-node ${{ inputs.node-version }}", id="install",
           env={"NPM_AUTH": "${{ secrets.npm-token }}"}),
        sh("Report", "set-output path=/opt/node/${{ inputs.node-version }}", id="report"),
        inputs=[input_("node-version", required=True), input_("cache", default="npm")],
        secrets=[secret("npm-token", required=False)],
        outputs=[output("node-path", "${{ steps.report.outputs.path }}")],
    )


@pytest.fixture
def deploy_workflow():
    return wf(
        "deploy",
        job(
            "upload",
            sh("Upload", "set-output url=https://${{ inputs.target }}.example.com", id="up",
               env={"TOKEN": "${{ secrets.token }}"}),
            outputs={"url": "${{ steps.up.outputs.url }}"},
        ),
        job("smoke", sh("Smoke", "curl ${{ needs.upload.outputs.url }}"), needs=["upload"]),
        inputs=[input_("target", required=True)],
        secrets=[secret("token")],
        outputs=[output("url", "${{ jobs.upload.outputs.url }}")],
    )


@pytest.fixture
def registry(setup_node, deploy_workflow):
    return Registry().update({
        "./actions/setup-node": setup_node,
        "org/deploy": deploy_workflow,
    })


def make_orchestrator(runner, vault, registry):
    return Orchestrator(runner=runner, vault=vault, registry=registry, max_workers=2)


def test_registry_resolves_versioned_refs(registry, deploy_workflow):
    assert registry.resolve("org/deploy@v2") is deploy_workflow
    assert "org/deploy@main" in registry
    assert "org/unknown" not in registry
    with pytest.raises(UnknownReferenceError):
        registry.resolve("org/unknown@v1")
    with pytest.raises(TypeError):
        registry.register("x", object())


def test_action_outputs_flow_back_to_caller(runner, vault, registry):
    workflow = wf(
        "ci",
        job(
            "build",
            uses("Setup", "./actions/setup-node", id="node", with_={"node-version": "20"}),
            sh("Use", "run ${{ steps.node.outputs.node-path }}"),
        ),
    )
    result = make_orchestrator(runner, vault, registry).run(workflow, Trigger())

    assert result.ok
    assert runner.commands == [
        "install-node 20",
        "set-output path=/opt/node/20",
        "run /opt/node/20",
    ]
    step = result.jobs["build"].steps[0]
    assert [c.name for c in step.children] == ["Install", "Report"]


def test_missing_required_input_fails_before_any_step(runner, vault, registry):
    workflow = wf(
        "ci",
        job("first", sh("Early", "echo early")),
        job("build", uses("Setup", "./actions/setup-node", with_={"cache": "yarn"}), needs=["first"]),
    )
    with pytest.raises(MissingRequiredInputError) as exc:
        make_orchestrator(runner, vault, registry).run(workflow, Trigger())

    assert exc.value.details == {"input": "node-version"}
    assert exc.value.path.startswith("ci/build")
    assert runner.calls == []


def test_unknown_uses_reference(runner, vault, registry):
    workflow = wf("ci", job("build", uses("Setup", "./actions/nope")))
    with pytest.raises(UnknownReferenceError) as exc:
        make_orchestrator(runner, vault, registry).validate(workflow)
    assert exc.value.path == "ci/build/0"


def test_wrong_slot_is_rejected(runner, vault, registry):
    step_calls_workflow = wf("ci", job("a", uses("Deploy", "org/deploy", with_={"target": "x"})))
    with pytest.raises(InvalidCallError):
        make_orchestrator(runner, vault, registry).validate(step_calls_workflow)

    job_calls_action = wf("ci", call("a", "./actions/setup-node", with_={"node-version": "20"}))
    with pytest.raises(InvalidCallError):
        make_orchestrator(runner, vault, registry).validate(job_calls_action)


def test_undeclared_input_and_secret_bindings(runner, vault, registry):
    orch = make_orchestrator(runner, vault, registry)
    bad_input = wf("ci", job("a", uses("S", "./actions/setup-node", with_={"node-version": "20", "color": "red"})))
    with pytest.raises(InvalidCallError, match="color"):
        orch.validate(bad_input)

    bad_ref = wf("ci", job("a", sh("leak", "echo ${{ secrets.NPM_TOKEN }}")))
    with pytest.raises(InvalidCallError, match="undeclared secret"):
        orch.validate(bad_ref)


def test_non_string_bindings_and_predicates_are_checked(runner, vault, registry):
    orch = make_orchestrator(runner, vault, registry)
    numeric = wf("ci", job("a", uses("Node", "./actions/setup-node", with_={"node-version": 20})))
    orch.validate(numeric)
    assert orch.run(numeric, Trigger()).ok
    assert runner.commands[0] == "install-node 20"

    gated_step = wf("ci", job("a", sh("Publish", "publish", if_="secrets.NPM_TOKEN != ''")))
    with pytest.raises(InvalidCallError, match="undeclared secret"):
        orch.validate(gated_step)

    gated_job = wf("ci", job("a", sh("Publish", "publish"), if_="${{ secrets.NPM_TOKEN }}"))
    with pytest.raises(InvalidCallError, match="undeclared secret") as exc:
        orch.validate(gated_job)
    assert exc.value.path == "ci/a"



def test_required_secret_must_be_forwarded(runner, vault, registry):
    workflow = wf(
        "ci",
        call("ship", "org/deploy", with_={"target": "staging"}),
        secrets=[secret("DEPLOY_TOKEN")],
    )
    with pytest.raises(MissingRequiredInputError, match="token"):
        make_orchestrator(runner, vault, registry).validate(workflow)


def test_secrets_are_only_visible_to_the_call_they_are_passed_to(runner, vault, registry):
    workflow = wf(
        "ci",
        job(
            "build",
            uses("With token", "./actions/setup-node", with_={"node-version": "20"},
                 secrets={"npm-token": "${{ secrets.NPM_TOKEN }}"}),
            uses("Without token", "./actions/setup-node", with_={"node-version": "18"}),
        ),
        secrets=[secret("NPM_TOKEN")],
    )
    result = make_orchestrator(runner, vault, registry).run(workflow, Trigger())

    assert result.ok
    installs = [c for c in runner.calls if c["command"].startswith("install-node")]
    assert installs[0]["env"]["NPM_AUTH"] == "npm-secret-456"
    # optional secret left unbound: declared, but empty
    assert installs[1]["env"]["NPM_AUTH"] == ""


def test_callee_does_not_inherit_caller_env(runner, vault, registry):
    workflow = wf(
        "ci",
        job(
            "build",
            uses("Setup", "./actions/setup-node", with_={"node-version": "20"},
                 secrets={"npm-token": "${{ secrets.NPM_TOKEN }}"}),
            env={"CALLER_ONLY": "1"},
        ),
        secrets=[secret("NPM_TOKEN")],
    )
    make_orchestrator(runner, vault, registry).run(workflow, Trigger())
    assert all("CALLER_ONLY" not in c["env"] for c in runner.calls)


def test_reusable_workflow_call(runner, vault, registry):
    workflow = wf(
        "ci",
        job("build", sh("Build", "build")),
        call(
            "ship",
            "org/deploy@v1",
            with_={"target": "${{ environment.name || 'staging' }}"},
            secrets={"token": "${{ secrets.DEPLOY_TOKEN }}"},
            needs=["build"],
        ),
        job("announce", sh("Announce", "announce ${{ needs.ship.outputs.url }}"), needs=["ship"]),
        secrets=[secret("DEPLOY_TOKEN")],
    )
    result = make_orchestrator(runner, vault, registry).run(workflow, Trigger())

    assert result.ok
    ship = result.jobs["ship"]
    assert list(ship.jobs) == ["upload", "smoke"]
    assert ship.outputs == {"url": "https://staging.example.com"}
    assert "announce https://staging.example.com" in runner.commands
    upload = next(c for c in runner.calls if c["command"].startswith("set-output url="))
    assert upload["env"]["TOKEN"] == "tok-global-123"


def test_failure_inside_called_workflow_fails_the_job(runner, vault, registry):
    runner.scripted["curl https://staging.example.com"] = CommandOutcome(exit_code=7)
    workflow = wf(
        "ci",
        call("ship", "org/deploy", with_={"target": "staging"}, secrets={"token": "${{ secrets.DEPLOY_TOKEN }}"}),
        job("after", sh("After", "after"), needs=["ship"]),
        secrets=[secret("DEPLOY_TOKEN")],
    )
    result = make_orchestrator(runner, vault, registry).run(workflow, Trigger())

    assert result.status is Status.FAILURE
    assert result.jobs["ship"].status is Status.FAILURE
    assert result.jobs["ship"].jobs["smoke"].status is Status.FAILURE
    assert result.jobs["after"].status is Status.SKIPPED


def test_recursive_calls_are_rejected(runner, vault):
    registry = Registry()
    loop = wf("loop", call("again", "org/loop"))
    registry.register("org/loop", loop)
    with pytest.raises(InvalidCallError, match="recursive"):
        make_orchestrator(runner, vault, registry).validate(wf("ci", call("start", "org/loop")))


def test_bind_inputs_defaults_and_literals():
    specs = [input_("a", required=True), input_("b", default="two"), input_("c")]
    assert Composer.bind_inputs(specs, {"a": 1}, None) == {"a": "1", "b": "two", "c": ""}
    with pytest.raises(MissingRequiredInputError):
        Composer.bind_inputs(specs, {}, None)
    with pytest.raises(InvalidCallError):
        Composer.bind_inputs(specs, {"a": "1", "zzz": "x"}, None)


def test_aggregate_status():
    ok = JobResult("a", Status.SUCCESS)
    skipped = JobResult("b", Status.SKIPPED)
    soft = JobResult("c", Status.FAILURE, blocking=False)
    hard = JobResult("d", Status.FAILURE)
    assert aggregate_status([ok, skipped, soft]) is Status.SUCCESS
    assert aggregate_status([ok, hard]) is Status.FAILURE
    assert aggregate_status([ok], cancelled=True) is Status.CANCELLED
