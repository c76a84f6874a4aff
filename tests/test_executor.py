import sys
import threading
import time

import pytest

from actionsmith.context import Context
from actionsmith.dsl import retry, sh
from actionsmith.executor import (
    CancelToken,
    CommandOutcome,
    StepExecutor,
    SubprocessRunner,
    parse_output_file,
)
from actionsmith.model import RetryPolicy, Status
from actionsmith.secrets import Redactor


def make_executor(runner, **kwargs):
    return StepExecutor(runner, redactor=kwargs.pop("redactor", Redactor()), **kwargs)


def base_ctx(**scopes):
    scopes.setdefault("env", {})
    scopes.setdefault("github", {"ref": "refs/heads/main"})
    return Context(scopes)


def test_steps_run_in_order_and_see_earlier_outputs(runner):
    ex = make_executor(runner)
    steps = [
        sh("Build", "set-output artifact=app.tgz size=10", id="build"),
        sh("Upload", "upload ${{ steps.build.outputs.artifact }}"),
    ]
    outcome = ex.run_steps(steps, base_ctx(), path="ci/job")

    assert outcome.status is Status.SUCCESS
    assert runner.commands == ["set-output artifact=app.tgz size=10", "upload app.tgz"]
    assert outcome.steps_scope["build"] == {
        "outputs": {"artifact": "app.tgz", "size": "10"},
        "outcome": "success",
        "conclusion": "success",
    }


def test_step_env_layers_on_job_env(runner):
    ex = make_executor(runner)
    step = sh("Deploy", "deploy", env={"TARGET": "${{ env.REGION }}-prod", "REGION": "override"})
    ex.run_steps([step], base_ctx(env={"REGION": "eu", "KEEP": "1"}), path="p")

    env = runner.calls[0]["env"]
    assert env == {"REGION": "override", "KEEP": "1", "TARGET": "eu-prod"}


def test_failure_skips_remaining_steps_unless_status_function(runner):
    ex = make_executor(runner)
    steps = [
        sh("Fail", "exit 3"),
        sh("Never", "echo never"),
        sh("Cleanup", "echo cleanup", if_="always()"),
        sh("Report", "echo report", if_="failure()"),
    ]
    outcome = ex.run_steps(steps, base_ctx(), path="p")

    assert outcome.status is Status.FAILURE
    assert [r.status for r in outcome.results] == [
        Status.FAILURE, Status.SKIPPED, Status.SUCCESS, Status.SUCCESS,
    ]
    assert runner.commands == ["exit 3", "echo cleanup", "echo report"]
    assert "exit_code=3" in outcome.results[0].error


def test_continue_on_error_step_is_non_blocking(runner):
    ex = make_executor(runner)
    steps = [
        sh("Flaky lint", "exit 1", id="lint", continue_on_error=True),
        sh("Test", "echo test ${{ steps.lint.outcome }}/${{ steps.lint.conclusion }}"),
    ]
    outcome = ex.run_steps(steps, base_ctx(), path="p")

    assert outcome.status is Status.FAILURE
    assert outcome.blocking is False
    assert runner.commands[-1] == "echo test failure/success"


def test_retry_until_success(runner):
    runner.scripted["flaky"] = [
        CommandOutcome(exit_code=1, stderr_tail="boom"),
        CommandOutcome(exit_code=1, stderr_tail="boom"),
        CommandOutcome(exit_code=0, stdout_tail="ok"),
    ]
    ex = make_executor(runner)
    result = ex.run_step(sh("Flaky", "flaky", retry=retry(3, backoff=0)), base_ctx(job={"status": "success"}), path="p")

    assert result.status is Status.SUCCESS
    assert result.attempts == 3
    assert "[attempt 1]" in result.log


def test_retry_only_on_listed_exit_codes(runner):
    ex = make_executor(runner)
    step = sh("Net", "exit 2", retry=retry(5, backoff=0, on_exit_codes=[75]))
    result = ex.run_step(step, base_ctx(job={"status": "success"}), path="p")

    assert result.status is Status.FAILURE
    assert result.attempts == 1


def test_retry_policy_delays():
    policy = RetryPolicy(attempts=5, backoff=1.0, multiplier=3.0, max_backoff=5.0)
    assert [policy.delay(n) for n in (1, 2, 3)] == [1.0, 3.0, 5.0]
    assert policy.should_retry(1)
    assert not policy.should_retry(0)
    assert policy.should_retry(0, timed_out=True)
    with pytest.raises(ValueError):
        RetryPolicy(attempts=0)


def test_unresolved_reference_fails_step_with_location(runner):
    ex = make_executor(runner)
    result = ex.run_step(sh("Bad", "echo ${{ needs.nope.outputs.x }}"), base_ctx(job={"status": "success"}), path="ci/build/0")

    assert result.status is Status.FAILURE
    assert "unresolved_reference" in result.error
    assert "path=ci/build/0" in result.error
    assert runner.calls == []


def test_cancelled_token_cancels_pending_steps(runner):
    token = CancelToken()
    token.cancel()
    ex = make_executor(runner, cancel=token)
    outcome = ex.run_steps([sh("A", "echo a"), sh("Cleanup", "echo c", if_="always()")], base_ctx(), path="p")

    assert outcome.status is Status.CANCELLED
    assert outcome.results[0].status is Status.CANCELLED
    assert runner.commands == ["echo c"]


def test_logs_are_redacted(runner):
    runner.scripted["print"] = CommandOutcome(exit_code=0, stdout_tail="token is hunter2-secret")
    redactor = Redactor(["hunter2-secret"])
    ex = make_executor(runner, redactor=redactor)
    result = ex.run_step(sh("Print", "print"), base_ctx(job={"status": "success"}), path="p")
    assert result.log == "token is ***"


def test_uses_step_without_composer_fails(runner):
    from actionsmith.dsl import uses

    ex = make_executor(runner)
    result = ex.run_step(uses("Setup", "./actions/setup"), base_ctx(job={"status": "success"}), path="p")
    assert result.status is Status.FAILURE
    assert "no composer" in result.error


def test_parse_output_file():
    text = "version=1.2.3\nempty=\nnotes<<EOF\nline 1\nline = 2\nEOF\n\nurl=http://x?a=b\n"
    assert parse_output_file(text) == {
        "version": "1.2.3",
        "empty": "",
        "notes": "line 1\nline = 2",
        "url": "http://x?a=b",
    }
    with pytest.raises(ValueError):
        parse_output_file("notes<<EOF\nnever closed\n")
    with pytest.raises(ValueError):
        parse_output_file("garbage line")


@pytest.mark.skipif(sys.platform == "win32", reason="uses a POSIX shell")
def test_subprocess_runner_collects_outputs(tmp_path):
    runner = SubprocessRunner(repo_root=tmp_path, inherit_env=True)
    outcome = runner.run(
        'echo "hello $WHO"; echo "greeting=hi $WHO" >> "$ACTIONSMITH_OUTPUT"',
        {"WHO": "there"},
        None,
    )
    assert outcome.exit_code == 0
    assert outcome.stdout_tail.strip() == "hello there"
    assert outcome.outputs == {"greeting": "hi there"}


@pytest.mark.skipif(sys.platform == "win32", reason="uses a POSIX shell")
def test_subprocess_runner_reports_failure_and_timeout(tmp_path):
    runner = SubprocessRunner(repo_root=tmp_path, poll_interval=0.05)
    assert runner.run("echo oops >&2; exit 4", {}, None).exit_code == 4

    outcome = runner.run("sleep 5", {}, None, timeout=0.2)
    assert outcome.timed_out

    with pytest.raises(FileNotFoundError):
        runner.run("true", {}, "does-not-exist")


@pytest.mark.skipif(sys.platform == "win32", reason="uses a POSIX shell")
def test_subprocess_runner_stops_in_flight_command_on_cancel(tmp_path):
    runner = SubprocessRunner(repo_root=tmp_path, poll_interval=0.05)
    token = CancelToken()
    timer = threading.Timer(0.3, token.cancel)

    started = time.monotonic()
    timer.start()
    try:
        outcome = runner.run("echo started; sleep 30; echo finished", {}, None, cancel=token)
    finally:
        timer.cancel()

    assert outcome.cancelled
    assert outcome.exit_code != 0
    assert "finished" not in outcome.stdout_tail
    assert time.monotonic() - started < 10


def test_cancelled_command_marks_step_cancelled(runner):
    runner.scripted["deploy"] = CommandOutcome(exit_code=-15, cancelled=True)
    ex = make_executor(runner)
    result = ex.run_step(sh("Deploy", "deploy"), base_ctx(job={"status": "success"}), path="p")
    assert result.status is Status.CANCELLED
    assert result.error == "run cancelled"


def test_retryable_failures_are_transient(runner):
    ex = make_executor(runner)
    step = sh("Net", "exit 75", retry=retry(2, backoff=0, on_exit_codes=[75]))
    result = ex.run_step(step, base_ctx(job={"status": "success"}), path="ci/fetch/0")

    assert result.status is Status.FAILURE
    assert result.attempts == 2
    assert result.error.startswith("transient_command: command failed")
    assert result.context["github"] == {"ref": "refs/heads/main"}

    once = ex.run_step(sh("Once", "exit 75"), base_ctx(job={"status": "success"}), path="ci/fetch/1")
    assert once.attempts == 1
    assert once.error.startswith("step_failed: command failed")
