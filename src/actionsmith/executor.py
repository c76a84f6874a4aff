# executor.py
"""
Step execution.

The core never spawns processes itself: commands go through a
`CommandRunner` (`SubprocessRunner` by default), and `uses:` steps go
through the Composer.
"""
from __future__ import annotations

import os
import signal
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Dict, List, Mapping, Optional

from .context import Context
from .errors import CancelledError, StepExecutionFailure, TransientCommandError, WorkflowError
from .expressions import check_predicate, interpolate_str, uses_status_function
from .model import RetryPolicy, Status, Step, StepResult
from .secrets import Redactor
from .ui.console import Console, get_console

if TYPE_CHECKING:
    from .composer import Composer

OUTPUT_ENV = "ACTIONSMITH_OUTPUT"
TAIL_CHARS = 4000


class CancelToken:
    """Cooperative cancellation flag shared by a run's jobs and steps."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`; returns True if cancelled meanwhile."""
        return self._event.wait(seconds)


# ----------------------------------------------------------------------
# Command execution boundary
# ----------------------------------------------------------------------

@dataclass
class CommandOutcome:
    exit_code: int
    stdout_tail: str = ""
    stderr_tail: str = ""
    outputs: Dict[str, str] = field(default_factory=dict)
    timed_out: bool = False
    cancelled: bool = False


class CommandRunner:
    """run(command, env, working_dir) -> CommandOutcome."""

    def run(
        self,
        command: str,
        env: Mapping[str, str],
        working_dir: str | None,
        *,
        cancel: CancelToken | None = None,
        timeout: float | None = None,
    ) -> CommandOutcome:
        raise NotImplementedError


def parse_output_file(text: str) -> Dict[str, str]:
    """
    Parse step outputs written to $ACTIONSMITH_OUTPUT.

    Supports `name=value` lines and heredoc blocks:
        name<<EOF
        line 1
        line 2
        EOF
    """
    outputs: Dict[str, str] = {}
    lines = text.splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if not line.strip():
            continue
        if "<<" in line and ("=" not in line or line.index("<<") < line.index("=")):
            name, delim = line.split("<<", 1)
            body: List[str] = []
            while i < len(lines) and lines[i] != delim:
                body.append(lines[i])
                i += 1
            if i >= len(lines):
                raise ValueError(f"unterminated heredoc for output {name!r} (delimiter {delim!r})")
            i += 1
            outputs[name.strip()] = "\n".join(body)
        elif "=" in line:
            name, value = line.split("=", 1)
            outputs[name.strip()] = value
        else:
            raise ValueError(f"invalid output line: {line!r}")
    return outputs


def _signal_group(proc: subprocess.Popen, sig: int) -> None:
    # the group is gone once every process in it has exited
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        pass


class SubprocessRunner(CommandRunner):
    """Runs commands through the shell, like `subprocess.run(shell=True)`."""

    def __init__(self, repo_root: str | Path = ".", inherit_env: bool = True, poll_interval: float = 0.1):
        self.repo_root = Path(repo_root).resolve()
        self.inherit_env = inherit_env
        self.poll_interval = poll_interval

    def run(
        self,
        command: str,
        env: Mapping[str, str],
        working_dir: str | None,
        *,
        cancel: CancelToken | None = None,
        timeout: float | None = None,
    ) -> CommandOutcome:
        cwd = (self.repo_root / (working_dir or ".")).resolve()
        if not cwd.exists():
            raise FileNotFoundError(f"working directory not found: {cwd}")

        fd, output_path = tempfile.mkstemp(prefix="actionsmith-output-")
        os.close(fd)

        proc_env = os.environ.copy() if self.inherit_env else {}
        proc_env.update({k: str(v) for k, v in env.items()})
        proc_env[OUTPUT_ENV] = output_path

        timed_out = False
        cancelled = False
        try:
            proc = subprocess.Popen(
                command,
                shell=True,
                cwd=str(cwd),
                env=proc_env,
                text=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                # own process group, so a cancel reaches the whole command tree
                start_new_session=True,
            )
            deadline = time.monotonic() + timeout if timeout else None
            while True:
                try:
                    stdout, stderr = proc.communicate(timeout=self.poll_interval)
                    break
                except subprocess.TimeoutExpired:
                    if cancel is not None and cancel.cancelled:
                        cancelled = True
                    elif deadline is not None and time.monotonic() >= deadline:
                        timed_out = True
                    else:
                        continue
                    _signal_group(proc, signal.SIGTERM)
                    try:
                        stdout, stderr = proc.communicate(timeout=5)
                    except subprocess.TimeoutExpired:
                        _signal_group(proc, signal.SIGKILL)
                        stdout, stderr = proc.communicate()
                    break

            outputs: Dict[str, str] = {}
            if proc.returncode == 0:
                outputs = parse_output_file(Path(output_path).read_text(encoding="utf-8"))
        finally:
            os.unlink(output_path)

        return CommandOutcome(
            exit_code=proc.returncode,
            stdout_tail=(stdout or "")[-TAIL_CHARS:],
            stderr_tail=(stderr or "")[-TAIL_CHARS:],
            outputs=outputs,
            timed_out=timed_out,
            cancelled=cancelled,
        )


# ----------------------------------------------------------------------
# Step executor
# ----------------------------------------------------------------------

@dataclass
class StepsOutcome:
    status: Status
    blocking: bool
    results: List[StepResult]
    # step id -> {"outputs", "outcome", "conclusion"}
    steps_scope: Dict[str, Dict[str, object]]


class StepExecutor:
    """
    Runs steps for one run. Shared by every job of the run; holds no
    per-job state.
    """

    def __init__(
        self,
        runner: CommandRunner,
        *,
        composer: Optional["Composer"] = None,
        redactor: Optional[Redactor] = None,
        cancel: Optional[CancelToken] = None,
        console: Optional[Console] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.runner = runner
        self.composer = composer
        self.redactor = redactor or Redactor()
        self.cancel = cancel or CancelToken()
        self.console = console or get_console()
        self.clock = clock

    # -- sequences --

    def run_steps(self, steps: List[Step], context: Context, *, path: str, depth: int = 0) -> StepsOutcome:
        """Run steps strictly in order; later steps see earlier step outputs."""
        results: List[StepResult] = []
        steps_scope: Dict[str, Dict[str, object]] = {}
        job_status = Status.SUCCESS
        soft_failure = False

        for index, step in enumerate(steps):
            if self.cancel.cancelled and job_status is Status.SUCCESS:
                job_status = Status.CANCELLED
            ctx = context.with_scopes(
                steps=steps_scope,
                job={"status": job_status.value},
            )
            result = self.run_step(step, ctx, path=f"{path}/{step.id or index}", depth=depth)
            results.append(result)

            if step.id:
                steps_scope[step.id] = {
                    "outputs": dict(result.outputs),
                    "outcome": result.status.value,
                    "conclusion": result.conclusion.value,
                }

            if result.status is Status.FAILURE:
                if result.blocking:
                    job_status = Status.FAILURE
                else:
                    soft_failure = True
            elif result.status is Status.CANCELLED and job_status is Status.SUCCESS:
                job_status = Status.CANCELLED

        if job_status is Status.SUCCESS and soft_failure:
            return StepsOutcome(Status.FAILURE, False, results, steps_scope)
        return StepsOutcome(job_status, True, results, steps_scope)

    # -- single step --

    def run_step(self, step: Step, context: Context, *, path: str, depth: int = 0) -> StepResult:
        started = self.clock()
        blocking = not step.continue_on_error

        def _done(status: Status, **kw) -> StepResult:
            return StepResult(
                name=step.name,
                id=step.id,
                status=status,
                duration=self.clock() - started,
                blocking=blocking,
                **kw,
            )

        try:
            if self.cancel.cancelled and not uses_status_function(step.if_):
                return _done(Status.CANCELLED, error="run cancelled")
            if not check_predicate(step.if_, context):
                return _done(Status.SKIPPED)

            env = dict(context.scope("env"))
            for key, value in step.env.items():
                env[key] = interpolate_str(value, context.with_scope("env", env))
            ctx = context.with_scope("env", env)

            self.console.print_step(step.name)
            if step.is_action_call:
                return self._run_action(step, ctx, path=path, depth=depth, started=started)
            return self._run_command(step, ctx, env, path=path, started=started)

        except WorkflowError as e:
            e.locate(path, context.snapshot(self.redactor))
            message = self.redactor.redact(str(e))
            self.console.print_failure(step.name, message)
            return _done(Status.FAILURE, error=message, context=e.context)

    def _run_command(self, step: Step, ctx: Context, env: Dict[str, str], *, path: str, started: float) -> StepResult:
        command = interpolate_str(step.run, ctx)
        working_dir = interpolate_str(step.working_directory, ctx) if step.working_directory else None
        policy = step.retry
        # cleanup steps (always()/cancelled()) still run after a cancel
        cancel = None if uses_status_function(step.if_) else self.cancel

        logs: List[str] = []
        attempt = 0
        while True:
            attempt += 1
            if cancel is not None and cancel.cancelled:
                raise CancelledError("run cancelled before command started", path=path)

            try:
                outcome = self.runner.run(
                    command,
                    env,
                    working_dir,
                    cancel=cancel,
                    timeout=step.timeout,
                )
            except (OSError, ValueError) as e:
                raise StepExecutionFailure(
                    f"could not execute command: {e}",
                    path=path,
                    details={"attempt": attempt},
                )

            log = self.redactor.redact(_format_log(outcome))
            if log:
                logs.append(log if policy.attempts == 1 else f"[attempt {attempt}]\n{log}")

            if outcome.exit_code == 0 and not outcome.timed_out and not outcome.cancelled:
                return StepResult(
                    name=step.name,
                    id=step.id,
                    status=Status.SUCCESS,
                    outputs=dict(outcome.outputs),
                    log="\n".join(logs),
                    duration=self.clock() - started,
                    attempts=attempt,
                    blocking=not step.continue_on_error,
                )

            if outcome.cancelled:
                return StepResult(
                    name=step.name,
                    id=step.id,
                    status=Status.CANCELLED,
                    log="\n".join(logs),
                    duration=self.clock() - started,
                    attempts=attempt,
                    error="run cancelled",
                    blocking=not step.continue_on_error,
                )

            failure = self._classify(outcome, policy, command, attempt, path)
            if isinstance(failure, TransientCommandError) and attempt < policy.attempts:
                delay = policy.delay(attempt)
                self.console.print_retry(step.name, attempt, policy.attempts, delay)
                if cancel is None:
                    time.sleep(delay)
                elif cancel.wait(delay):
                    raise CancelledError("run cancelled during retry backoff", path=path)
                continue

            failure.locate(path, ctx.snapshot(self.redactor))
            message = self.redactor.redact(str(failure))
            self.console.print_failure(step.name, message, exit_code=outcome.exit_code)
            return StepResult(
                name=step.name,
                id=step.id,
                status=Status.FAILURE,
                log="\n".join(logs),
                duration=self.clock() - started,
                attempts=attempt,
                error=message,
                context=failure.context,
                blocking=not step.continue_on_error,
            )

    def _classify(
        self,
        outcome: CommandOutcome,
        policy: RetryPolicy,
        command: str,
        attempt: int,
        path: str,
    ) -> StepExecutionFailure:
        """
        Turn a failed attempt into an error.

        Failures the step's policy would retry are TransientCommandError,
        even on the last attempt; everything else is StepExecutionFailure.
        """
        transient = policy.attempts > 1 and policy.should_retry(outcome.exit_code, outcome.timed_out)
        cls = TransientCommandError if transient else StepExecutionFailure
        return cls(
            "command timed out" if outcome.timed_out else "command failed",
            path=path,
            details={
                "exit_code": outcome.exit_code,
                "attempts": attempt,
                "command": self.redactor.redact(command),
            },
        )

    def _run_action(self, step: Step, ctx: Context, *, path: str, depth: int, started: float) -> StepResult:
        if self.composer is None:
            raise StepExecutionFailure(f"no composer configured to resolve {step.uses!r}", path=path)
        outcome, outputs = self.composer.call_action(step, ctx, executor=self, path=path, depth=depth)
        failed = first_failure(outcome.results)
        return StepResult(
            name=step.name,
            id=step.id,
            status=outcome.status,
            outputs=outputs,
            duration=self.clock() - started,
            attempts=1,
            blocking=not step.continue_on_error and outcome.blocking,
            children=outcome.results,
            error=failed.error if failed else None,
            context=failed.context if failed else None,
        )


def first_failure(results: List[StepResult]) -> Optional[StepResult]:
    for r in results:
        if r.status is Status.FAILURE and r.error:
            return r
    return None


def _format_log(outcome: CommandOutcome) -> str:
    parts = []
    if outcome.stdout_tail.strip():
        parts.append(outcome.stdout_tail.rstrip())
    if outcome.stderr_tail.strip():
        parts.append(outcome.stderr_tail.rstrip())
    return "\n".join(parts)
