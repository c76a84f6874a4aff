# orchestrator.py
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Sequence

from . import settings
from .composer import Composer, Registry, aggregate_status
from .context import Context
from .errors import ProtectedEnvironmentError, TriggerMismatchError, WorkflowError
from .executor import CancelToken, CommandRunner, StepExecutor, SubprocessRunner
from .model import JobResult, RunResult, Status, Workflow
from .scheduler import Scheduler
from .secrets import EnvSecretVault, Redactor, SecretScope, SecretVault
from .ui.console import Console, get_console


@dataclass(frozen=True)
class Trigger:
    """An event delivered by an external source (webhook, CLI, schedule)."""
    event_type: str = "push"
    ref: str = "refs/heads/main"
    payload: Dict[str, Any] = field(default_factory=dict)
    actor: str = ""
    sha: str = ""

    @property
    def ref_name(self) -> str:
        for prefix in ("refs/heads/", "refs/tags/"):
            if self.ref.startswith(prefix):
                return self.ref[len(prefix):]
        return self.ref


@dataclass(frozen=True)
class Environment:
    """
    Deployment target selected for a run (e.g. staging, production).

    A protected environment only runs from one of the orchestrator's
    protected refs (the default branch unless configured otherwise).
    """
    name: str
    env: Dict[str, str] = field(default_factory=dict)
    protected: bool = False

    @classmethod
    def named(cls, name: str, env: Optional[Mapping[str, str]] = None) -> "Environment":
        """Environment marked protected when listed in ACTIONSMITH_PROTECTED_ENVIRONMENTS."""
        return cls(name=name, env=dict(env or {}), protected=name in settings.PROTECTED_ENVIRONMENTS)


def now_utc() -> str:
    return datetime.now(timezone.utc).isoformat()


def _github(workflow: Workflow, trigger: Trigger, run_id: str) -> Dict[str, Any]:
    return {
        "event_name": trigger.event_type,
        "ref": trigger.ref,
        "ref_name": trigger.ref_name,
        "sha": trigger.sha,
        "actor": trigger.actor,
        "event": dict(trigger.payload),
        "run_id": run_id,
        "workflow": workflow.name,
    }


class Orchestrator:
    """
    Top-level driver: trigger -> validation -> root context -> scheduler.

    Each `run` gets its own redactor and executor. The cancel token is
    shared: once cancelled, an Orchestrator stays cancelled.
    """

    def __init__(
        self,
        *,
        runner: Optional[CommandRunner] = None,
        vault: Optional[SecretVault] = None,
        registry: Optional[Registry] = None,
        max_workers: int | None = None,
        console: Optional[Console] = None,
        protected_refs: Optional[Sequence[str]] = None,
    ):
        self.runner = runner or SubprocessRunner()
        self.vault = vault or EnvSecretVault()
        self.composer = Composer(registry)
        self.max_workers = max_workers
        self.console = console or get_console()
        self.protected_refs = tuple(settings.PROTECTED_REFS if protected_refs is None else protected_refs)
        self.cancel_token = CancelToken()

    @property
    def registry(self) -> Registry:
        return self.composer.registry

    def cancel(self) -> None:
        """Skip jobs that have not started; running steps stop at their next check."""
        self.cancel_token.cancel()

    def validate(
        self,
        workflow: Workflow,
        trigger: Optional[Trigger] = None,
        inputs: Optional[Mapping[str, Any]] = None,
        environment: Optional[Environment] = None,
    ) -> None:
        """
        Pre-run checks. Raises before anything is executed.

        Trigger inputs are only bound when `inputs` is given. Raised errors
        carry a snapshot of the context the run would have started with.
        """
        try:
            if trigger is not None:
                self._check_trigger(workflow, trigger, environment)
            # needs graph (cycles, unknown jobs) and every nested call
            self.composer.validate(workflow)
            if inputs is not None:
                Composer.bind_inputs(workflow.inputs, inputs, None, path=workflow.name, owner=workflow.name)
        except WorkflowError as e:
            pending = Context({
                "github": _github(workflow, trigger or Trigger(), run_id=""),
                "inputs": dict(inputs or {}),
                "environment": {"name": environment.name if environment else ""},
            })
            raise e.locate(workflow.name, pending.snapshot())

    def _check_trigger(self, workflow: Workflow, trigger: Trigger, environment: Optional[Environment]) -> None:
        if workflow.on and trigger.event_type not in workflow.on:
            raise TriggerMismatchError(
                f"workflow {workflow.name!r} does not run on {trigger.event_type!r}",
                details={"accepted": ", ".join(workflow.on)},
            )
        if environment is not None and environment.protected and trigger.ref not in self.protected_refs:
            raise ProtectedEnvironmentError(
                f"environment {environment.name!r} is protected and cannot run from {trigger.ref!r}",
                details={"allowed_refs": ", ".join(self.protected_refs) or "-"},
            )

    def root_context(
        self,
        workflow: Workflow,
        trigger: Trigger,
        run_id: str,
        environment: Optional[Environment],
        inputs: Mapping[str, Any],
    ) -> Context:
        bound = Composer.bind_inputs(workflow.inputs, inputs, None, path=workflow.name, owner=workflow.name)
        return Context({
            "github": _github(workflow, trigger, run_id),
            "inputs": bound,
            "env": {},
            "environment": {"name": environment.name if environment else ""},
        })

    def run(
        self,
        workflow: Workflow,
        trigger: Optional[Trigger] = None,
        environment: Optional[Environment] = None,
        inputs: Optional[Mapping[str, Any]] = None,
        *,
        run_id: Optional[str] = None,
        redactor: Optional[Redactor] = None,
    ) -> RunResult:
        """
        Run `workflow` to completion.

        Pre-run errors (cycles, unbound required inputs, unknown `uses`,
        trigger mismatch, protected environment) are raised and no job
        starts. Everything after that is reported in the returned RunResult.

        Pass `redactor` to keep hold of the secret values read during the
        run, e.g. to redact an unexpected exception.
        """
        trigger = trigger or Trigger()
        run_id = run_id or uuid.uuid4().hex
        inputs = inputs or {}
        started_at = now_utc()

        self.validate(workflow, trigger, inputs, environment)
        ctx = self.root_context(workflow, trigger, run_id, environment, inputs)

        if redactor is None:
            redactor = Redactor()
        executor = StepExecutor(
            self.runner,
            composer=self.composer,
            redactor=redactor,
            cancel=self.cancel_token,
            console=self.console,
        )
        scheduler = Scheduler(executor, self.composer, max_workers=self.max_workers, console=self.console)

        env_name = (environment.name or None) if environment else None
        secret_names = [s.name for s in workflow.secrets]

        def secrets_for(job) -> SecretScope:
            return SecretScope(secret_names, self.vault, scope=job.environment or env_name, redactor=redactor)

        self.console.print_run_started(
            workflow=workflow.name,
            event=trigger.event_type,
            ref=trigger.ref,
            environment=env_name,
            job_count=len(workflow.jobs),
        )

        env = dict(workflow.env)
        if environment is not None:
            env.update(environment.env)

        jobs: Dict[str, JobResult] = scheduler.run(
            workflow.jobs,
            ctx,
            env=env,
            secrets_for=secrets_for,
            path=workflow.name,
        )
        status = aggregate_status(jobs.values(), cancelled=self.cancel_token.cancelled)

        outputs: Dict[str, Any] = {}
        if status is Status.SUCCESS and workflow.outputs:
            jobs_scope = {name: {"result": r.status.value, "outputs": dict(r.outputs)} for name, r in jobs.items()}
            jobs_ctx = ctx.with_scope("jobs", jobs_scope)
            try:
                outputs = Composer.bind_outputs(workflow.outputs, jobs_ctx)
            except WorkflowError as e:
                raise e.locate(workflow.name, jobs_ctx.snapshot(redactor))

        return RunResult(
            run_id=run_id,
            workflow=workflow.name,
            status=status,
            jobs=jobs,
            outputs=outputs,
            event_type=trigger.event_type,
            ref=trigger.ref,
            environment=env_name,
            started_at=started_at,
            finished_at=now_utc(),
            error=next((r.error for r in jobs.values() if r.error and r.blocking), None),
            secret_values=redactor.values,
        )
