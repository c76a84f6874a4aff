# src/actionsmith/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .model import Action, InputSpec, Job, OutputSpec, RetryPolicy, SecretSpec, Step, Workflow


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    id: str | None = None,
    env: Optional[Dict[str, str]] = None,
    if_: str | None = None,
    continue_on_error: bool = False,
    cwd: str | None = None,
    retry: Optional[RetryPolicy] = None,
    timeout: float | None = None,
) -> Step:
    """Create a shell step."""
    return Step(
        name=name,
        run=cmd,
        id=id,
        env=env or {},
        if_=if_,
        continue_on_error=continue_on_error,
        working_directory=cwd,
        retry=retry or RetryPolicy(),
        timeout=timeout,
    )


def uses(
    name: str,
    ref: str,
    *,
    id: str | None = None,
    with_: Optional[Dict[str, str]] = None,
    secrets: Optional[Dict[str, str]] = None,
    env: Optional[Dict[str, str]] = None,
    if_: str | None = None,
    continue_on_error: bool = False,
) -> Step:
    """Create a step that calls a composite action."""
    return Step(
        name=name,
        uses=ref,
        id=id,
        with_=with_ or {},
        secrets=secrets or {},
        env=env or {},
        if_=if_,
        continue_on_error=continue_on_error,
    )


def retry(
    attempts: int,
    *,
    backoff: float = 2.0,
    multiplier: float = 2.0,
    max_backoff: float = 60.0,
    on_exit_codes: Sequence[int] = (),
) -> RetryPolicy:
    return RetryPolicy(
        attempts=attempts,
        backoff=backoff,
        multiplier=multiplier,
        max_backoff=max_backoff,
        retry_on_exit_codes=tuple(on_exit_codes),
    )


# ---------------------------------------------------------------------
# Declarations
# ---------------------------------------------------------------------

def input_(name: str, *, required: bool = False, default: str | None = None, description: str = "") -> InputSpec:
    return InputSpec(name=name, required=required, default=default, description=description)


def secret(name: str, *, required: bool = True, description: str = "") -> SecretSpec:
    return SecretSpec(name=name, required=required, description=description)


def output(name: str, value: str, *, description: str = "") -> OutputSpec:
    return OutputSpec(name=name, value=value, description=description)


# ---------------------------------------------------------------------
# Functional Job helpers
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    if_: str | None = None,
    env: Optional[Dict[str, str]] = None,
    outputs: Optional[Dict[str, str]] = None,
    environment: str | None = None,
    continue_on_error: bool = False,
    cwd: str | None = None,  # default working directory for steps missing one
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [
            s if s.working_directory is not None or s.is_action_call else replace(s, working_directory=cwd)
            for s in steps_final
        ]

    return Job(
        name=name,
        steps=steps_final,
        needs=list(needs or []),
        if_=if_,
        env=env or {},
        outputs=outputs or {},
        environment=environment,
        continue_on_error=continue_on_error,
    )


def call(
    name: str,
    ref: str,
    *,
    with_: Optional[Dict[str, str]] = None,
    secrets: Optional[Dict[str, str]] = None,
    needs: Optional[List[str]] = None,
    if_: str | None = None,
    environment: str | None = None,
    continue_on_error: bool = False,
) -> Job:
    """A job that calls a reusable workflow."""
    return Job(
        name=name,
        uses=ref,
        with_=with_ or {},
        secrets=secrets or {},
        needs=list(needs or []),
        if_=if_,
        environment=environment,
        continue_on_error=continue_on_error,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._outputs: dict[str, str] = {}
        self._if: Optional[str] = None
        self._environment: Optional[str] = None
        self._continue_on_error = False

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def define_step(self, name: str, run: str, **kwargs: Any):
        self._steps.append(sh(name, run, **kwargs))
        return self

    def use_action(self, name: str, ref: str, **kwargs: Any):
        self._steps.append(uses(name, ref, **kwargs))
        return self

    def with_env(self, **env):
        # values are always strings in a process env
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_outputs(self, **outputs: str):
        self._outputs.update(outputs)
        return self

    def when(self, condition: str):
        self._if = condition
        return self

    def in_environment(self, name: str):
        self._environment = name
        return self

    def allow_failure(self, enabled: bool = True):
        self._continue_on_error = enabled
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")
        return Job(
            name=self.name,
            steps=list(self._steps),
            needs=list(self._needs),
            if_=self._if,
            env=dict(self._env),
            outputs=dict(self._outputs),
            environment=self._environment,
            continue_on_error=self._continue_on_error,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Workflow / action helpers (single-file story)
# ---------------------------------------------------------------------

def _flatten(items: Iterable[Any]) -> List[Any]:
    out: List[Any] = []
    for item in items:
        if isinstance(item, (list, tuple)):
            out.extend(item)
        else:
            out.append(item)
    return out


def wf(
    name: str,
    *jobs: Job | List[Job],
    inputs: Optional[List[InputSpec]] = None,
    secrets: Optional[List[SecretSpec]] = None,
    outputs: Optional[List[OutputSpec]] = None,
    env: Optional[Dict[str, str]] = None,
    on: Optional[List[str]] = None,
) -> Workflow:
    """
    Workflow definition helper. Use this name so you can define your own
    def workflow(): return wf("ci", job(...), job(...)).

    Lists of jobs (e.g. built in a loop) are flattened in place.
    """
    return Workflow(
        name=name,
        jobs=_flatten(jobs),
        inputs=list(inputs or []),
        secrets=list(secrets or []),
        outputs=list(outputs or []),
        env=env or {},
        on=list(on or []),
    )


def action(
    name: str,
    *steps: Step,
    inputs: Optional[List[InputSpec]] = None,
    secrets: Optional[List[SecretSpec]] = None,
    outputs: Optional[List[OutputSpec]] = None,
    description: str = "",
) -> Action:
    return Action(
        name=name,
        steps=list(steps),
        inputs=list(inputs or []),
        secrets=list(secrets or []),
        outputs=list(outputs or []),
        description=description,
    )
