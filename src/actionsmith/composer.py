# composer.py
"""
Resolves `uses:` references and binds values across call boundaries.

- a reusable Workflow may only be called from a job slot
- a composite Action may only be called from a step slot
- inputs and secrets are passed explicitly; nothing is inherited
- callee outputs come back under the caller's steps.<id> / needs.<job>
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from .context import Context
from .errors import (
    InvalidCallError,
    MissingRequiredInputError,
    UnknownReferenceError,
    UnresolvedReferenceError,
)
from .expressions import interpolate, interpolate_str, references, to_string
from .model import Action, InputSpec, JobResult, Job, OutputSpec, SecretSpec, Status, Step, Workflow
from .secrets import Redactor

if TYPE_CHECKING:
    from .executor import StepExecutor, StepsOutcome
    from .scheduler import Scheduler

Target = Union[Workflow, Action]

# scopes a callee starts with; everything else must be passed in
CALLEE_SCOPES = ("github", "environment")


class Registry:
    """Maps `uses` references ("org/deploy@v1", "./actions/setup") to definitions."""

    def __init__(self) -> None:
        self._targets: Dict[str, Target] = {}

    def register(self, ref: str, target: Target) -> "Registry":
        if not isinstance(target, (Workflow, Action)):
            raise TypeError(f"can only register Workflow or Action, got {type(target).__name__}")
        self._targets[ref] = target
        return self

    def register_workflow(self, ref: str, workflow: Workflow) -> "Registry":
        return self.register(ref, workflow)

    def register_action(self, ref: str, action: Action) -> "Registry":
        return self.register(ref, action)

    def update(self, targets: Mapping[str, Target]) -> "Registry":
        for ref, target in targets.items():
            self.register(ref, target)
        return self

    def resolve(self, ref: str) -> Target:
        if ref in self._targets:
            return self._targets[ref]
        # "org/repo/action@v2" falls back to an unversioned registration
        base = ref.split("@", 1)[0]
        if base in self._targets:
            return self._targets[base]
        raise UnknownReferenceError(
            f"cannot resolve uses: {ref!r}",
            details={"known": ", ".join(sorted(self._targets)) or "-"},
        )

    def __contains__(self, ref: object) -> bool:
        if not isinstance(ref, str):
            return False
        return ref in self._targets or ref.split("@", 1)[0] in self._targets

    def __len__(self) -> int:
        return len(self._targets)


class Composer:
    def __init__(self, registry: Optional[Registry] = None, *, max_depth: int = 10):
        self.registry = registry or Registry()
        self.max_depth = max_depth

    # ------------------------------------------------------------------
    # Static validation (before any job starts)
    # ------------------------------------------------------------------

    def validate(self, workflow: Workflow) -> None:
        """
        Walk every call reachable from `workflow` and check bindings.

        Raises MissingRequiredInputError, UnknownReferenceError or
        InvalidCallError. Nothing is executed.
        """
        self._validate_workflow(workflow, path=workflow.name, stack=(workflow.name,))

    def _validate_workflow(self, workflow: Workflow, *, path: str, stack: Tuple[str, ...]) -> None:
        from .scheduler import build_dag, topo_levels

        adj, indeg = build_dag(workflow.jobs, path=path)
        topo_levels(adj, indeg, path=path)

        declared_secrets = {s.name for s in workflow.secrets}
        self._check_secret_refs(workflow.env.values(), declared_secrets, path)
        for job in workflow.jobs:
            job_path = f"{path}/{job.name}"
            self._check_secret_refs(
                [*job.env.values(), *job.with_.values(), *job.secrets.values()],
                declared_secrets,
                job_path,
                predicate=job.if_,
            )
            if job.is_workflow_call:
                target = self._resolve(job.uses, job_path)
                if not isinstance(target, Workflow):
                    raise InvalidCallError(
                        f"{job.uses!r} is an action; actions can only be used from a step",
                        path=job_path,
                    )
                self._check_bindings(target, job.with_, job.secrets, job_path)
                self._recurse(job.uses, target, job_path, stack)
            else:
                for index, step in enumerate(job.steps):
                    self._validate_step(step, declared_secrets, f"{job_path}/{step.id or index}", stack)

    def _validate_action(self, action: Action, *, path: str, stack: Tuple[str, ...]) -> None:
        declared_secrets = {s.name for s in action.secrets}
        for index, step in enumerate(action.steps):
            self._validate_step(step, declared_secrets, f"{path}/{step.id or index}", stack)

    def _validate_step(self, step: Step, declared_secrets: set, path: str, stack: Tuple[str, ...]) -> None:
        texts: List[str] = list(step.env.values())
        if step.run is not None:
            texts.append(step.run)
        texts.extend(step.with_.values())
        texts.extend(step.secrets.values())
        self._check_secret_refs(texts, declared_secrets, path, predicate=step.if_)

        if not step.is_action_call:
            return
        target = self._resolve(step.uses, path)
        if not isinstance(target, Action):
            raise InvalidCallError(
                f"{step.uses!r} is a reusable workflow; workflows can only be called from a job",
                path=path,
            )
        self._check_bindings(target, step.with_, step.secrets, path)
        self._recurse(step.uses, target, path, stack)

    def _recurse(self, ref: str, target: Target, path: str, stack: Tuple[str, ...]) -> None:
        key = ref.split("@", 1)[0]
        if key in stack:
            raise InvalidCallError(
                "recursive call chain",
                path=path,
                details={"chain": " -> ".join([*stack, key])},
            )
        if len(stack) > self.max_depth:
            raise InvalidCallError(f"call depth exceeds {self.max_depth}", path=path)
        if isinstance(target, Workflow):
            self._validate_workflow(target, path=f"{path}::{key}", stack=(*stack, key))
        else:
            self._validate_action(target, path=f"{path}::{key}", stack=(*stack, key))

    def _resolve(self, ref: str, path: str) -> Target:
        try:
            return self.registry.resolve(ref)
        except UnknownReferenceError as e:
            raise e.locate(path)

    def _check_secret_refs(
        self,
        texts: Iterable[Any],
        declared: set,
        path: str,
        predicate: Optional[str] = None,
    ) -> None:
        # non-string bindings (numbers, flags) hold no expressions
        refs = [ref for text in texts if isinstance(text, str) for ref in references(text)]
        if predicate:
            refs.extend(references(predicate, predicate=True))
        for ref in refs:
            parts = ref.split(".")
            if parts[0] == "secrets" and len(parts) > 1 and parts[1] not in declared:
                raise InvalidCallError(
                    f"reference to undeclared secret {parts[1]!r}",
                    path=path,
                    details={"declared": ", ".join(sorted(declared)) or "-"},
                )

    @staticmethod
    def _check_bindings(target: Target, with_: Mapping[str, Any], secrets: Mapping[str, Any], path: str) -> None:
        input_names = {i.name for i in target.inputs}
        secret_names = {s.name for s in target.secrets}

        unknown = sorted(set(with_) - input_names)
        if unknown:
            raise InvalidCallError(
                f"{target.name!r} does not declare input(s) {unknown}",
                path=path,
                details={"declared": ", ".join(sorted(input_names)) or "-"},
            )
        unknown = sorted(set(secrets) - secret_names)
        if unknown:
            raise InvalidCallError(
                f"{target.name!r} does not declare secret(s) {unknown}",
                path=path,
                details={"declared": ", ".join(sorted(secret_names)) or "-"},
            )

        for spec in target.inputs:
            if spec.required and spec.default is None and spec.name not in with_:
                raise MissingRequiredInputError(
                    f"required input {spec.name!r} of {target.name!r} is not bound",
                    path=path,
                    details={"input": spec.name},
                )
        for spec in target.secrets:
            if spec.required and spec.name not in secrets:
                raise MissingRequiredInputError(
                    f"required secret {spec.name!r} of {target.name!r} is not bound",
                    path=path,
                    details={"secret": spec.name},
                )

    # ------------------------------------------------------------------
    # Binding
    # ------------------------------------------------------------------

    @staticmethod
    def bind_inputs(
        specs: Iterable[InputSpec],
        values: Mapping[str, Any],
        context: Optional[Context],
        *,
        path: str | None = None,
        owner: str = "workflow",
    ) -> Dict[str, str]:
        """
        Evaluate caller bindings in the caller's context and apply defaults.

        context=None binds literal values (trigger inputs) without
        interpolation.
        """
        specs = list(specs)
        declared = {s.name for s in specs}
        unknown = sorted(set(values) - declared)
        if unknown:
            raise InvalidCallError(f"{owner!r} does not declare input(s) {unknown}", path=path)

        bound: Dict[str, str] = {}
        for spec in specs:
            if spec.name in values:
                raw = values[spec.name]
                bound[spec.name] = to_string(raw) if context is None else interpolate_str(raw, context)
            elif spec.default is not None:
                bound[spec.name] = spec.default
            elif spec.required:
                raise MissingRequiredInputError(
                    f"required input {spec.name!r} of {owner!r} is not bound",
                    path=path,
                    details={"input": spec.name},
                )
            else:
                # declared optional inputs always exist in the callee scope
                bound[spec.name] = ""
        return bound

    @staticmethod
    def bind_secrets(
        specs: Iterable[SecretSpec],
        bindings: Mapping[str, str],
        context: Context,
        *,
        redactor: Redactor,
        path: str | None = None,
        owner: str = "workflow",
    ) -> Dict[str, str]:
        bound: Dict[str, str] = {}
        for spec in specs:
            if spec.name in bindings:
                value = interpolate_str(bindings[spec.name], context)
                redactor.add(value)
                bound[spec.name] = value
            elif spec.required:
                raise MissingRequiredInputError(
                    f"required secret {spec.name!r} of {owner!r} is not bound",
                    path=path,
                    details={"secret": spec.name},
                )
            else:
                bound[spec.name] = ""
        return bound

    @staticmethod
    def bind_outputs(
        outputs: Union[Mapping[str, str], Iterable[OutputSpec]],
        context: Context,
    ) -> Dict[str, Any]:
        """
        Evaluate output expressions in the callee context.

        An output whose producer never ran (skipped step, failed job)
        resolves to an empty string.
        """
        if not isinstance(outputs, Mapping):
            outputs = {o.name: o.value for o in outputs}
        bound: Dict[str, Any] = {}
        for name, expr in outputs.items():
            try:
                value = interpolate(expr, context)
            except UnresolvedReferenceError:
                value = ""
            bound[name] = to_string(value) if not isinstance(value, (Mapping, list, tuple)) else value
        return bound

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    def _callee_context(self, caller: Context, inputs: Dict[str, str], secrets: Dict[str, str]) -> Context:
        scopes: Dict[str, Any] = {name: caller[name] for name in CALLEE_SCOPES if name in caller}
        scopes.update(inputs=inputs, secrets=secrets, env={})
        return Context(scopes)

    def call_action(
        self,
        step: Step,
        context: Context,
        *,
        executor: "StepExecutor",
        path: str,
        depth: int = 0,
    ) -> Tuple["StepsOutcome", Dict[str, Any]]:
        if depth >= self.max_depth:
            raise InvalidCallError(f"call depth exceeds {self.max_depth}", path=path)

        target = self._resolve(step.uses, path)
        if not isinstance(target, Action):
            raise InvalidCallError(
                f"{step.uses!r} is a reusable workflow; workflows can only be called from a job",
                path=path,
            )

        inputs = self.bind_inputs(target.inputs, step.with_, context, path=path, owner=target.name)
        secrets = self.bind_secrets(
            target.secrets, step.secrets, context,
            redactor=executor.redactor, path=path, owner=target.name,
        )
        callee = self._callee_context(context, inputs, secrets)

        outcome = executor.run_steps(target.steps, callee, path=f"{path}::{target.name}", depth=depth + 1)
        outputs: Dict[str, Any] = {}
        if outcome.status is Status.SUCCESS or not outcome.blocking:
            outputs = self.bind_outputs(target.outputs, callee.with_scope("steps", outcome.steps_scope))
        return outcome, outputs

    def call_workflow(
        self,
        job: Job,
        context: Context,
        *,
        scheduler: "Scheduler",
        path: str,
        depth: int = 0,
    ) -> JobResult:
        if depth >= self.max_depth:
            raise InvalidCallError(f"call depth exceeds {self.max_depth}", path=path)

        target = self._resolve(job.uses, path)
        if not isinstance(target, Workflow):
            raise InvalidCallError(
                f"{job.uses!r} is an action; actions can only be used from a step",
                path=path,
            )

        redactor = scheduler.executor.redactor
        inputs = self.bind_inputs(target.inputs, job.with_, context, path=path, owner=target.name)
        secrets = self.bind_secrets(
            target.secrets, job.secrets, context,
            redactor=redactor, path=path, owner=target.name,
        )
        callee = self._callee_context(context, inputs, secrets)

        jobs = scheduler.run(
            target.jobs,
            callee,
            env=target.env,
            secrets_for=lambda _job: secrets,
            path=f"{path}::{target.name}",
            depth=depth + 1,
        )
        status = aggregate_status(jobs.values(), cancelled=scheduler.cancel.cancelled)

        outputs: Dict[str, Any] = {}
        if status is Status.SUCCESS:
            jobs_scope = {
                name: {"result": r.status.value, "outputs": dict(r.outputs)}
                for name, r in jobs.items()
            }
            outputs = self.bind_outputs(target.outputs, callee.with_scope("jobs", jobs_scope))

        return JobResult(
            name=job.name,
            status=status,
            outputs=outputs,
            jobs=jobs,
            error=next((r.error for r in jobs.values() if r.error), None),
        )


def aggregate_status(results: Iterable[JobResult], *, cancelled: bool = False) -> Status:
    """failure if any blocking job failed, cancelled if the run was cancelled, else success."""
    results = list(results)
    if any(r.status is Status.FAILURE and r.blocking for r in results):
        return Status.FAILURE
    if cancelled or any(r.status is Status.CANCELLED for r in results):
        return Status.CANCELLED
    return Status.SUCCESS
