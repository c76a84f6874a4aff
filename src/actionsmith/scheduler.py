# scheduler.py
from __future__ import annotations

import os
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from .composer import Composer
from .context import Context
from .errors import CyclicDependencyError, InvalidWorkflowError, WorkflowError
from .executor import CancelToken, StepExecutor, first_failure
from .expressions import check_predicate, interpolate_str, uses_status_function
from .model import Job, JobResult, Status
from .ui.console import Console, get_console

SecretsFor = Callable[[Job], Mapping[str, str]]


def build_dag(jobs: List[Job], *, path: str | None = None) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from Job objects.

    Requires:
      - job.name: str (unique)
      - job.needs: names of jobs that must reach a terminal state BEFORE this job
    """
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise InvalidWorkflowError(f"duplicate job names: {dupes}", path=path)

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in name_set}
    indeg: Dict[str, int] = {n: 0 for n in name_set}

    for job in jobs:
        for need in job.needs:
            if need not in name_set:
                raise InvalidWorkflowError(
                    f"job {job.name!r} needs missing job {need!r}",
                    path=path,
                    details={"known": ", ".join(sorted(name_set))},
                )
            # edge need -> job (need runs first)
            if job.name not in adj[need]:
                adj[need].add(job.name)
                indeg[job.name] += 1

    return adj, indeg


def topo_levels(
    adj: Dict[str, Set[str]],
    indeg: Dict[str, int],
    *,
    path: str | None = None,
) -> List[List[str]]:
    """
    Convert the DAG into topological "levels".
    Jobs in one level have no dependency on each other.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted(n for n, d in indeg.items() if d == 0))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level: List[str] = []
        for _ in range(len(q)):
            node = q.popleft()
            level.append(node)
            processed += 1
            for child in sorted(adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)
        levels.append(level)

    if processed != len(indeg):
        stuck = sorted(n for n, d in indeg.items() if d > 0)
        raise CyclicDependencyError(
            f"needs graph has a cycle; stuck jobs: {stuck}",
            path=path,
            details={"jobs": ", ".join(stuck)},
        )

    return levels


def plan(jobs: Iterable[Job]) -> List[List[str]]:
    jobs = list(jobs)
    adj, indeg = build_dag(jobs)
    return topo_levels(adj, indeg)


def _needs_status(needs: List[str], results: Dict[str, JobResult]) -> Status:
    statuses = [results[n] for n in needs]
    if any(r.status is Status.FAILURE and r.blocking for r in statuses):
        return Status.FAILURE
    if any(r.status is Status.CANCELLED for r in statuses):
        return Status.CANCELLED
    if any(r.status is Status.SKIPPED for r in statuses):
        return Status.SKIPPED
    return Status.SUCCESS


class Scheduler:
    """
    Runs a job graph. Independent jobs run concurrently on a thread pool;
    a job is considered once every job in its `needs` is terminal.
    """

    def __init__(
        self,
        executor: StepExecutor,
        composer: Composer,
        *,
        max_workers: int | None = None,
        console: Optional[Console] = None,
    ):
        self.executor = executor
        self.composer = composer
        self.console = console or get_console()
        if max_workers is None:
            c = os.cpu_count() or 2
            max_workers = max(1, c - 1)
        self.max_workers = max_workers

    @property
    def cancel(self) -> CancelToken:
        return self.executor.cancel

    def run(
        self,
        jobs: List[Job],
        context: Context,
        *,
        secrets_for: SecretsFor,
        env: Mapping[str, str] | None = None,
        path: str = "",
        depth: int = 0,
    ) -> Dict[str, JobResult]:
        """
        Returns job name -> JobResult for every job (run, skipped or failed).

        Raises CyclicDependencyError / InvalidWorkflowError before any job
        starts.
        """
        by_name = {j.name: j for j in jobs}
        adj, indeg = build_dag(jobs, path=path or None)
        topo_levels(adj, indeg, path=path or None)

        indeg = dict(indeg)
        ready: List[str] = sorted((n for n, d in indeg.items() if d == 0), reverse=True)
        results: Dict[str, JobResult] = {}
        in_flight: Dict[Future, str] = {}
        env = dict(env or {})

        def _finish(name: str, result: JobResult) -> None:
            results[name] = result
            for nxt in sorted(adj[name]):
                indeg[nxt] -= 1
                if indeg[nxt] == 0:
                    ready.append(nxt)

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            while ready or in_flight:
                # decide every currently ready job; skipped jobs unlock their dependents at once
                while ready:
                    name = ready.pop()
                    job = by_name[name]
                    job_path = f"{path}/{name}" if path else name
                    try:
                        job_ctx = self._job_context(job, context, results, secrets_for)
                        run_it, reason = self._gate(job, job_ctx, results)
                        if run_it:
                            job_ctx = self._with_env(job, job_ctx, env)
                    except WorkflowError as e:
                        e.locate(job_path, context.snapshot(self.executor.redactor))
                        message = self.executor.redactor.redact(str(e))
                        self.console.print_failure(name, message, is_job=True)
                        _finish(name, JobResult(name=name, status=Status.FAILURE, error=message, context=e.context))
                        continue

                    if not run_it:
                        self.console.print_job_skipped(name, reason)
                        _finish(name, JobResult(name=name, status=Status.SKIPPED, reason=reason))
                        continue

                    fut = pool.submit(self._run_job, job, job_ctx, job_path, depth)
                    in_flight[fut] = name

                if not in_flight:
                    break

                # wait for one completion, then loop to decide newly-ready jobs
                fut = next(as_completed(list(in_flight.keys())))
                name = in_flight.pop(fut)
                try:
                    result = fut.result()
                except Exception as e:
                    message = self.executor.redactor.redact(str(e))
                    self.console.print_failure(name, message, is_job=True)
                    result = JobResult(
                        name=name,
                        status=Status.FAILURE,
                        error=message,
                        context=getattr(e, "context", None),
                    )
                _finish(name, result)

        # keep definition order for reporting
        return {j.name: results[j.name] for j in jobs}

    # ------------------------------------------------------------------

    def _job_context(
        self,
        job: Job,
        context: Context,
        results: Dict[str, JobResult],
        secrets_for: SecretsFor,
    ) -> Context:
        needs_scope = {}
        for n in job.needs:
            r = results[n]
            needs_scope[n] = {
                "result": r.status.value,
                # outputs are only visible once the producer succeeded
                "outputs": dict(r.outputs) if r.status is Status.SUCCESS else {},
            }
        return context.with_scopes(
            needs=needs_scope,
            secrets=secrets_for(job),
            job={"status": _needs_status(job.needs, results).value},
            environment={"name": job.environment or context.scope("environment").get("name", "")},
        )

    @staticmethod
    def _with_env(job: Job, ctx: Context, env: Mapping[str, str]) -> Context:
        """Workflow env, then job env; later entries may reference earlier ones."""
        merged: Dict[str, str] = dict(ctx.scope("env"))
        for key, value in env.items():
            merged[key] = interpolate_str(value, ctx.with_scope("env", merged))
        for key, value in job.env.items():
            merged[key] = interpolate_str(value, ctx.with_scope("env", merged))
        return ctx.with_scope("env", merged)

    def _gate(self, job: Job, ctx: Context, results: Dict[str, JobResult]) -> Tuple[bool, str]:
        if self.cancel.cancelled:
            return False, "run cancelled"

        if job.if_ is not None and uses_status_function(job.if_):
            if check_predicate(job.if_, ctx):
                return True, ""
            return False, f"condition false: {job.if_}"

        needs_status = _needs_status(job.needs, results)
        if needs_status is not Status.SUCCESS:
            failed = [n for n in job.needs if not results[n].satisfied]
            return False, f"dependency {needs_status.value}: {', '.join(failed)}"

        if job.if_ is not None and not check_predicate(job.if_, ctx):
            return False, f"condition false: {job.if_}"
        return True, ""

    def _run_job(self, job: Job, ctx: Context, path: str, depth: int) -> JobResult:
        started = time.monotonic()
        self.console.print_job_start(job.name)

        if job.is_workflow_call:
            try:
                result = self.composer.call_workflow(job, ctx, scheduler=self, path=path, depth=depth)
            except WorkflowError as e:
                e.locate(path, ctx.snapshot(self.executor.redactor))
                result = JobResult(
                    name=job.name,
                    status=Status.FAILURE,
                    error=self.executor.redactor.redact(str(e)),
                    context=e.context,
                )
        else:
            outcome = self.executor.run_steps(job.steps, ctx, path=path, depth=depth)
            outputs = {}
            if outcome.status is Status.SUCCESS:
                steps_ctx = ctx.with_scope("steps", outcome.steps_scope)
                try:
                    outputs = self.composer.bind_outputs(job.outputs, steps_ctx)
                except WorkflowError as e:
                    raise e.locate(path, steps_ctx.snapshot(self.executor.redactor))
            failed = first_failure(outcome.results)
            result = JobResult(
                name=job.name,
                status=outcome.status,
                steps=outcome.results,
                outputs=outputs,
                blocking=outcome.blocking,
                error=failed.error if failed else None,
                context=failed.context if failed else None,
            )

        if job.continue_on_error:
            result.blocking = False
        result.duration = time.monotonic() - started

        if result.status is Status.SUCCESS:
            self.console.print_success(job.name)
        elif result.status is Status.FAILURE:
            self.console.print_failure(job.name, result.error or "job failed", is_job=True)
        return result
