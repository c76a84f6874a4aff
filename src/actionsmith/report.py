# report.py
"""
Persisted run-result layout.

    {
      "run_id": ..., "workflow": ..., "status": ...,
      "jobs": {
        "<job>": {
          "status": ..., "duration": ..., "outputs": {...},
          "steps": {"0": {"name", "status", "duration", "outputs", ...}},
          "error": ..., "context": {...},   # failures only
          "jobs": {...}          # reusable workflow calls
        }
      }
    }

Every string in the tree goes through redaction before it is returned.
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict

from .model import JobResult, RunResult, StepResult
from .secrets import redact_obj


def _step_node(step: StepResult) -> Dict[str, Any]:
    node: Dict[str, Any] = {
        "name": step.name,
        "status": step.status.value,
        "conclusion": step.conclusion.value,
        "duration": round(step.duration, 3),
        "outputs": dict(step.outputs),
        "attempts": step.attempts,
    }
    if step.id:
        node["id"] = step.id
    if step.error:
        node["error"] = step.error
    if step.context is not None:
        node["context"] = step.context
    if step.log:
        node["log"] = step.log
    if step.children:
        node["steps"] = {str(i): _step_node(c) for i, c in enumerate(step.children)}
    return node


def _job_node(job: JobResult) -> Dict[str, Any]:
    node: Dict[str, Any] = {
        "status": job.status.value,
        "duration": round(job.duration, 3),
        "outputs": dict(job.outputs),
        "steps": {str(i): _step_node(s) for i, s in enumerate(job.steps)},
    }
    if not job.blocking:
        node["continue_on_error"] = True
    if job.reason:
        node["reason"] = job.reason
    if job.error:
        node["error"] = job.error
    if job.context is not None:
        node["context"] = job.context
    if job.jobs:
        node["jobs"] = {name: _job_node(j) for name, j in job.jobs.items()}
    return node


def result_tree(run: RunResult) -> Dict[str, Any]:
    tree = {
        "run_id": run.run_id,
        "workflow": run.workflow,
        "status": run.status.value,
        "event_type": run.event_type,
        "ref": run.ref,
        "environment": run.environment,
        "started_at": run.started_at,
        "finished_at": run.finished_at,
        "outputs": dict(run.outputs),
        "jobs": {name: _job_node(j) for name, j in run.jobs.items()},
    }
    if run.error:
        tree["error"] = run.error
    return redact_obj(tree, run.secret_values)


def write_json(run: RunResult, path: str | Path) -> Path:
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(json.dumps(result_tree(run), indent=2, sort_keys=True), encoding="utf-8")
    return out
