# loader.py
from __future__ import annotations

import runpy
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict

from .composer import Registry
from .errors import WorkflowLoadError
from .model import Action, Workflow


@dataclass
class LoadedWorkflow:
    workflow: Workflow
    registry: Registry
    path: Path


def load_workflow(path: str | Path) -> LoadedWorkflow:
    """
    Load a workflow from a python file path.

    The file must define either:
      - workflow() -> Workflow
      - WORKFLOW = Workflow(...)

    and may define reusable units under their `uses` references:
      - ACTIONS = {"./actions/setup-node": action(...)}
      - WORKFLOWS = {"org/deploy@v1": wf(...)}
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise WorkflowLoadError(f"workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise WorkflowLoadError(f"workflow must be a .py file, got: {wf_path.name}")

    module_name = f"actionsmith_workflow_{wf_path.stem}"
    try:
        globals_dict: Dict[str, Any] = runpy.run_path(str(wf_path), run_name=module_name)
    except WorkflowLoadError:
        raise
    except Exception as e:
        raise WorkflowLoadError(
            f"error while executing {wf_path.name}: {e}",
            details={"error_type": type(e).__name__},
        ) from e

    workflow = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            workflow = globals_dict["workflow"]()
        except TypeError as e:
            if "positional argument" in str(e):
                raise WorkflowLoadError(
                    "Your workflow() is being called with arguments (name collision with a helper?). "
                    "Use the 'wf' helper instead: `from actionsmith import wf, job, sh` then "
                    "`def workflow(): return wf('ci', job(...), job(...))`"
                ) from e
            raise
    elif "WORKFLOW" in globals_dict:
        workflow = globals_dict["WORKFLOW"]

    if not isinstance(workflow, Workflow):
        raise WorkflowLoadError(
            "workflow file must define workflow() -> Workflow or WORKFLOW = Workflow(...)",
            details={"file": str(wf_path), "got": type(workflow).__name__},
        )

    registry = Registry()
    for var, kind in (("ACTIONS", Action), ("WORKFLOWS", Workflow)):
        entries = globals_dict.get(var) or {}
        if not isinstance(entries, dict):
            raise WorkflowLoadError(f"{var} must be a dict of uses-reference -> {kind.__name__}")
        for ref, target in entries.items():
            if not isinstance(target, kind):
                raise WorkflowLoadError(
                    f"{var}[{ref!r}] must be a {kind.__name__}, got {type(target).__name__}"
                )
            registry.register(ref, target)

    return LoadedWorkflow(workflow=workflow, registry=registry, path=wf_path)
