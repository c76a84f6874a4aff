from __future__ import annotations

import uuid
from pathlib import Path
from typing import Any, Callable, Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException
from pydantic import BaseModel, Field

from .. import settings
from ..errors import WorkflowError
from ..executor import CommandRunner
from ..loader import LoadedWorkflow, load_workflow
from ..orchestrator import Environment, Orchestrator, Trigger
from ..secrets import EnvSecretVault, Redactor, SecretVault
from ..store import RunStore
from ..ui.console import Console

# -------------------- Schemas --------------------

class TriggerRequest(BaseModel):
    event_type: str
    ref: str
    payload: dict[str, Any] = Field(default_factory=dict)
    actor: str = ""
    sha: str = ""
    environment: Optional[str] = None
    inputs: dict[str, str] = Field(default_factory=dict)


class TriggerResponse(BaseModel):
    run_id: str
    workflow: str
    status: str


class RunSummary(BaseModel):
    run_id: str
    workflow: str
    status: str
    event_type: str
    ref: str
    environment: Optional[str] = None
    error: Optional[str] = None
    created_at: Optional[str] = None
    finished_at: Optional[str] = None


class RunResponse(RunSummary):
    tree: Optional[dict[str, Any]] = None


# -------------------- App --------------------

def create_app(
    *,
    workflow_path: str | Path | None = None,
    database_url: str | None = None,
    runner: Optional[CommandRunner] = None,
    vault: Optional[SecretVault] = None,
    loader: Callable[[str | Path], LoadedWorkflow] = load_workflow,
) -> FastAPI:
    """
    Trigger-ingestion service.

    POST /triggers validates synchronously (bad workflow or bindings -> 422)
    and runs the workflow in a background task; GET /runs/{id} returns
    the persisted, redacted result tree.
    """
    app = FastAPI(title="actionsmith trigger service")
    wf_path = Path(workflow_path or settings.WORKFLOW_FILE)
    db_url = database_url or settings.DATABASE_URL

    @app.on_event("startup")
    def startup() -> None:
        app.state.store = RunStore(db_url)

    def _store() -> RunStore:
        store = getattr(app.state, "store", None)
        if store is None:
            store = app.state.store = RunStore(db_url)
        return store

    def _orchestrator(loaded: LoadedWorkflow) -> Orchestrator:
        return Orchestrator(
            runner=runner,
            vault=vault or EnvSecretVault(prefix=settings.SECRET_PREFIX),
            registry=loaded.registry,
            max_workers=settings.MAX_WORKERS,
            console=Console(quiet=True),
        )

    def _execute(orchestrator: Orchestrator, loaded: LoadedWorkflow, trigger: Trigger,
                 environment: Optional[Environment], inputs: dict[str, str], run_id: str) -> None:
        store = _store()
        redactor = Redactor()
        try:
            result = orchestrator.run(loaded.workflow, trigger, environment, inputs, run_id=run_id, redactor=redactor)
            store.save(result)
        except Exception as e:
            # a run must never stay queued
            message = str(e) if isinstance(e, WorkflowError) else f"{type(e).__name__}: {e}"
            store.mark_failed(run_id, redactor.redact(message))

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {"ok": True, "workflow": str(wf_path)}

    @app.post("/triggers", response_model=TriggerResponse, status_code=202)
    def create_trigger(req: TriggerRequest, background_tasks: BackgroundTasks):
        try:
            loaded = loader(wf_path)
        except WorkflowError as e:
            raise HTTPException(status_code=500, detail=e.to_dict())

        trigger = Trigger(
            event_type=req.event_type,
            ref=req.ref,
            payload=req.payload,
            actor=req.actor,
            sha=req.sha,
        )
        environment = Environment.named(req.environment) if req.environment else None
        orchestrator = _orchestrator(loaded)
        try:
            orchestrator.validate(loaded.workflow, trigger, dict(req.inputs), environment)
        except WorkflowError as e:
            raise HTTPException(status_code=422, detail=e.to_dict())

        run_id = uuid.uuid4().hex
        _store().create_pending(
            run_id,
            loaded.workflow.name,
            event_type=req.event_type,
            ref=req.ref,
            environment=req.environment,
        )
        background_tasks.add_task(_execute, orchestrator, loaded, trigger, environment, dict(req.inputs), run_id)

        return TriggerResponse(run_id=run_id, workflow=loaded.workflow.name, status="queued")

    @app.get("/runs", response_model=list[RunSummary])
    def list_runs(limit: int = 50):
        return [RunSummary(**r) for r in _store().list_runs(limit=limit)]

    @app.get("/runs/{run_id}", response_model=RunResponse)
    def get_run(run_id: str):
        rec = _store().get(run_id)
        if rec is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return RunResponse(**rec)

    return app
