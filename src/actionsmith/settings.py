from __future__ import annotations
import os

DATABASE_URL = os.environ.get("ACTIONSMITH_DATABASE_URL", "sqlite:///.actionsmith/runs.db")
WORKFLOW_FILE = os.environ.get("ACTIONSMITH_WORKFLOW", "actionsmith_workflow.py")
SECRET_PREFIX = os.environ.get("ACTIONSMITH_SECRET_PREFIX", "ACTIONSMITH_SECRET_")
RESULTS_DIR = os.environ.get("ACTIONSMITH_RESULTS_DIR", ".actionsmith/results")
MAX_WORKERS = int(os.environ["ACTIONSMITH_MAX_WORKERS"]) if os.environ.get("ACTIONSMITH_MAX_WORKERS") else None
PROTECTED_ENVIRONMENTS = tuple(
    n.strip() for n in os.environ.get("ACTIONSMITH_PROTECTED_ENVIRONMENTS", "").split(",") if n.strip()
)
PROTECTED_REFS = tuple(
    r.strip() for r in os.environ.get("ACTIONSMITH_PROTECTED_REFS", "refs/heads/main").split(",") if r.strip()
)
