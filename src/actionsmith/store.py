# store.py
from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .model import RunResult
from .report import result_tree


class Base(DeclarativeBase):
    pass


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


class RunRecord(Base):
    __tablename__ = "runs"
    id: Mapped[str] = mapped_column(sa.String(64), primary_key=True)
    workflow: Mapped[str] = mapped_column(sa.Text, nullable=False)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False)
    event_type: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    ref: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    environment: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    tree: Mapped[Optional[dict]] = mapped_column(sa.JSON, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), default=now_utc, nullable=False)
    finished_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)


class JobRecord(Base):
    __tablename__ = "job_runs"
    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(sa.String(64), sa.ForeignKey("runs.id", ondelete="CASCADE"), nullable=False)
    job_name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False)
    duration: Mapped[float] = mapped_column(sa.Float, nullable=False, default=0.0)
    outputs: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)


def make_engine(url: str) -> sa.Engine:
    u = sa.engine.make_url(url)
    if not u.drivername.startswith("sqlite"):
        return sa.create_engine(url, pool_pre_ping=True)

    if u.database in (None, "", ":memory:"):
        # one shared connection, or every thread would see its own empty db
        return sa.create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)

    Path(u.database).expanduser().parent.mkdir(parents=True, exist_ok=True)
    return sa.create_engine(url, connect_args={"check_same_thread": False})


class RunStore:
    """Durable run results. Only redacted trees are written."""

    def __init__(self, url: str):
        self.engine = make_engine(url)
        self.SessionLocal = sessionmaker(self.engine, expire_on_commit=False)
        Base.metadata.create_all(self.engine)

    def create_pending(self, run_id: str, workflow: str, *, event_type: str = "", ref: str = "",
                       environment: Optional[str] = None) -> None:
        with self.SessionLocal() as s, s.begin():
            s.add(RunRecord(
                id=run_id,
                workflow=workflow,
                status="queued",
                event_type=event_type,
                ref=ref,
                environment=environment,
            ))

    def mark_failed(self, run_id: str, error: str) -> None:
        with self.SessionLocal() as s, s.begin():
            rec = s.get(RunRecord, run_id)
            if rec is None:
                return
            rec.status = "failure"
            rec.error = error
            rec.finished_at = now_utc()

    def save(self, run: RunResult) -> Dict[str, Any]:
        tree = result_tree(run)
        with self.SessionLocal() as s, s.begin():
            rec = s.get(RunRecord, run.run_id)
            if rec is None:
                rec = RunRecord(id=run.run_id, workflow=run.workflow, status=run.status.value)
                s.add(rec)
            rec.status = run.status.value
            rec.event_type = run.event_type
            rec.ref = run.ref
            rec.environment = run.environment
            rec.tree = tree
            rec.error = tree.get("error")
            rec.finished_at = now_utc()

            s.execute(sa.delete(JobRecord).where(JobRecord.run_id == run.run_id))
            for name, job in tree["jobs"].items():
                s.add(JobRecord(
                    run_id=run.run_id,
                    job_name=name,
                    status=job["status"],
                    duration=job["duration"],
                    outputs=job["outputs"],
                ))
        return tree

    def get(self, run_id: str) -> Optional[Dict[str, Any]]:
        with self.SessionLocal() as s:
            rec = s.get(RunRecord, run_id)
            if rec is None:
                return None
            return _record_dict(rec)

    def list_runs(self, limit: int = 50) -> List[Dict[str, Any]]:
        with self.SessionLocal() as s:
            q = sa.select(RunRecord).order_by(RunRecord.created_at.desc()).limit(limit)
            return [_record_dict(r, with_tree=False) for r in s.scalars(q)]

    def jobs(self, run_id: str) -> List[Dict[str, Any]]:
        with self.SessionLocal() as s:
            q = sa.select(JobRecord).where(JobRecord.run_id == run_id).order_by(JobRecord.id)
            return [
                {"job_name": j.job_name, "status": j.status, "duration": j.duration, "outputs": j.outputs}
                for j in s.scalars(q)
            ]


def _record_dict(rec: RunRecord, with_tree: bool = True) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "run_id": rec.id,
        "workflow": rec.workflow,
        "status": rec.status,
        "event_type": rec.event_type,
        "ref": rec.ref,
        "environment": rec.environment,
        "error": rec.error,
        "created_at": rec.created_at.isoformat() if rec.created_at else None,
        "finished_at": rec.finished_at.isoformat() if rec.finished_at else None,
    }
    if with_tree:
        out["tree"] = rec.tree
    return out
