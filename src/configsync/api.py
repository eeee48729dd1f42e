"""
ConfigSync Status API

FastAPI app exposing target status, on-demand sync and drift scans,
and Prometheus metrics for a running scheduler.
"""

from datetime import datetime
from typing import Any, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel

from configsync.scheduler import Scheduler, TargetHandle
from configsync.state import ConditionType, SyncState


# API Models
class ConditionModel(BaseModel):
    """One status condition."""
    type: str
    status: str
    reason: str
    message: str
    lastTransitionTime: Optional[datetime] = None


class TargetSummary(BaseModel):
    """Target as listed by the API."""
    name: str
    namespace: str
    repository: str
    branch: str
    path: str
    environment: str
    phase: str
    ready: bool
    lastSyncedRevision: str
    lastSyncTime: Optional[datetime] = None


class TargetDetail(TargetSummary):
    """Target with its persisted conditions and scheduler view."""
    conditions: list[ConditionModel]
    scheduler: dict[str, Any]


class RequeueModel(BaseModel):
    """Outcome of an on-demand sync cycle."""
    target: str
    outcome: Optional[str] = None
    error: Optional[str] = None
    requeue_after: Optional[float] = None


class DriftModel(BaseModel):
    """Outcome of an on-demand drift scan."""
    target: str
    outcome: Optional[str] = None
    message: str
    scanned: int
    drifts: list[dict[str, Any]]
    errors: dict[str, str]


def _summary(handle: TargetHandle, state: SyncState) -> dict[str, Any]:
    target = handle.target
    ready = state.is_true(ConditionType.READY)
    return {
        "name": target.name,
        "namespace": target.namespace,
        "repository": target.repository,
        "branch": target.branch,
        "path": target.path,
        "environment": target.environment.value,
        "phase": handle.machine.phase.value,
        "ready": ready,
        "lastSyncedRevision": state.last_synced_revision,
        "lastSyncTime": state.last_sync_time,
    }


def create_app(scheduler: Scheduler) -> FastAPI:
    """Build the status API around a scheduler."""
    app = FastAPI(
        title="ConfigSync",
        description="Status and control API for the ConfigSync operator",
        version="0.1.0",
    )
    app.state.scheduler = scheduler

    def _handle(namespace: str, name: str) -> TargetHandle:
        handle = scheduler.get(f"{namespace}/{name}")
        if handle is None:
            raise HTTPException(status_code=404, detail=f"Target not found: {namespace}/{name}")
        return handle

    @app.get("/health")
    async def health():
        """Liveness of the operator process."""
        return {
            "status": "healthy" if scheduler.running else "idle",
            "targets": len(scheduler.targets),
            "active": scheduler.active,
        }

    @app.get("/targets", response_model=list[TargetSummary])
    async def list_targets():
        """List managed targets with their persisted status."""
        summaries = []
        for handle in list(scheduler.targets.values()):
            state = await scheduler.reporter.load(handle.target)
            summaries.append(TargetSummary(**_summary(handle, state)))
        return summaries

    @app.get("/targets/{namespace}/{name}", response_model=TargetDetail)
    async def get_target(namespace: str, name: str):
        """Get one target's persisted status and scheduling details."""
        handle = _handle(namespace, name)
        state = await scheduler.reporter.load(handle.target)
        status = scheduler.get_status()["targets"].get(handle.target.key, {})
        return TargetDetail(
            **_summary(handle, state),
            conditions=[ConditionModel(**c.to_dict()) for c in state.conditions],
            scheduler=status,
        )

    @app.post("/targets/{namespace}/{name}/sync", response_model=RequeueModel)
    async def sync_target(namespace: str, name: str):
        """Run one sync cycle now, waiting for any cycle already in progress."""
        handle = _handle(namespace, name)
        result = await scheduler.reconcile(handle.target.key)
        return RequeueModel(target=handle.target.key, **result.to_dict())

    @app.post("/targets/{namespace}/{name}/drift", response_model=DriftModel)
    async def scan_target(namespace: str, name: str):
        """Run one drift scan now."""
        handle = _handle(namespace, name)
        report = await scheduler.scan(handle.target.key)
        if report is None:
            raise HTTPException(status_code=409, detail="Drift scan failed, see operator logs")
        data = report.to_dict()
        return DriftModel(
            target=data["target"],
            outcome=data["outcome"],
            message=data["message"],
            scanned=data["scanned"],
            drifts=data["drifts"],
            errors=data["errors"],
        )

    @app.get("/status")
    async def scheduler_status():
        """Scheduler view of every target."""
        return scheduler.get_status()

    @app.get("/metrics")
    async def metrics():
        """Prometheus metrics."""
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app
