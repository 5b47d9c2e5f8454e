from __future__ import annotations

from datetime import datetime
from typing import Dict, Literal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cardpool_api.core.settings import settings
from cardpool_api.db.session import get_session
from cardpool_api.domain.timestamps import ensure_aware
from cardpool_api.models.sweep_run import SweepRun
from cardpool_api.observability.scheduler import get_scheduler_store

router = APIRouter()

ComponentState = Literal["ready", "starting", "disabled", "error", "degraded"]


class ComponentStatus(BaseModel):
    status: ComponentState
    detail: str | None = Field(default=None, description="Human readable status detail")
    last_error_at: str | None = Field(default=None, description="ISO timestamp of most recent error")
    last_success_at: str | None = Field(default=None, description="ISO timestamp of most recent success")


class ReadinessPayload(BaseModel):
    status: Literal["ready", "degraded", "error"]
    components: Dict[str, ComponentStatus]


@router.get("/healthz", summary="Service health check")
async def service_health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz", summary="Service readiness", response_model=ReadinessPayload)
async def service_readiness(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> ReadinessPayload:
    components: Dict[str, ComponentStatus] = {}

    components["pending_reconciler"] = await _worker_component(
        request,
        session,
        attr="pending_reconciliation_worker",
        kind="pending_reconciliation",
        enabled=settings.pending_reconciler_enabled,
        label="Pending reconciliation worker",
    )
    components["account_lifecycle"] = await _worker_component(
        request,
        session,
        attr="account_lifecycle_worker",
        kind="account_lifecycle",
        enabled=settings.lifecycle_sweep_enabled,
        label="Account lifecycle worker",
    )

    scheduler = getattr(request.app.state, "sweep_job_scheduler", None)
    if settings.job_scheduler_enabled and scheduler is not None:
        running = bool(getattr(scheduler, "is_running", False))
        scheduler_status: ComponentState = "ready" if running else "starting"
        detail = None if running else "Sweep scheduler not running"
        snapshot = get_scheduler_store().snapshot()
        failing_jobs = [
            job_id for job_id, job in snapshot.jobs.items() if job.totals.get("consecutive_failures", 0) > 0
        ]
        if failing_jobs:
            scheduler_status = "error"
            detail = f"Jobs failing: {', '.join(sorted(failing_jobs))}"
        elif not running:
            scheduler_status = "degraded"
        components["sweep_scheduler"] = ComponentStatus(status=scheduler_status, detail=detail)
    else:
        components["sweep_scheduler"] = ComponentStatus(status="disabled", detail="Sweep scheduler disabled via settings")

    status: Literal["ready", "degraded", "error"] = "ready"
    for component in components.values():
        if component.status == "error":
            status = "error"
        elif component.status in ("degraded", "starting") and status == "ready":
            status = "degraded"
    return ReadinessPayload(status=status, components=components)


async def _worker_component(
    request: Request,
    session: AsyncSession,
    *,
    attr: str,
    kind: str,
    enabled: bool,
    label: str,
) -> ComponentStatus:
    worker = getattr(request.app.state, attr, None)
    if enabled and settings.job_scheduler_enabled:
        return ComponentStatus(status="ready", detail="Managed by sweep scheduler")
    if not enabled or worker is None:
        return ComponentStatus(status="disabled", detail=f"{label} disabled via settings")

    running = bool(getattr(worker, "is_running", False))
    last_success = await _latest_run(session, kind, "completed")
    last_failure = await _latest_run(session, kind, "failed")
    status: ComponentState = "ready" if running else "starting"
    detail = None if running else f"{label} not running"
    if last_failure is not None and (last_success is None or ensure_aware(last_failure.started_at) >= ensure_aware(last_success.started_at)):
        status = "error"
        detail = last_failure.error_message or f"{label} last run failed"
    return ComponentStatus(
        status=status,
        detail=detail,
        last_error_at=_isoformat(last_failure.completed_at) if last_failure else None,
        last_success_at=_isoformat(last_success.completed_at) if last_success else None,
    )


async def _latest_run(session: AsyncSession, kind: str, status: str) -> SweepRun | None:
    result = await session.execute(
        select(SweepRun)
        .where(SweepRun.kind == kind, SweepRun.status == status)
        .order_by(SweepRun.started_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


def _isoformat(value: datetime | None) -> str | None:
    if value is None:
        return None
    return ensure_aware(value).isoformat()
