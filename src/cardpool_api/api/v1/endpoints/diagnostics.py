"""Read-only diagnostics for operators."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from cardpool_api.db.session import get_session
from cardpool_api.models.plan import TradePlan
from cardpool_api.observability.allocation import get_allocation_store
from cardpool_api.observability.scheduler import get_scheduler_store
from cardpool_api.services.allocation.statistics import allocation_statistics

router = APIRouter()


@router.get("/allocation/metrics", summary="Allocation counters snapshot")
async def allocation_metrics() -> dict[str, Any]:
    return get_allocation_store().snapshot().as_dict()


@router.get("/allocation/plans/{plan_id}/statistics", summary="Allocatable accounts by binding category")
async def plan_allocation_statistics(
    plan_id: int,
    room_id: str | None = Query(default=None),
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    plan = await session.get(TradePlan, plan_id)
    if plan is None:
        raise HTTPException(status_code=404, detail="Plan not found")
    return await allocation_statistics(session, plan_id, room_id)


@router.get("/scheduler", summary="Sweep scheduler health")
async def scheduler_health(request: Request) -> dict[str, Any]:
    scheduler = getattr(request.app.state, "sweep_job_scheduler", None)
    if scheduler is None:
        return {"running": False, **get_scheduler_store().snapshot().as_dict()}
    return scheduler.health()
