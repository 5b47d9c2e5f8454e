"""Diagnostics over the allocatable account pool."""

from __future__ import annotations

from typing import Any

from sqlalchemy import and_, case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from cardpool_api.models.account import AccountStatusEnum, LoginStateEnum, TradeAccount

_CATEGORIES = {
    1: "plan_and_room",
    2: "plan_only",
    3: "room_only",
    4: "unbound",
    5: "other",
}


async def allocation_statistics(session: AsyncSession, plan_id: int, room_id: str | None = None) -> dict[str, Any]:
    """Count PROCESSING, logged-in accounts by binding category for a plan/room."""

    plan_match = TradeAccount.bound_plan_id == plan_id
    room_match = TradeAccount.bound_room_id == room_id if room_id is not None else None
    whens = []
    if room_match is not None:
        whens.append((and_(plan_match, room_match), 1))
    whens.append((plan_match, 2))
    if room_match is not None:
        whens.append((and_(TradeAccount.bound_plan_id.is_(None), room_match), 3))
    whens.append((and_(TradeAccount.bound_plan_id.is_(None), TradeAccount.bound_room_id.is_(None)), 4))
    category = case(*whens, else_=5)

    stmt = (
        select(category.label("category"), func.count(TradeAccount.id))
        .where(
            TradeAccount.status == AccountStatusEnum.PROCESSING,
            TradeAccount.login_state == LoginStateEnum.ACTIVE,
            TradeAccount.deleted_at.is_(None),
        )
        .group_by(category)
    )
    result = await session.execute(stmt)
    counts = {name: 0 for name in _CATEGORIES.values()}
    for category_value, count in result.all():
        counts[_CATEGORIES[int(category_value)]] = int(count)
    return {
        "plan_id": plan_id,
        "room_id": room_id,
        "processing_accounts": counts,
        "total": sum(counts.values()),
    }


__all__ = ["allocation_statistics"]
