"""Conditional PROCESSING -> LOCKING reservation of a single account."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from loguru import logger
from sqlalchemy import func, or_, update
from sqlalchemy.ext.asyncio import AsyncSession

from cardpool_api.models.account import AccountStatusEnum, TradeAccount
from cardpool_api.services.allocation.types import AllocationRequest


async def try_lock_account(
    session: AsyncSession,
    account_id: int,
    request: AllocationRequest,
    *,
    expected_balance: Decimal | None = None,
    max_balance: Decimal | None = None,
    now: datetime | None = None,
) -> bool:
    """Reserve ``account_id`` for ``request`` if it is still PROCESSING.

    The status precondition is evaluated by the database inside the UPDATE,
    so of any number of concurrent callers at most one sees a row count of 1.
    The plan binding and day pointer are written in the same statement.

    An account can cycle back to PROCESSING with a new balance between
    ranking and locking, so callers pass the balance they ranked on
    (``expected_balance``) and the headroom the request needs
    (``max_balance``); a balance that moved makes the UPDATE match nothing.
    """

    timestamp = now or datetime.now(timezone.utc)
    values: dict[str, object] = {
        "status": AccountStatusEnum.LOCKING,
        "bound_plan_id": request.plan_id,
        "current_day": func.coalesce(TradeAccount.current_day, 1),
        "locked_at": timestamp,
        "updated_at": timestamp,
    }
    if request.room_id is not None:
        values["bound_room_id"] = request.room_id

    conditions = [
        TradeAccount.id == account_id,
        TradeAccount.status == AccountStatusEnum.PROCESSING,
        TradeAccount.deleted_at.is_(None),
        or_(TradeAccount.bound_plan_id.is_(None), TradeAccount.bound_plan_id == request.plan_id),
    ]
    if expected_balance is not None:
        conditions.append(TradeAccount.balance == expected_balance)
    if max_balance is not None:
        conditions.append(TradeAccount.balance <= max_balance)

    stmt = (
        update(TradeAccount)
        .where(*conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    await session.commit()
    locked = result.rowcount == 1
    if not locked:
        logger.debug("Lost account lock race", account_id=account_id, plan_id=request.plan_id)
    return locked


__all__ = ["try_lock_account"]
