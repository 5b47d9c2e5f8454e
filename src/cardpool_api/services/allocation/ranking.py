"""Priority ranking of qualified candidates."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Iterable, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from cardpool_api.domain.constraints import RateConstraint, is_reservable, to_decimal
from cardpool_api.domain.plans import PlanConfig
from cardpool_api.domain.timestamps import ensure_aware
from cardpool_api.models.account import TradeAccount
from cardpool_api.models.exchange_log import AccountExchangeLog, ExchangeStatusEnum
from cardpool_api.services.allocation.types import AllocationRequest, CandidateSnapshot

ZERO = Decimal("0")

EXACT_FILL = 3
LEGAL_RESERVATION = 2
OTHER_CAPACITY = 1


def binding_priority(candidate: CandidateSnapshot, request: AllocationRequest) -> int:
    """Lower is better: concentrate a plan's traffic on accounts already bound to it."""

    same_plan = candidate.bound_plan_id is not None and candidate.bound_plan_id == request.plan_id
    same_room = request.room_id is not None and candidate.bound_room_id == request.room_id
    if same_plan and same_room:
        return 1
    if same_plan:
        return 2
    if same_room and candidate.bound_plan_id is None:
        return 3
    if candidate.bound_plan_id is None and candidate.bound_room_id is None:
        return 4
    return 5


def capacity_priority(remainder: Decimal, constraint: RateConstraint) -> int:
    """Higher is better: exact fills first, then legal leftovers."""

    if remainder == ZERO:
        return EXACT_FILL
    if remainder > ZERO and is_reservable(remainder, constraint):
        return LEGAL_RESERVATION
    return OTHER_CAPACITY


def rank_candidates(
    candidates: Iterable[CandidateSnapshot],
    request: AllocationRequest,
    constraint: RateConstraint,
) -> list[CandidateSnapshot]:
    """Return candidates in allocation preference order.

    Binding priority ascending, capacity priority descending, balance
    descending, last successful exchange ascending with never-used accounts
    first, then account id.
    """

    def sort_key(candidate: CandidateSnapshot) -> tuple:
        last_success = ensure_aware(candidate.last_success_at)
        return (
            binding_priority(candidate, request),
            -capacity_priority(candidate.remainder, constraint),
            -candidate.balance,
            0 if last_success is None else 1,
            last_success.timestamp() if last_success else 0.0,
            candidate.account_id,
        )

    return sorted(candidates, key=sort_key)


async def fetch_candidate_snapshots(
    session: AsyncSession,
    ids: Sequence[int] | set[int],
    request: AllocationRequest,
    plan: PlanConfig,
) -> list[CandidateSnapshot]:
    """Load the ranking inputs for ``ids`` in one query."""

    if not ids:
        return []
    last_success = (
        select(
            AccountExchangeLog.account_id.label("account_id"),
            func.max(AccountExchangeLog.resolved_at).label("last_success_at"),
        )
        .where(
            AccountExchangeLog.status == ExchangeStatusEnum.SUCCESS,
            AccountExchangeLog.account_id.in_(ids),
        )
        .group_by(AccountExchangeLog.account_id)
        .subquery()
    )
    stmt = (
        select(
            TradeAccount.id,
            TradeAccount.balance,
            TradeAccount.bound_plan_id,
            TradeAccount.bound_room_id,
            last_success.c.last_success_at,
        )
        .outerjoin(last_success, last_success.c.account_id == TradeAccount.id)
        .where(TradeAccount.id.in_(ids))
    )
    result = await session.execute(stmt)
    snapshots: list[CandidateSnapshot] = []
    for account_id, balance, bound_plan_id, bound_room_id, last_success_at in result.all():
        balance_value = to_decimal(balance) or ZERO
        if isinstance(last_success_at, str):
            last_success_at = datetime.fromisoformat(last_success_at)
        snapshots.append(
            CandidateSnapshot(
                account_id=account_id,
                balance=balance_value,
                bound_plan_id=bound_plan_id,
                bound_room_id=bound_room_id,
                remainder=plan.total_amount - balance_value - request.amount,
                last_success_at=ensure_aware(last_success_at),
            )
        )
    return snapshots


__all__ = [
    "binding_priority",
    "capacity_priority",
    "fetch_candidate_snapshots",
    "rank_candidates",
]
