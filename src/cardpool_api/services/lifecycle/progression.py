"""Day and quota progression derived from the exchange log."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from cardpool_api.domain.constraints import to_decimal
from cardpool_api.domain.plans import PlanConfig
from cardpool_api.domain.timestamps import ensure_aware
from cardpool_api.models.exchange_log import AccountExchangeLog, ExchangeStatusEnum

ZERO = Decimal("0")
CENT = Decimal("0.01")


def format_amount(value: Decimal) -> str:
    return str(value.quantize(CENT))


async def success_totals_by_day(session: AsyncSession, account_id: int) -> dict[int, Decimal]:
    """Sum SUCCESS amounts per plan day for one account."""

    result = await session.execute(
        select(AccountExchangeLog.day, func.sum(AccountExchangeLog.amount))
        .where(
            AccountExchangeLog.account_id == account_id,
            AccountExchangeLog.status == ExchangeStatusEnum.SUCCESS,
            AccountExchangeLog.day.is_not(None),
        )
        .group_by(AccountExchangeLog.day)
    )
    return {int(day): to_decimal(total) or ZERO for day, total in result.all()}


async def compute_completed_days(session: AsyncSession, account_id: int) -> dict[str, str]:
    """Re-derive the ``completed_days`` map from SUCCESS log sums.

    The result is idempotent: calling it again without new logs returns the
    same mapping, which is what gets persisted on every transition.
    """

    totals = await success_totals_by_day(session, account_id)
    return {str(day): format_amount(total) for day, total in sorted(totals.items())}


async def spent_on_day(session: AsyncSession, account_id: int, day: int) -> Decimal:
    result = await session.execute(
        select(func.coalesce(func.sum(AccountExchangeLog.amount), 0)).where(
            AccountExchangeLog.account_id == account_id,
            AccountExchangeLog.status == ExchangeStatusEnum.SUCCESS,
            AccountExchangeLog.day == day,
        )
    )
    return to_decimal(result.scalar_one()) or ZERO


async def last_success_at(session: AsyncSession, account_id: int) -> datetime | None:
    result = await session.execute(
        select(func.max(AccountExchangeLog.resolved_at)).where(
            AccountExchangeLog.account_id == account_id,
            AccountExchangeLog.status == ExchangeStatusEnum.SUCCESS,
        )
    )
    return ensure_aware(result.scalar_one_or_none())


async def has_pending_logs(session: AsyncSession, account_id: int) -> bool:
    result = await session.execute(
        select(AccountExchangeLog.id)
        .where(
            AccountExchangeLog.account_id == account_id,
            AccountExchangeLog.status == ExchangeStatusEnum.PENDING,
        )
        .limit(1)
    )
    return result.first() is not None


def is_total_met(plan: PlanConfig, balance: Decimal) -> bool:
    return balance >= plan.total_amount


def is_daily_met(plan: PlanConfig, day: int, spent_today: Decimal) -> bool:
    """Daily target reached, measured against the base amount without float."""

    return spent_today >= plan.daily_amount(day)


class WaitingAction(str, Enum):
    HOLD = "hold"
    ACTIVATE = "activate"
    ADVANCE_DAY = "advance_day"
    COMPLETE_TOTAL = "complete_total"
    COMPLETE_TIMEOUT = "complete_timeout"


@dataclass(frozen=True, slots=True)
class WaitingDecision:
    action: WaitingAction
    day: int
    reason: str


def decide_waiting(
    plan: PlanConfig,
    *,
    balance: Decimal,
    day: int,
    spent_today: Decimal,
    last_success: datetime | None,
    now: datetime,
    final_day_timeout_hours: int,
) -> WaitingDecision:
    """Decide what a WAITING account bound to ``plan`` should do next."""

    if is_total_met(plan, balance):
        return WaitingDecision(WaitingAction.COMPLETE_TOTAL, day, "plan total reached")
    if last_success is None:
        return WaitingDecision(WaitingAction.ACTIVATE, day, "no successful exchange yet")

    elapsed = now - ensure_aware(last_success)
    if elapsed < plan.exchange_interval:
        return WaitingDecision(WaitingAction.HOLD, day, "exchange interval not elapsed")

    if plan.is_last_day(day):
        timeout = max(plan.day_interval.total_seconds(), final_day_timeout_hours * 3600)
        if elapsed.total_seconds() >= timeout:
            return WaitingDecision(WaitingAction.COMPLETE_TIMEOUT, day, "final plan day timed out")
        return WaitingDecision(WaitingAction.ACTIVATE, day, "final day spend remaining")

    if not is_daily_met(plan, day, spent_today):
        return WaitingDecision(WaitingAction.ACTIVATE, day, "daily quota unmet")
    if elapsed >= plan.day_interval:
        return WaitingDecision(WaitingAction.ADVANCE_DAY, day + 1, "day interval elapsed")
    return WaitingDecision(WaitingAction.HOLD, day, "day interval not elapsed")


__all__ = [
    "WaitingAction",
    "WaitingDecision",
    "compute_completed_days",
    "decide_waiting",
    "format_amount",
    "has_pending_logs",
    "is_daily_met",
    "is_total_met",
    "last_success_at",
    "spent_on_day",
    "success_totals_by_day",
]
