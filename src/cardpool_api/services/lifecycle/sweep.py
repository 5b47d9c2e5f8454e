"""Periodic lifecycle reconciliation over the account table."""

from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from loguru import logger
from sqlalchemy import and_, exists, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from cardpool_api.core.settings import Settings, settings as default_settings
from cardpool_api.domain.constraints import to_decimal
from cardpool_api.domain.plans import PlanAssignment, PlanConfig, build_plan_config
from cardpool_api.models.account import AccountStatusEnum, LoginStateEnum, TradeAccount
from cardpool_api.models.exchange_log import AccountExchangeLog, ExchangeStatusEnum
from cardpool_api.models.plan import TradePlan
from cardpool_api.services.lifecycle.progression import (
    WaitingAction,
    decide_waiting,
    has_pending_logs,
    is_daily_met,
    is_total_met,
    last_success_at,
    spent_on_day,
)
from cardpool_api.services.lifecycle.state_machine import AccountStateMachine

ZERO = Decimal("0")


def _pending_exists():
    return exists().where(
        AccountExchangeLog.account_id == TradeAccount.id,
        AccountExchangeLog.status == ExchangeStatusEnum.PENDING,
    )


class AccountLifecycleSweeper:
    """Run the idempotent correction passes that keep account state consistent.

    Passes run in order: orphan unbinding, day clamping, stale LOCKING release,
    PROCESSING settlement, WAITING re-evaluation and logout of completed
    accounts that are still signed in.
    """

    def __init__(
        self,
        session: AsyncSession,
        machine: AccountStateMachine,
        *,
        settings: Settings = default_settings,
    ) -> None:
        self._session = session
        self._machine = machine
        self._settings = settings
        self._plans: dict[int, PlanConfig | None] = {}

    async def run(self, *, now: datetime | None = None) -> dict[str, int]:
        moment = now or datetime.now(timezone.utc)
        counters: Counter[str] = Counter()
        self._plans.clear()

        await self._unbind_orphans(counters)
        await self._clamp_days(counters)
        await self._release_stale_locks(moment, counters)
        await self._settle_processing(moment, counters)
        await self._evaluate_waiting(moment, counters)
        await self._logout_completed(counters)

        summary = dict(counters)
        logger.info("Account lifecycle sweep finished", **summary)
        return summary

    async def _plan(self, plan_id: int) -> PlanConfig | None:
        if plan_id not in self._plans:
            plan = await self._session.get(TradePlan, plan_id)
            self._plans[plan_id] = (
                build_plan_config(
                    plan,
                    default_exchange_interval_minutes=self._settings.lifecycle_default_exchange_interval_minutes,
                    default_day_interval_hours=self._settings.lifecycle_default_day_interval_hours,
                )
                if plan is not None
                else None
            )
        return self._plans[plan_id]

    async def _unbind_orphans(self, counters: Counter[str]) -> None:
        stmt = (
            select(TradeAccount.id, TradeAccount.status)
            .outerjoin(TradePlan, TradePlan.id == TradeAccount.bound_plan_id)
            .where(
                TradeAccount.deleted_at.is_(None),
                TradeAccount.status.in_([AccountStatusEnum.WAITING, AccountStatusEnum.PROCESSING]),
                or_(
                    and_(TradeAccount.bound_plan_id.is_not(None), TradePlan.id.is_(None)),
                    and_(TradeAccount.bound_plan_id.is_(None), TradeAccount.current_day.is_not(None)),
                ),
            )
        )
        rows = (await self._session.execute(stmt)).all()
        for account_id, status in rows:
            if await self._machine.unbind_orphan(account_id, status, "plan reference missing"):
                counters["orphans_unbound"] += 1

    async def _clamp_days(self, counters: Counter[str]) -> None:
        stmt = (
            select(TradeAccount.id, TradeAccount.status, TradePlan.plan_days)
            .join(TradePlan, TradePlan.id == TradeAccount.bound_plan_id)
            .where(
                TradeAccount.deleted_at.is_(None),
                TradeAccount.status != AccountStatusEnum.COMPLETED,
                TradePlan.plan_days > 0,
                TradeAccount.current_day > TradePlan.plan_days,
            )
        )
        rows = (await self._session.execute(stmt)).all()
        for account_id, status, plan_days in rows:
            if await self._machine.correct(
                account_id=account_id,
                expected_status=status,
                values={"current_day": int(plan_days)},
                reason="current day beyond plan length",
            ):
                counters["days_clamped"] += 1

    async def _release_stale_locks(self, now: datetime, counters: Counter[str]) -> None:
        cutoff = now - timedelta(seconds=self._settings.lifecycle_locking_grace_seconds)
        stmt = select(TradeAccount.id).where(
            TradeAccount.status == AccountStatusEnum.LOCKING,
            or_(TradeAccount.locked_at.is_(None), TradeAccount.locked_at < cutoff),
            ~_pending_exists(),
        )
        account_ids = (await self._session.execute(stmt)).scalars().all()
        for account_id in account_ids:
            if await self._machine.transition(
                account_id=account_id,
                expected_status=AccountStatusEnum.LOCKING,
                target_status=AccountStatusEnum.PROCESSING,
                reason="stale lock released",
            ):
                counters["stale_locks_released"] += 1

    async def _settle_processing(self, now: datetime, counters: Counter[str]) -> None:
        stmt = select(TradeAccount.id, TradeAccount.bound_plan_id, TradeAccount.current_day, TradeAccount.balance).where(
            TradeAccount.deleted_at.is_(None),
            TradeAccount.status == AccountStatusEnum.PROCESSING,
            TradeAccount.bound_plan_id.is_not(None),
        )
        rows = (await self._session.execute(stmt)).all()
        for account_id, plan_id, current_day, balance in rows:
            if await has_pending_logs(self._session, account_id):
                counters["skipped_pending"] += 1
                continue
            plan = await self._plan(plan_id)
            if plan is None or not plan.is_valid:
                counters["skipped_invalid_plan"] += 1
                continue
            day = current_day or 1
            balance_value = to_decimal(balance) or ZERO

            if is_total_met(plan, balance_value):
                if await self._complete(account_id, AccountStatusEnum.PROCESSING, "plan total reached"):
                    counters["completed"] += 1
                continue

            if plan.is_last_day(day):
                if self._final_day_timed_out(plan, await last_success_at(self._session, account_id), now):
                    if await self._complete(account_id, AccountStatusEnum.PROCESSING, "final plan day timed out"):
                        counters["timed_out"] += 1
                continue

            if is_daily_met(plan, day, await spent_on_day(self._session, account_id, day)):
                if await self._machine.transition(
                    account_id=account_id,
                    expected_status=AccountStatusEnum.PROCESSING,
                    target_status=AccountStatusEnum.WAITING,
                    reason="daily quota met",
                ):
                    counters["moved_to_waiting"] += 1

    async def _evaluate_waiting(self, now: datetime, counters: Counter[str]) -> None:
        stmt = select(TradeAccount.id, TradeAccount.bound_plan_id, TradeAccount.current_day, TradeAccount.balance).where(
            TradeAccount.deleted_at.is_(None),
            TradeAccount.status == AccountStatusEnum.WAITING,
        )
        rows = (await self._session.execute(stmt)).all()
        for account_id, plan_id, current_day, balance in rows:
            balance_value = to_decimal(balance) or ZERO
            if plan_id is None:
                if balance_value > ZERO and await self._machine.transition(
                    account_id=account_id,
                    expected_status=AccountStatusEnum.WAITING,
                    target_status=AccountStatusEnum.PROCESSING,
                    reason="unbound account available",
                ):
                    counters["activated"] += 1
                continue

            if await has_pending_logs(self._session, account_id):
                counters["skipped_pending"] += 1
                continue
            plan = await self._plan(plan_id)
            if plan is None or not plan.is_valid:
                counters["skipped_invalid_plan"] += 1
                continue

            day = current_day or 1
            decision = decide_waiting(
                plan,
                balance=balance_value,
                day=day,
                spent_today=await spent_on_day(self._session, account_id, day),
                last_success=await last_success_at(self._session, account_id),
                now=now,
                final_day_timeout_hours=self._settings.lifecycle_final_day_timeout_hours,
            )
            if decision.action == WaitingAction.HOLD:
                continue
            if decision.action == WaitingAction.COMPLETE_TOTAL:
                if await self._complete(account_id, AccountStatusEnum.WAITING, decision.reason):
                    counters["completed"] += 1
            elif decision.action == WaitingAction.COMPLETE_TIMEOUT:
                if await self._complete(account_id, AccountStatusEnum.WAITING, decision.reason):
                    counters["timed_out"] += 1
            elif decision.action == WaitingAction.ADVANCE_DAY:
                if await self._machine.transition(
                    account_id=account_id,
                    expected_status=AccountStatusEnum.WAITING,
                    target_status=AccountStatusEnum.PROCESSING,
                    values=PlanAssignment(plan_id=plan_id, day=decision.day).column_values(),
                    reason=decision.reason,
                ):
                    counters["days_advanced"] += 1
            else:
                if await self._machine.transition(
                    account_id=account_id,
                    expected_status=AccountStatusEnum.WAITING,
                    target_status=AccountStatusEnum.PROCESSING,
                    values=PlanAssignment(plan_id=plan_id, day=day).column_values(),
                    reason=decision.reason,
                ):
                    counters["activated"] += 1

    async def _logout_completed(self, counters: Counter[str]) -> None:
        stmt = select(TradeAccount.id).where(
            TradeAccount.status == AccountStatusEnum.COMPLETED,
            TradeAccount.login_state == LoginStateEnum.ACTIVE,
        )
        account_ids = (await self._session.execute(stmt)).scalars().all()
        for account_id in account_ids:
            await self._machine.request_logout(account_id, "plan completed")
            if await self._machine.correct(
                account_id=account_id,
                expected_status=AccountStatusEnum.COMPLETED,
                values={"login_state": LoginStateEnum.INVALID},
                reason="logout requested",
            ):
                counters["logouts_requested"] += 1

    async def _complete(self, account_id: int, expected_status: AccountStatusEnum, reason: str) -> bool:
        return await self._machine.transition(
            account_id=account_id,
            expected_status=expected_status,
            target_status=AccountStatusEnum.COMPLETED,
            reason=reason,
        )

    def _final_day_timed_out(self, plan: PlanConfig, last_success: datetime | None, now: datetime) -> bool:
        if last_success is None:
            return False
        timeout = max(plan.day_interval, timedelta(hours=self._settings.lifecycle_final_day_timeout_hours))
        return now - last_success >= timeout


__all__ = ["AccountLifecycleSweeper"]
