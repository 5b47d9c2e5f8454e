"""Account allocator: qualify, rank and reserve with bounded retries."""

from __future__ import annotations

import asyncio
from decimal import Decimal

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cardpool_api.core.settings import Settings, settings as default_settings
from cardpool_api.db.session import SessionFactory, open_session
from cardpool_api.domain.constraints import to_decimal
from cardpool_api.domain.plans import PlanConfig, build_plan_config
from cardpool_api.models.account import TradeAccount
from cardpool_api.models.plan import TradePlan
from cardpool_api.observability.allocation import AllocationObservabilityStore, get_allocation_store
from cardpool_api.services.allocation.lock import try_lock_account
from cardpool_api.services.allocation.qualification import QualificationPipeline
from cardpool_api.services.allocation.ranking import fetch_candidate_snapshots, rank_candidates
from cardpool_api.services.allocation.types import (
    AccountAllocated,
    AllocationRequest,
    AllocationResult,
    NoAccountAvailable,
    PlanNotFoundError,
)


async def load_plan_config(session: AsyncSession, plan_id: int, *, settings: Settings = default_settings) -> PlanConfig:
    """Load and snapshot a plan, raising when the row does not exist."""

    plan = await session.get(TradePlan, plan_id)
    if plan is None:
        raise PlanNotFoundError(plan_id)
    return build_plan_config(
        plan,
        default_exchange_interval_minutes=settings.lifecycle_default_exchange_interval_minutes,
        default_day_interval_hours=settings.lifecycle_default_day_interval_hours,
    )


class AccountAllocator:
    """Select and reserve exactly one account for a redemption request.

    Each pass runs the pipeline in a fresh session so it sees committed state,
    ranks the survivors and walks them through the conditional lock. Accounts
    that lost a race are excluded from later passes. Running out of passes is
    a business outcome returned as ``NoAccountAvailable``.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        settings: Settings = default_settings,
        store: AllocationObservabilityStore | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings
        self._store = store or get_allocation_store()

    @property
    def max_attempts(self) -> int:
        return max(1, self._settings.allocation_max_retries)

    def _backoff(self, attempt: int) -> float:
        base = max(0.0, self._settings.allocation_retry_backoff_seconds)
        multiplier = max(1.0, self._settings.allocation_retry_backoff_multiplier)
        return base * (multiplier ** (attempt - 1))

    async def allocate(self, request: AllocationRequest) -> AllocationResult:
        tried: set[int] = set()

        for attempt in range(1, self.max_attempts + 1):
            session = await open_session(self._session_factory)
            async with session:
                plan = await load_plan_config(session, request.plan_id, settings=self._settings)
                pipeline = QualificationPipeline(session, store=self._store)
                ids = await pipeline.qualify(request, plan, excluded_ids=tried)
                if not ids:
                    break
                candidates = await fetch_candidate_snapshots(session, ids, request, plan)
                # Release the read transaction before contending on writes.
                await session.commit()

                for candidate in rank_candidates(candidates, request, plan.constraint):
                    tried.add(candidate.account_id)
                    locked = await try_lock_account(
                        session,
                        candidate.account_id,
                        request,
                        expected_balance=candidate.balance,
                        max_balance=plan.total_amount - request.amount,
                    )
                    if not locked:
                        self._store.record_contention()
                        continue
                    day, balance = await self._locked_state(session, candidate.account_id)
                    self._store.record_allocated(attempts=attempt)
                    logger.info(
                        "Account locked for redemption",
                        account_id=candidate.account_id,
                        plan_id=request.plan_id,
                        room_id=request.room_id,
                        amount=str(request.amount),
                        day=day,
                        attempt=attempt,
                    )
                    return AccountAllocated(
                        account_id=candidate.account_id,
                        plan_id=request.plan_id,
                        room_id=request.room_id,
                        day=day,
                        balance=balance,
                        attempts=attempt,
                    )

            if attempt < self.max_attempts:
                delay = self._backoff(attempt)
                logger.debug("Retrying allocation", plan_id=request.plan_id, attempt=attempt + 1, delay_seconds=delay)
                if delay:
                    await asyncio.sleep(delay)

        self._store.record_exhausted(request.plan_id)
        logger.warning(
            "No account available",
            plan_id=request.plan_id,
            amount=str(request.amount),
            country_code=request.country_code,
            room_id=request.room_id,
            tried=len(tried),
        )
        return NoAccountAvailable(plan_id=request.plan_id, amount=request.amount, attempts=attempt)

    async def _locked_state(self, session: AsyncSession, account_id: int) -> tuple[int, Decimal]:
        result = await session.execute(
            select(TradeAccount.current_day, TradeAccount.balance).where(TradeAccount.id == account_id)
        )
        day, balance = result.one()
        return int(day or 1), to_decimal(balance) or Decimal("0")


__all__ = ["AccountAllocator", "load_plan_config"]
