"""Five-layer qualification pipeline narrowing the account pool to candidates."""

from __future__ import annotations

from decimal import Decimal
from typing import Awaitable, Callable, Iterable

from loguru import logger
from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from cardpool_api.domain.constraints import is_amount_legal, is_reservable, to_decimal
from cardpool_api.domain.plans import PlanConfig
from cardpool_api.models.account import AccountStatusEnum, LoginStateEnum, TradeAccount
from cardpool_api.models.exchange_log import AccountExchangeLog, ExchangeStatusEnum
from cardpool_api.observability.allocation import AllocationObservabilityStore, get_allocation_store
from cardpool_api.services.allocation.types import AllocationRequest

ZERO = Decimal("0")

Layer = Callable[[set[int], AllocationRequest, PlanConfig], Awaitable[set[int]]]


class QualificationPipeline:
    """Filter eligible account ids for one request.

    Layer one is the only query against the whole account table; every later
    layer works on the id set handed down by the previous one and an empty
    set short-circuits the rest of the pipeline.
    """

    def __init__(self, session: AsyncSession, *, store: AllocationObservabilityStore | None = None) -> None:
        self._session = session
        self._store = store or get_allocation_store()

    @property
    def layers(self) -> list[tuple[str, Layer]]:
        return [
            ("rate", self.rate_layer),
            ("affinity", self.affinity_layer),
            ("capacity", self.capacity_layer),
            ("daily_quota", self.daily_quota_layer),
        ]

    async def qualify(
        self,
        request: AllocationRequest,
        plan: PlanConfig,
        *,
        excluded_ids: Iterable[int] = (),
    ) -> set[int]:
        if not plan.is_valid:
            message = "; ".join(plan.anomalies)
            self._store.record_config_anomaly(plan.plan_id, message)
            logger.warning("Plan configuration rejected all candidates", plan_id=plan.plan_id, anomalies=message)
            return set()
        if not plan.enabled:
            logger.debug("Plan disabled; no candidates", plan_id=plan.plan_id)
            return set()
        if request.amount <= ZERO:
            return set()

        ids = await self.base_layer(request, plan, excluded_ids=set(excluded_ids))
        logger.debug("Qualification layer", layer="base", plan_id=plan.plan_id, survivors=len(ids))
        for name, layer in self.layers:
            if not ids:
                break
            survivors = await layer(ids, request, plan)
            self._store.record_rejections(name, len(ids) - len(survivors))
            logger.debug("Qualification layer", layer=name, plan_id=plan.plan_id, survivors=len(survivors))
            ids = survivors
        return ids

    async def base_layer(
        self,
        request: AllocationRequest,
        plan: PlanConfig,
        *,
        excluded_ids: set[int] | None = None,
    ) -> set[int]:
        """Status, login, country, balance headroom and plan exclusivity."""

        max_balance = plan.total_amount - request.amount
        if max_balance < ZERO:
            return set()
        stmt = select(TradeAccount.id).where(
            TradeAccount.status == AccountStatusEnum.PROCESSING,
            TradeAccount.login_state == LoginStateEnum.ACTIVE,
            TradeAccount.country_code == request.country_code,
            TradeAccount.deleted_at.is_(None),
            TradeAccount.balance >= 0,
            TradeAccount.balance <= max_balance,
            or_(TradeAccount.bound_plan_id.is_(None), TradeAccount.bound_plan_id == plan.plan_id),
        )
        if excluded_ids:
            stmt = stmt.where(TradeAccount.id.not_in(excluded_ids))
        result = await self._session.execute(stmt)
        return set(result.scalars().all())

    async def rate_layer(self, ids: set[int], request: AllocationRequest, plan: PlanConfig) -> set[int]:
        # One plan per request, so legality holds for every id or for none.
        return set(ids) if is_amount_legal(request.amount, plan.constraint) else set()

    async def affinity_layer(self, ids: set[int], request: AllocationRequest, plan: PlanConfig) -> set[int]:
        if not plan.requires_room_binding:
            return set(ids)
        room_filter = TradeAccount.bound_room_id.is_(None)
        if request.room_id is not None:
            room_filter = or_(room_filter, TradeAccount.bound_room_id == request.room_id)
        result = await self._session.execute(
            select(TradeAccount.id).where(TradeAccount.id.in_(ids), room_filter)
        )
        return set(result.scalars().all())

    async def capacity_layer(self, ids: set[int], request: AllocationRequest, plan: PlanConfig) -> set[int]:
        """Reject accounts whose leftover capacity could never be filled."""

        result = await self._session.execute(
            select(TradeAccount.id, TradeAccount.balance).where(TradeAccount.id.in_(ids))
        )
        survivors: set[int] = set()
        for account_id, balance in result.all():
            remainder = plan.total_amount - (to_decimal(balance) or ZERO) - request.amount
            if remainder < ZERO:
                continue
            if is_reservable(remainder, plan.constraint):
                survivors.add(account_id)
        return survivors

    async def daily_quota_layer(self, ids: set[int], request: AllocationRequest, plan: PlanConfig) -> set[int]:
        """Keep accounts whose spend for their own current day stays under the cap."""

        day = func.coalesce(TradeAccount.current_day, 1)
        stmt = (
            select(
                TradeAccount.id,
                day.label("day"),
                func.coalesce(func.sum(AccountExchangeLog.amount), 0).label("spent"),
            )
            .select_from(TradeAccount)
            .outerjoin(
                AccountExchangeLog,
                and_(
                    AccountExchangeLog.account_id == TradeAccount.id,
                    AccountExchangeLog.status == ExchangeStatusEnum.SUCCESS,
                    AccountExchangeLog.day == day,
                ),
            )
            .where(TradeAccount.id.in_(ids))
            .group_by(TradeAccount.id, TradeAccount.current_day)
        )
        result = await self._session.execute(stmt)
        survivors: set[int] = set()
        for account_id, account_day, spent in result.all():
            account_day = int(account_day)
            if plan.is_last_day(account_day):
                survivors.add(account_id)
                continue
            spent_today = to_decimal(spent) or ZERO
            if spent_today + request.amount <= plan.daily_cap(account_day):
                survivors.add(account_id)
        return survivors


__all__ = ["QualificationPipeline"]
