"""Redemption orchestration: duplicate guard, allocation, execution, settlement."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum

from loguru import logger
from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cardpool_api.core.settings import Settings, settings as default_settings
from cardpool_api.db.session import SessionFactory, open_session
from cardpool_api.domain.constraints import to_decimal
from cardpool_api.domain.timestamps import ensure_aware
from cardpool_api.models.account import TradeAccount
from cardpool_api.models.exchange_log import AccountExchangeLog, ExchangeStatusEnum
from cardpool_api.observability.allocation import AllocationObservabilityStore, get_allocation_store
from cardpool_api.services.allocation.allocator import AccountAllocator, load_plan_config
from cardpool_api.services.allocation.types import AccountAllocated, AllocationRequest
from cardpool_api.services.lifecycle.state_machine import AccountStateMachine, InvalidAccountTransitionError
from cardpool_api.services.redemption.collaborators import (
    CompletionNotifier,
    RedemptionCallResult,
    RedemptionGateway,
    ReservedAccount,
    SessionGateway,
)

SUPERSEDED = "superseded by retry"
DUPLICATE_IN_FLIGHT = "duplicate attempt in flight"
NO_ELIGIBLE_ACCOUNT = "no eligible account"


class RedemptionOutcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    NO_ACCOUNT = "no_account"
    ALREADY_REDEEMED = "already_redeemed"
    IN_PROGRESS = "in_progress"


@dataclass(slots=True)
class RedemptionResult:
    outcome: RedemptionOutcome
    code: str
    log_id: int | None = None
    account_id: int | None = None
    amount: Decimal | None = None
    new_balance: Decimal | None = None
    message: str | None = None


class RedemptionOrchestrator:
    """Run one code through the engine.

    The PENDING log is written before any account is touched so a crash at
    any later point leaves a row for the reconciler. The external redemption
    is invoked exactly once per reservation and its result settles the
    account through the lifecycle state machine.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        gateway: RedemptionGateway,
        *,
        session_gateway: SessionGateway | None = None,
        notifier: CompletionNotifier | None = None,
        settings: Settings = default_settings,
        allocator: AccountAllocator | None = None,
        store: AllocationObservabilityStore | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._gateway = gateway
        self._session_gateway = session_gateway
        self._notifier = notifier
        self._settings = settings
        self._store = store or get_allocation_store()
        self._allocator = allocator or AccountAllocator(session_factory, settings=settings, store=self._store)

    async def redeem(self, code: str, request: AllocationRequest, batch_id: str | None = None) -> RedemptionResult:
        session = await open_session(self._session_factory)
        async with session:
            blocked = await self._guard_duplicates(session, code, batch_id)
            if blocked is not None:
                self._store.record_outcome(blocked.outcome.value)
                return blocked

            plan = await load_plan_config(session, request.plan_id, settings=self._settings)
            log = AccountExchangeLog(
                code=code,
                amount=request.amount,
                plan_id=request.plan_id,
                room_id=request.room_id,
                batch_id=batch_id,
                status=ExchangeStatusEnum.PENDING,
            )
            session.add(log)
            await session.commit()
            log_id = log.id

            rival = await self._rival_attempt(session, code, log_id)
            if rival is not None:
                await self._finish_log(session, log_id, status=ExchangeStatusEnum.FAILED, error_message=DUPLICATE_IN_FLIGHT)
                self._store.record_outcome(rival.outcome.value)
                logger.info("Concurrent attempt for code detected", code=code, log_id=log_id, rival_log_id=rival.log_id)
                return rival

            allocation = await self._allocator.allocate(request)
            if not isinstance(allocation, AccountAllocated):
                await self._finish_log(session, log_id, status=ExchangeStatusEnum.FAILED, error_message=NO_ELIGIBLE_ACCOUNT)
                self._store.record_outcome(RedemptionOutcome.NO_ACCOUNT.value)
                return RedemptionResult(
                    outcome=RedemptionOutcome.NO_ACCOUNT,
                    code=code,
                    log_id=log_id,
                    amount=request.amount,
                    message=allocation.reason,
                )

            await session.execute(
                update(AccountExchangeLog)
                .where(AccountExchangeLog.id == log_id)
                .values(account_id=allocation.account_id, day=allocation.day)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

            reserved = await self._reserved_account(session, allocation)
            call_result = await self._execute(reserved, code, request.amount)

            if call_result.success:
                await self._finish_log(
                    session,
                    log_id,
                    status=ExchangeStatusEnum.SUCCESS,
                    amount=call_result.amount,
                    after_balance=call_result.new_balance,
                )
            else:
                await self._finish_log(
                    session,
                    log_id,
                    status=ExchangeStatusEnum.FAILED,
                    error_message=call_result.error_message or "redemption failed",
                )

            machine = AccountStateMachine(
                session,
                session_gateway=self._session_gateway,
                notifier=self._notifier,
            )
            try:
                await machine.record_outcome(account_id=allocation.account_id, plan=plan, result=call_result)
            except InvalidAccountTransitionError as exc:
                logger.warning(
                    "Redemption outcome could not settle account",
                    account_id=allocation.account_id,
                    log_id=log_id,
                    error=str(exc),
                )

        outcome = RedemptionOutcome.SUCCESS if call_result.success else RedemptionOutcome.FAILED
        self._store.record_outcome(outcome.value)
        logger.info(
            "Redemption finished",
            code=code,
            log_id=log_id,
            account_id=allocation.account_id,
            outcome=outcome.value,
        )
        return RedemptionResult(
            outcome=outcome,
            code=code,
            log_id=log_id,
            account_id=allocation.account_id,
            amount=call_result.amount,
            new_balance=call_result.new_balance,
            message=call_result.error_message,
        )

    async def _guard_duplicates(self, session: AsyncSession, code: str, batch_id: str | None) -> RedemptionResult | None:
        result = await session.execute(
            select(AccountExchangeLog).where(
                AccountExchangeLog.code == code,
                AccountExchangeLog.status.in_([ExchangeStatusEnum.SUCCESS, ExchangeStatusEnum.PENDING]),
            )
        )
        rows = list(result.scalars().all())
        for row in rows:
            if row.status == ExchangeStatusEnum.SUCCESS:
                return RedemptionResult(
                    outcome=RedemptionOutcome.ALREADY_REDEEMED,
                    code=code,
                    log_id=row.id,
                    account_id=row.account_id,
                    amount=to_decimal(row.amount),
                    message="code already redeemed",
                )

        cutoff = datetime.now(timezone.utc) - timedelta(minutes=self._settings.pending_duplicate_timeout_minutes)
        for row in rows:
            if row.batch_id != batch_id and ensure_aware(row.created_at) > cutoff:
                return RedemptionResult(
                    outcome=RedemptionOutcome.IN_PROGRESS,
                    code=code,
                    log_id=row.id,
                    account_id=row.account_id,
                    message="code is being redeemed by another batch",
                )

        for row in rows:
            await self._finish_log(session, row.id, status=ExchangeStatusEnum.FAILED, error_message=SUPERSEDED)
            logger.info("Superseded pending exchange", log_id=row.id, code=code, batch_id=row.batch_id)
        return None

    async def _rival_attempt(self, session: AsyncSession, code: str, log_id: int) -> RedemptionResult | None:
        """Re-check the code once our PENDING row is committed.

        Two callers can both pass the pre-insert guard. Each then sees the
        other's row here; the older PENDING row keeps the code and the newer
        one backs off, so at most one of them reaches the gateway.
        """

        result = await session.execute(
            select(AccountExchangeLog)
            .where(
                AccountExchangeLog.code == code,
                AccountExchangeLog.id != log_id,
                or_(
                    AccountExchangeLog.status == ExchangeStatusEnum.SUCCESS,
                    and_(AccountExchangeLog.status == ExchangeStatusEnum.PENDING, AccountExchangeLog.id < log_id),
                ),
            )
            .order_by(AccountExchangeLog.id)
        )
        rows = list(result.scalars().all())
        for row in rows:
            if row.status == ExchangeStatusEnum.SUCCESS:
                return RedemptionResult(
                    outcome=RedemptionOutcome.ALREADY_REDEEMED,
                    code=code,
                    log_id=row.id,
                    account_id=row.account_id,
                    amount=to_decimal(row.amount),
                    message="code already redeemed",
                )
        if rows:
            return RedemptionResult(
                outcome=RedemptionOutcome.IN_PROGRESS,
                code=code,
                log_id=rows[0].id,
                account_id=rows[0].account_id,
                message="code is being redeemed by another caller",
            )
        return None

    async def _reserved_account(self, session: AsyncSession, allocation: AccountAllocated) -> ReservedAccount:
        result = await session.execute(
            select(TradeAccount.account, TradeAccount.country_code).where(TradeAccount.id == allocation.account_id)
        )
        handle, country_code = result.one()
        return ReservedAccount(
            account_id=allocation.account_id,
            account=handle,
            country_code=country_code,
            plan_id=allocation.plan_id,
            day=allocation.day,
            balance=allocation.balance,
        )

    async def _execute(self, account: ReservedAccount, code: str, amount: Decimal) -> RedemptionCallResult:
        try:
            return await self._gateway.execute_redemption(account, code)
        except Exception as exc:
            logger.exception("Redemption gateway raised", account_id=account.account_id, code=code)
            return RedemptionCallResult(success=False, amount=amount, error_message=str(exc) or type(exc).__name__)

    async def _finish_log(
        self,
        session: AsyncSession,
        log_id: int,
        *,
        status: ExchangeStatusEnum,
        error_message: str | None = None,
        amount: Decimal | None = None,
        after_balance: Decimal | None = None,
    ) -> None:
        now = datetime.now(timezone.utc)
        values: dict[str, object] = {"status": status, "error_message": error_message, "updated_at": now}
        if status == ExchangeStatusEnum.SUCCESS:
            values["resolved_at"] = now
            values["after_balance"] = after_balance
            if amount is not None:
                values["amount"] = amount
        await session.execute(
            update(AccountExchangeLog)
            .where(AccountExchangeLog.id == log_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await session.commit()


__all__ = ["RedemptionOrchestrator", "RedemptionOutcome", "RedemptionResult"]
