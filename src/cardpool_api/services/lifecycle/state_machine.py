"""Account lifecycle state machine.

Every write is a single UPDATE guarded by the status the caller observed, so
a transition racing with the allocator or another sweep simply affects zero
rows. Each write also re-derives ``completed_days`` from the exchange log.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cardpool_api.domain.constraints import to_decimal
from cardpool_api.domain.plans import PlanAssignment, PlanConfig
from cardpool_api.models.account import AccountStatusEnum, LoginStateEnum, TradeAccount
from cardpool_api.services.allocation.types import AccountNotFoundError, AllocationError
from cardpool_api.services.lifecycle.progression import (
    compute_completed_days,
    is_daily_met,
    is_total_met,
    spent_on_day,
)
from cardpool_api.services.redemption.collaborators import (
    CompletionNotifier,
    LoggingCompletionNotifier,
    LoggingSessionGateway,
    RedemptionCallResult,
    SessionGateway,
)

ZERO = Decimal("0")


class InvalidAccountTransitionError(AllocationError):
    """Raised when a transition violates the account state machine."""

    def __init__(self, current_status: AccountStatusEnum, requested_status: AccountStatusEnum) -> None:
        message = f"Cannot transition account from {current_status.value} to {requested_status.value}"
        super().__init__(message)
        self.current_status = current_status
        self.requested_status = requested_status


@dataclass(slots=True)
class AccountState:
    """Columns the state machine reads before deciding a transition."""

    account_id: int
    account: str
    status: AccountStatusEnum
    login_state: LoginStateEnum
    balance: Decimal
    bound_plan_id: int | None
    bound_room_id: str | None
    current_day: int | None


class AccountStateMachine:
    """Drive accounts through WAITING, PROCESSING, LOCKING and COMPLETED."""

    _ALLOWED_TRANSITIONS: dict[AccountStatusEnum, set[AccountStatusEnum]] = {
        AccountStatusEnum.WAITING: {
            AccountStatusEnum.PROCESSING,
            AccountStatusEnum.COMPLETED,
        },
        AccountStatusEnum.PROCESSING: {
            AccountStatusEnum.LOCKING,
            AccountStatusEnum.WAITING,
            AccountStatusEnum.COMPLETED,
        },
        AccountStatusEnum.LOCKING: {
            AccountStatusEnum.PROCESSING,
            AccountStatusEnum.WAITING,
            AccountStatusEnum.COMPLETED,
        },
        AccountStatusEnum.COMPLETED: set(),
    }

    def __init__(
        self,
        session: AsyncSession,
        *,
        session_gateway: SessionGateway | None = None,
        notifier: CompletionNotifier | None = None,
    ) -> None:
        self._session = session
        self._session_gateway = session_gateway or LoggingSessionGateway()
        self._notifier = notifier or LoggingCompletionNotifier()

    @classmethod
    def is_allowed(cls, current: AccountStatusEnum, target: AccountStatusEnum) -> bool:
        return target in cls._ALLOWED_TRANSITIONS.get(current, set())

    async def load_state(self, account_id: int) -> AccountState:
        result = await self._session.execute(
            select(
                TradeAccount.id,
                TradeAccount.account,
                TradeAccount.status,
                TradeAccount.login_state,
                TradeAccount.balance,
                TradeAccount.bound_plan_id,
                TradeAccount.bound_room_id,
                TradeAccount.current_day,
            ).where(TradeAccount.id == account_id)
        )
        row = result.one_or_none()
        if row is None:
            raise AccountNotFoundError(account_id)
        return AccountState(
            account_id=row[0],
            account=row[1],
            status=row[2],
            login_state=row[3],
            balance=to_decimal(row[4]) or ZERO,
            bound_plan_id=row[5],
            bound_room_id=row[6],
            current_day=row[7],
        )

    async def transition(
        self,
        *,
        account_id: int,
        expected_status: AccountStatusEnum,
        target_status: AccountStatusEnum,
        reason: str,
        values: dict[str, Any] | None = None,
    ) -> bool:
        """Move ``account_id`` from ``expected_status`` to ``target_status``.

        Returns ``False`` when the row was no longer in ``expected_status``.
        Entering COMPLETED clears the plan assignment and emits the logout
        and completion side effects.
        """

        if not self.is_allowed(expected_status, target_status):
            raise InvalidAccountTransitionError(expected_status, target_status)

        payload: dict[str, Any] = dict(values or {})
        payload["status"] = target_status
        if target_status == AccountStatusEnum.COMPLETED:
            payload.update(PlanAssignment.cleared())
        if target_status != AccountStatusEnum.LOCKING:
            payload["locked_at"] = None

        state_before = await self.load_state(account_id) if target_status == AccountStatusEnum.COMPLETED else None
        applied = await self._conditional_update(account_id, expected_status, payload)
        if not applied:
            logger.debug(
                "Account transition skipped; status changed concurrently",
                account_id=account_id,
                expected_status=expected_status.value,
                target_status=target_status.value,
            )
            return False

        logger.info(
            "Account status transitioned",
            account_id=account_id,
            from_status=expected_status.value,
            to_status=target_status.value,
            reason=reason,
        )
        if target_status == AccountStatusEnum.COMPLETED and state_before is not None:
            await self._on_completed(state_before, payload.get("balance"), reason)
        elif expected_status == AccountStatusEnum.WAITING and target_status == AccountStatusEnum.PROCESSING:
            await self._request_login_if_needed(account_id, reason)
        return True

    async def correct(
        self,
        *,
        account_id: int,
        expected_status: AccountStatusEnum,
        values: dict[str, Any],
        reason: str,
    ) -> bool:
        """Rewrite fields without changing status, guarded by ``expected_status``."""

        applied = await self._conditional_update(account_id, expected_status, dict(values))
        if applied:
            logger.info(
                "Account state corrected",
                account_id=account_id,
                status=expected_status.value,
                fields=sorted(values),
                reason=reason,
            )
        return applied

    async def unbind_orphan(self, account_id: int, expected_status: AccountStatusEnum, reason: str) -> bool:
        """Clear a dangling plan assignment and park the account in WAITING."""

        values = PlanAssignment.cleared()
        if expected_status == AccountStatusEnum.WAITING:
            applied = await self.correct(
                account_id=account_id,
                expected_status=expected_status,
                values=values,
                reason=reason,
            )
        else:
            applied = await self.transition(
                account_id=account_id,
                expected_status=expected_status,
                target_status=AccountStatusEnum.WAITING,
                values=values,
                reason=reason,
            )
        if applied:
            await self.request_logout(account_id, reason)
        return applied

    async def record_outcome(
        self,
        *,
        account_id: int,
        plan: PlanConfig,
        result: RedemptionCallResult,
    ) -> AccountStatusEnum:
        """Settle a LOCKING account once the redemption outcome is known.

        The exchange log row for this redemption must already be written as
        SUCCESS or FAILED so the day aggregate includes it.
        """

        state = await self.load_state(account_id)
        if state.status != AccountStatusEnum.LOCKING:
            target = AccountStatusEnum.PROCESSING if not result.success else AccountStatusEnum.WAITING
            raise InvalidAccountTransitionError(state.status, target)

        day = state.current_day or 1
        if not result.success:
            await self.transition(
                account_id=account_id,
                expected_status=AccountStatusEnum.LOCKING,
                target_status=AccountStatusEnum.PROCESSING,
                reason=result.error_message or "redemption failed",
            )
            return AccountStatusEnum.PROCESSING

        new_balance = result.new_balance if result.new_balance is not None else state.balance + result.amount
        if new_balance > plan.total_amount:
            logger.warning(
                "Reported balance exceeds plan total",
                account_id=account_id,
                plan_id=plan.plan_id,
                balance=str(new_balance),
                total_amount=str(plan.total_amount),
            )
        values: dict[str, Any] = {"balance": new_balance}

        if is_total_met(plan, new_balance):
            target = AccountStatusEnum.COMPLETED
            reason = "plan total reached"
        else:
            spent_today = await spent_on_day(self._session, account_id, day)
            if not plan.is_last_day(day) and is_daily_met(plan, day, spent_today):
                target = AccountStatusEnum.WAITING
                reason = "daily quota met"
            else:
                target = AccountStatusEnum.PROCESSING
                reason = "daily quota remaining"

        await self.transition(
            account_id=account_id,
            expected_status=AccountStatusEnum.LOCKING,
            target_status=target,
            values=values,
            reason=reason,
        )
        return target

    async def request_login(self, account_id: int, reason: str) -> None:
        try:
            await self._session_gateway.request_login(account_id, reason)
        except Exception as exc:
            logger.warning("Login request failed", account_id=account_id, error=str(exc))

    async def request_logout(self, account_id: int, reason: str) -> None:
        try:
            await self._session_gateway.request_logout(account_id, reason)
        except Exception as exc:
            logger.warning("Logout request failed", account_id=account_id, error=str(exc))

    async def _request_login_if_needed(self, account_id: int, reason: str) -> None:
        state = await self.load_state(account_id)
        if state.login_state != LoginStateEnum.ACTIVE:
            await self.request_login(account_id, reason)

    async def _on_completed(self, state: AccountState, balance: Any, reason: str) -> None:
        final_balance = to_decimal(balance) if balance is not None else state.balance
        await self.request_logout(state.account_id, reason)
        try:
            await self._notifier.notify_completion(
                state.account_id,
                state.account,
                final_balance or ZERO,
                plan_id=state.bound_plan_id,
                room_id=state.bound_room_id,
            )
        except Exception as exc:
            logger.warning("Completion notification failed", account_id=state.account_id, error=str(exc))

    async def _conditional_update(
        self,
        account_id: int,
        expected_status: AccountStatusEnum,
        values: dict[str, Any],
    ) -> bool:
        payload = dict(values)
        payload.setdefault("completed_days", await compute_completed_days(self._session, account_id))
        payload["updated_at"] = datetime.now(timezone.utc)
        stmt = (
            update(TradeAccount)
            .where(TradeAccount.id == account_id, TradeAccount.status == expected_status)
            .values(**payload)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.commit()
        return result.rowcount == 1


__all__ = ["AccountState", "AccountStateMachine", "InvalidAccountTransitionError"]
