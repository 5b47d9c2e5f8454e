"""Request and result types for account allocation."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Union


class AllocationError(RuntimeError):
    """Base error for data or programming faults surfaced by the engine."""


class PlanNotFoundError(AllocationError):
    def __init__(self, plan_id: int) -> None:
        super().__init__(f"Plan {plan_id} does not exist")
        self.plan_id = plan_id


class AccountNotFoundError(AllocationError):
    def __init__(self, account_id: int) -> None:
        super().__init__(f"Account {account_id} does not exist")
        self.account_id = account_id


@dataclass(frozen=True, slots=True)
class AllocationRequest:
    """Amount and routing keys of one redemption that needs an account."""

    amount: Decimal
    country_code: str
    plan_id: int
    room_id: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, "amount", Decimal(str(self.amount)))


@dataclass(frozen=True, slots=True)
class CandidateSnapshot:
    """Read-only view of a qualified account used for ranking."""

    account_id: int
    balance: Decimal
    bound_plan_id: int | None
    bound_room_id: str | None
    remainder: Decimal
    last_success_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class AccountAllocated:
    account_id: int
    plan_id: int
    room_id: str | None
    day: int
    balance: Decimal
    attempts: int


@dataclass(frozen=True, slots=True)
class NoAccountAvailable:
    """No eligible account could be reserved within the retry budget."""

    plan_id: int
    amount: Decimal
    attempts: int
    reason: str = "no eligible account"


AllocationResult = Union[AccountAllocated, NoAccountAvailable]


__all__ = [
    "AccountAllocated",
    "AccountNotFoundError",
    "AllocationError",
    "AllocationRequest",
    "AllocationResult",
    "CandidateSnapshot",
    "NoAccountAvailable",
    "PlanNotFoundError",
]
