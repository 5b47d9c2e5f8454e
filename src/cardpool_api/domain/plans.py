"""Plan configuration snapshots and plan-assignment values."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Any

from cardpool_api.domain.constraints import (
    InvalidConstraint,
    RateConstraint,
    constraint_from_rate,
    to_decimal,
)
from cardpool_api.models.plan import PlanStatusEnum

ZERO = Decimal("0")


@dataclass(frozen=True, slots=True)
class PlanAssignment:
    """A bound plan together with the day pointer on that plan.

    Both halves are written together so ``current_day`` is set exactly when
    ``bound_plan_id`` is.
    """

    plan_id: int
    day: int = 1

    def __post_init__(self) -> None:
        if self.day < 1:
            raise ValueError("plan day must be a positive integer")

    def column_values(self) -> dict[str, Any]:
        return {"bound_plan_id": self.plan_id, "current_day": self.day}

    @staticmethod
    def cleared() -> dict[str, Any]:
        return {"bound_plan_id": None, "current_day": None}


@dataclass(frozen=True, slots=True)
class PlanConfig:
    """Immutable view of a plan used by allocation and lifecycle code."""

    plan_id: int
    country_code: str
    total_amount: Decimal
    plan_days: int
    daily_amounts: tuple[Decimal, ...]
    float_amount: Decimal
    day_interval: timedelta
    exchange_interval: timedelta
    requires_room_binding: bool
    enabled: bool
    constraint: RateConstraint
    anomalies: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_valid(self) -> bool:
        return not self.anomalies

    def is_last_day(self, day: int) -> bool:
        return day >= self.plan_days

    def daily_amount(self, day: int) -> Decimal:
        """Base target for ``day`` without the float tolerance."""

        if 1 <= day <= len(self.daily_amounts):
            return self.daily_amounts[day - 1]
        return ZERO

    def daily_cap(self, day: int) -> Decimal:
        """Maximum spend allowed on ``day`` including the float tolerance."""

        return self.daily_amount(day) + self.float_amount

    def clamp_day(self, day: int | None) -> int:
        resolved = day or 1
        return max(1, min(resolved, self.plan_days)) if self.plan_days > 0 else 1


def build_plan_config(
    plan: Any,
    *,
    default_exchange_interval_minutes: int = 5,
    default_day_interval_hours: int = 24,
) -> PlanConfig:
    """Snapshot a ``TradePlan`` row, collecting configuration anomalies.

    The snapshot is always produced; callers check ``is_valid`` and treat an
    invalid plan as having no eligible accounts.
    """

    anomalies: list[str] = []

    total = to_decimal(plan.total_amount)
    if total is None or total <= ZERO:
        anomalies.append("total_amount must be positive")
        total = total if total is not None else ZERO

    plan_days = plan.plan_days if isinstance(plan.plan_days, int) else 0
    if plan_days <= 0:
        anomalies.append("plan_days must be positive")

    raw_daily = plan.daily_amounts
    daily: list[Decimal] = []
    if not isinstance(raw_daily, (list, tuple)) or not raw_daily:
        anomalies.append("daily_amounts must be a non-empty list")
    else:
        for index, value in enumerate(raw_daily, start=1):
            parsed = to_decimal(value)
            if parsed is None or parsed < ZERO:
                anomalies.append(f"daily_amounts[{index}] is not a non-negative number")
                parsed = ZERO
            daily.append(parsed)
        if plan_days > 0 and len(daily) != plan_days:
            anomalies.append(f"daily_amounts has {len(daily)} entries for {plan_days} plan days")

    float_amount = to_decimal(plan.float_amount)
    if float_amount is None or float_amount < ZERO:
        anomalies.append("float_amount must be non-negative")
        float_amount = ZERO

    constraint = constraint_from_rate(getattr(plan, "rate", None))
    if isinstance(constraint, InvalidConstraint):
        anomalies.append(f"rate constraint invalid: {constraint.reason}")

    exchange_minutes = plan.exchange_interval_minutes or default_exchange_interval_minutes
    day_hours = plan.day_interval_hours or default_day_interval_hours

    return PlanConfig(
        plan_id=plan.id,
        country_code=plan.country_code,
        total_amount=total,
        plan_days=plan_days,
        daily_amounts=tuple(daily),
        float_amount=float_amount,
        day_interval=timedelta(hours=max(1, day_hours)),
        exchange_interval=timedelta(minutes=max(1, exchange_minutes)),
        requires_room_binding=bool(plan.requires_room_binding),
        enabled=plan.status != PlanStatusEnum.DISABLED,
        constraint=constraint,
        anomalies=tuple(anomalies),
    )


__all__ = ["PlanAssignment", "PlanConfig", "build_plan_config"]
