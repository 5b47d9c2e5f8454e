"""Rate constraint evaluation.

A plan's rate decides which redemption amounts are legal. The variants are a
closed set: unconstrained, multiple-of-base with a floor, and an enumerated
set of denominations. A rate row that cannot be interpreted becomes
``InvalidConstraint``, which rejects every amount instead of raising.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Union

from cardpool_api.models.rate import AmountConstraintEnum

FIXED_AMOUNT_TOLERANCE = Decimal("0.01")
ZERO = Decimal("0")


@dataclass(frozen=True, slots=True)
class AllAmounts:
    """Any positive amount is legal."""


@dataclass(frozen=True, slots=True)
class MultipleOf:
    base: Decimal
    minimum: Decimal


@dataclass(frozen=True, slots=True)
class FixedAmounts:
    amounts: frozenset[Decimal]


@dataclass(frozen=True, slots=True)
class InvalidConstraint:
    reason: str


RateConstraint = Union[AllAmounts, MultipleOf, FixedAmounts, InvalidConstraint]


def to_decimal(value: Any) -> Decimal | None:
    """Coerce numeric-ish values to ``Decimal``; ``None`` when not parseable."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    try:
        result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    return result if result.is_finite() else None


def is_amount_legal(amount: Decimal, constraint: RateConstraint) -> bool:
    """Return whether ``amount`` satisfies ``constraint``."""

    if amount <= ZERO:
        return False
    if isinstance(constraint, AllAmounts):
        return True
    if isinstance(constraint, MultipleOf):
        return amount >= constraint.minimum and amount % constraint.base == ZERO
    if isinstance(constraint, FixedAmounts):
        return any(abs(amount - candidate) < FIXED_AMOUNT_TOLERANCE for candidate in constraint.amounts)
    if isinstance(constraint, InvalidConstraint):
        return False
    raise TypeError(f"Unsupported rate constraint: {constraint!r}")


def is_reservable(remainder: Decimal, constraint: RateConstraint) -> bool:
    """Return whether leftover plan capacity can still be absorbed later.

    Zero is always reservable. A non-zero remainder must itself be a legal
    amount so that a future redemption can fill it exactly.
    """

    if isinstance(constraint, InvalidConstraint):
        return False
    if remainder == ZERO:
        return True
    return is_amount_legal(remainder, constraint)


def multiple_of(base: Any, minimum: Any = None) -> RateConstraint:
    parsed_base = to_decimal(base)
    if parsed_base is None or parsed_base <= ZERO:
        return InvalidConstraint(reason=f"multiple base must be positive, got {base!r}")
    parsed_minimum = to_decimal(minimum) if minimum is not None else ZERO
    if parsed_minimum is None or parsed_minimum < ZERO:
        return InvalidConstraint(reason=f"minimum amount must be non-negative, got {minimum!r}")
    return MultipleOf(base=parsed_base, minimum=parsed_minimum)


def fixed_amounts(values: Iterable[Any] | None) -> RateConstraint:
    if values is None or isinstance(values, (str, bytes)):
        return InvalidConstraint(reason="fixed amounts must be a list")
    parsed: set[Decimal] = set()
    for value in values:
        amount = to_decimal(value)
        if amount is None or amount <= ZERO:
            return InvalidConstraint(reason=f"fixed amount {value!r} is not a positive number")
        parsed.add(amount)
    if not parsed:
        return InvalidConstraint(reason="fixed amounts list is empty")
    return FixedAmounts(amounts=frozenset(parsed))


def constraint_from_rate(rate: Any | None) -> RateConstraint:
    """Build a constraint from a ``TradeRate`` row.

    Plans without a rate accept any amount.
    """

    if rate is None:
        return AllAmounts()
    kind = rate.amount_constraint
    if kind is None or kind == AmountConstraintEnum.ALL:
        return AllAmounts()
    if kind == AmountConstraintEnum.MULTIPLE:
        return multiple_of(rate.multiple_base, rate.min_amount)
    if kind == AmountConstraintEnum.FIXED:
        return fixed_amounts(rate.fixed_amounts)
    return InvalidConstraint(reason=f"unknown constraint type {kind!r}")


__all__ = [
    "AllAmounts",
    "FixedAmounts",
    "InvalidConstraint",
    "MultipleOf",
    "RateConstraint",
    "constraint_from_rate",
    "fixed_amounts",
    "is_amount_legal",
    "is_reservable",
    "multiple_of",
    "to_decimal",
]
