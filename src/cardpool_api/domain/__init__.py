"""I/O-free domain helpers for the allocation engine."""

from .constraints import (  # noqa: F401
    AllAmounts,
    FixedAmounts,
    InvalidConstraint,
    MultipleOf,
    RateConstraint,
    constraint_from_rate,
    is_amount_legal,
    is_reservable,
)
from .plans import PlanAssignment, PlanConfig, build_plan_config  # noqa: F401
from .timestamps import ensure_aware  # noqa: F401
