"""Account allocation engine."""

from .allocator import AccountAllocator, load_plan_config
from .qualification import QualificationPipeline
from .ranking import binding_priority, capacity_priority, rank_candidates
from .statistics import allocation_statistics
from .types import (
    AccountAllocated,
    AccountNotFoundError,
    AllocationError,
    AllocationRequest,
    AllocationResult,
    CandidateSnapshot,
    NoAccountAvailable,
    PlanNotFoundError,
)

__all__ = [
    "AccountAllocated",
    "AccountAllocator",
    "AccountNotFoundError",
    "AllocationError",
    "AllocationRequest",
    "AllocationResult",
    "CandidateSnapshot",
    "NoAccountAvailable",
    "PlanNotFoundError",
    "QualificationPipeline",
    "allocation_statistics",
    "binding_priority",
    "capacity_priority",
    "load_plan_config",
    "rank_candidates",
]
