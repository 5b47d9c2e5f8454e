"""Scheduling utilities for recurring sweeps."""

from .config import JobDefinition, load_job_definitions
from .runner import SweepJobScheduler

__all__ = ["JobDefinition", "SweepJobScheduler", "load_job_definitions"]
