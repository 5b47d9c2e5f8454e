"""In-process metric stores."""

from .allocation import get_allocation_store
from .scheduler import get_scheduler_store

__all__ = ["get_allocation_store", "get_scheduler_store"]
