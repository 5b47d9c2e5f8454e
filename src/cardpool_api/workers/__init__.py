"""Background workers."""

from .account_lifecycle import AccountLifecycleWorker
from .pending_reconciliation import PendingReconciliationWorker

__all__ = ["AccountLifecycleWorker", "PendingReconciliationWorker"]
