"""Pending-transaction reconciliation."""

from .pending import PendingSweepSummary, PendingTransactionReconciler

__all__ = ["PendingSweepSummary", "PendingTransactionReconciler"]
