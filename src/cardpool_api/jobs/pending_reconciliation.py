"""Scheduled pending-transaction reconciliation job."""

from __future__ import annotations

from typing import Any, Dict

from cardpool_api.db.session import SessionFactory
from cardpool_api.workers.pending_reconciliation import PendingReconciliationWorker


async def run_pending_reconciliation(
    *,
    session_factory: SessionFactory,
    dry_run: bool = False,
    batch_size: int | None = None,
    triggered_by: str = "scheduler",
) -> Dict[str, Any]:
    """Fail PENDING exchange rows that are past their timeout."""

    worker = PendingReconciliationWorker(session_factory, dry_run=dry_run, batch_size=batch_size)
    return await worker.run_once(triggered_by=triggered_by)


__all__ = ["run_pending_reconciliation"]
