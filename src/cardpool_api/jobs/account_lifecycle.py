"""Scheduled account lifecycle sweep job."""

from __future__ import annotations

from typing import Any, Dict

from cardpool_api.db.session import SessionFactory
from cardpool_api.workers.account_lifecycle import AccountLifecycleWorker


async def run_account_lifecycle_sweep(
    *,
    session_factory: SessionFactory,
    triggered_by: str = "scheduler",
) -> Dict[str, Any]:
    """Release stale locks, unbind orphans and advance idle accounts."""

    worker = AccountLifecycleWorker(session_factory)
    return await worker.run_once(triggered_by=triggered_by)


__all__ = ["run_account_lifecycle_sweep"]
