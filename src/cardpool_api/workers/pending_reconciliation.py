"""Worker wiring for the pending-transaction reconciliation sweep."""

from __future__ import annotations

from typing import Any, Dict

from sqlalchemy.ext.asyncio import AsyncSession

from cardpool_api.core.settings import Settings, settings as default_settings
from cardpool_api.db.session import SessionFactory
from cardpool_api.models.sweep_run import SweepKindEnum
from cardpool_api.services.reconciliation.pending import PendingTransactionReconciler
from cardpool_api.workers.base import SweepWorker


class PendingReconciliationWorker(SweepWorker):
    """Periodically fails PENDING exchange rows that can no longer complete."""

    kind = SweepKindEnum.PENDING_RECONCILIATION.value

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        settings: Settings = default_settings,
        interval_seconds: int | None = None,
        dry_run: bool = False,
        batch_size: int | None = None,
        trigger_label: str = "interval",
    ) -> None:
        super().__init__(
            session_factory,
            interval_seconds=interval_seconds or settings.pending_reconciler_interval_seconds,
            trigger_label=trigger_label,
        )
        self._settings = settings
        self._dry_run = dry_run
        self._batch_size = batch_size or settings.pending_sweep_batch_size

    async def _sweep(self, session: AsyncSession) -> Dict[str, Any]:
        reconciler = PendingTransactionReconciler(session, settings=self._settings)
        summary = await reconciler.run(dry_run=self._dry_run, batch_size=self._batch_size)
        return summary.as_dict()


__all__ = ["PendingReconciliationWorker"]
