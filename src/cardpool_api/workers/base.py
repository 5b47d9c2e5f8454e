"""Interval worker scaffolding shared by the reconciliation sweeps."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from cardpool_api.db.session import SessionFactory, open_session
from cardpool_api.models.sweep_run import SweepRun


class SweepWorker:
    """Run a sweep on an interval, one run at a time.

    ``run_once`` holds an in-process lock for the duration of a run; a call
    that arrives while a run is in flight is skipped rather than queued. Each
    run is recorded as a ``SweepRun`` row.
    """

    kind: str = "sweep"

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        interval_seconds: int,
        trigger_label: str = "interval",
    ) -> None:
        self._session_factory = session_factory
        self.interval_seconds = interval_seconds
        self._trigger_label = trigger_label
        self._stop_event = asyncio.Event()
        self._run_lock = asyncio.Lock()
        self._task: asyncio.Task | None = None
        self.is_running: bool = False

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        self.is_running = True
        logger.info("Sweep worker started", kind=self.kind, interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        self.is_running = False
        logger.info("Sweep worker stopped", kind=self.kind)

    async def run_once(self, *, triggered_by: str | None = None) -> Dict[str, Any]:
        """Execute a single sweep and persist its audit row."""

        trigger = triggered_by or self._trigger_label
        if self._run_lock.locked():
            logger.info("Sweep already running; skipping", kind=self.kind, trigger=trigger)
            return {"skipped": 1}

        async with self._run_lock:
            session = await open_session(self._session_factory)
            async with session as managed_session:
                run = SweepRun(kind=self.kind, triggered_by=trigger, status="running", metadata_json={})
                managed_session.add(run)
                await managed_session.commit()
                await managed_session.refresh(run)
                run_id = str(run.id)

                try:
                    summary = await self._sweep(managed_session)
                    run.status = "completed"
                    run.completed_at = datetime.now(timezone.utc)
                    run.metadata_json = self._build_run_metadata(trigger, summary)
                    managed_session.add(run)
                    await managed_session.commit()
                    logger.info("Sweep completed", kind=self.kind, run_id=run_id, trigger=trigger, **summary)
                except Exception as exc:
                    await managed_session.rollback()
                    run.status = "failed"
                    run.completed_at = datetime.now(timezone.utc)
                    run.error_message = str(exc)
                    run.metadata_json = self._build_run_metadata(trigger, {}, error=str(exc))
                    managed_session.add(run)
                    await managed_session.commit()
                    logger.exception("Sweep failed", kind=self.kind, run_id=run_id, error=str(exc))
                    raise

        return summary

    async def _sweep(self, session: AsyncSession) -> Dict[str, Any]:
        raise NotImplementedError

    def _build_run_metadata(
        self,
        trigger: str,
        summary: Dict[str, Any],
        *,
        error: str | None = None,
    ) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {"triggered_by": trigger, "counters": dict(summary)}
        if error:
            metadata["error"] = error
        return metadata

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as exc:  # pragma: no cover - defensive logging
                logger.exception("Sweep iteration failed", kind=self.kind, error=str(exc))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue


__all__ = ["SweepWorker"]
