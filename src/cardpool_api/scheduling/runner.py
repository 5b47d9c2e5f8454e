"""Scheduler runtime for reconciliation and lifecycle sweeps."""

from __future__ import annotations

import asyncio
import inspect
import time
from importlib import import_module
from pathlib import Path
from types import ModuleType
from typing import Any, Awaitable, Callable

from apscheduler.events import EVENT_JOB_MAX_INSTANCES, JobEvent
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from loguru import logger
from zoneinfo import ZoneInfo

from .config import JobDefinition, ScheduleConfig, load_job_definitions
from cardpool_api.db.session import SessionFactory
from cardpool_api.observability.scheduler import get_scheduler_store


class SweepJobScheduler:
    """Register cron-triggered sweeps that never overlap themselves.

    Every job is added with ``max_instances=1`` and ``coalesce=True``: a
    trigger that fires while the previous run is still going is skipped and
    recorded instead of starting a second concurrent sweep.
    """

    def __init__(self, *, session_factory: SessionFactory, config_path: Path) -> None:
        self._session_factory = session_factory
        self._config_path = config_path
        self._config: ScheduleConfig | None = None
        self._scheduler: AsyncIOScheduler | None = None
        self._is_running: bool = False
        self._observability = get_scheduler_store()

    @property
    def is_running(self) -> bool:
        return self._is_running

    def start(self) -> None:
        """Start the scheduler with configured jobs."""

        config = load_job_definitions(self._config_path)
        timezone = ZoneInfo(config.timezone)
        scheduler = AsyncIOScheduler(timezone=timezone)
        scheduler.add_listener(self._on_max_instances, EVENT_JOB_MAX_INSTANCES)

        for job in config.enabled_jobs:
            func = self._resolve_callable(job)
            trigger = CronTrigger.from_crontab(job.cron, timezone=timezone)
            scheduler.add_job(
                self._wrap_callable(func, job),
                trigger=trigger,
                id=job.id,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
                misfire_grace_time=job.misfire_grace_seconds,
            )
            logger.info("Registered sweep job", job_id=job.id, task=job.task, cron=job.cron)

        scheduler.start()
        self._config = config
        self._scheduler = scheduler
        self._is_running = True
        logger.info("Sweep job scheduler started", jobs=len(config.enabled_jobs))

    async def stop(self) -> None:
        if not self._scheduler:
            return
        result = self._scheduler.shutdown(wait=False)
        if inspect.isawaitable(result):
            await result
        self._scheduler = None
        self._is_running = False
        logger.info("Sweep job scheduler stopped")

    def _on_max_instances(self, event: JobEvent) -> None:
        self._observability.record_skipped(event.job_id)
        logger.info("Skipped overlapping sweep run", job_id=event.job_id)

    def _resolve_callable(self, job: JobDefinition) -> Callable[..., Awaitable[Any]]:
        module_name, _, attr = job.task.rpartition(".")
        if not module_name:
            raise ValueError(f"Invalid task path: {job.task}")
        module: ModuleType = import_module(module_name)
        func = getattr(module, attr, None)
        if func is None:
            raise AttributeError(f"Task {job.task} not found")
        if not asyncio.iscoroutinefunction(func):
            raise TypeError(f"Task {job.task} must be an async function")
        return func

    def _wrap_callable(self, func: Callable[..., Awaitable[Any]], job: JobDefinition) -> Callable[[], Awaitable[Any]]:
        async def _runner() -> Any:
            self._observability.record_dispatch(job.id, job.task)
            started_at = time.perf_counter()

            for attempt in range(1, job.max_attempts + 1):
                try:
                    result = await func(session_factory=self._session_factory, **job.kwargs)
                except Exception as exc:
                    if attempt >= job.max_attempts:
                        self._observability.record_failure(
                            job.id,
                            job.task,
                            runtime_seconds=time.perf_counter() - started_at,
                            error=str(exc),
                        )
                        logger.exception("Scheduled sweep failed", job_id=job.id, task=job.task, attempts=attempt)
                        return None

                    delay = job.base_backoff_seconds * (job.backoff_multiplier ** (attempt - 1))
                    if job.max_backoff_seconds:
                        delay = min(delay, job.max_backoff_seconds)
                    self._observability.record_retry(job.id, job.task)
                    logger.warning(
                        "Scheduled sweep retrying",
                        job_id=job.id,
                        task=job.task,
                        attempt=attempt + 1,
                        delay_seconds=delay,
                    )
                    if delay:
                        await asyncio.sleep(delay)
                    continue

                runtime_seconds = time.perf_counter() - started_at
                self._observability.record_success(job.id, job.task, runtime_seconds=runtime_seconds)
                logger.info(
                    "Scheduled sweep completed",
                    job_id=job.id,
                    task=job.task,
                    attempts=attempt,
                    runtime_seconds=runtime_seconds,
                )
                return result
            return None

        return _runner

    def health(self) -> dict[str, object]:
        """Return scheduler health metadata suitable for diagnostics."""

        snapshot = self._observability.snapshot()
        config_jobs = self._config.enabled_jobs if self._config else []
        jobs: list[dict[str, object]] = []
        for job in config_jobs:
            job_metrics = snapshot.jobs.get(job.id)
            jobs.append(
                {
                    "id": job.id,
                    "task": job.task,
                    "cron": job.cron,
                    "max_attempts": job.max_attempts,
                    "metrics": job_metrics.as_dict() if job_metrics else None,
                }
            )
        return {
            "running": self._is_running,
            "configured_jobs": len(config_jobs),
            "totals": snapshot.totals,
            "jobs": jobs,
        }


__all__ = ["SweepJobScheduler"]
