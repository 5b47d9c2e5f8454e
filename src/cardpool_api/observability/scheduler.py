"""Observability store for sweep scheduler metrics."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Dict


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class SweepJobSnapshot:
    """Serializable snapshot of one scheduled sweep."""

    job_id: str
    task: str
    totals: Dict[str, int]
    runtime_seconds: float
    last_started_at: datetime | None
    last_success_at: datetime | None
    last_error_at: datetime | None
    last_error: str | None
    last_skipped_at: datetime | None

    def as_dict(self) -> Dict[str, object]:
        return {
            "job_id": self.job_id,
            "task": self.task,
            "totals": self.totals,
            "runtime_seconds": self.runtime_seconds,
            "last_started_at": _iso(self.last_started_at),
            "last_success_at": _iso(self.last_success_at),
            "last_error_at": _iso(self.last_error_at),
            "last_error": self.last_error,
            "last_skipped_at": _iso(self.last_skipped_at),
        }


@dataclass
class SweepSchedulerSnapshot:
    totals: Dict[str, int]
    jobs: Dict[str, SweepJobSnapshot]

    def as_dict(self) -> Dict[str, object]:
        return {
            "totals": self.totals,
            "jobs": {job_id: snapshot.as_dict() for job_id, snapshot in self.jobs.items()},
        }


@dataclass
class _JobState:
    job_id: str
    task: str
    runs: int = 0
    success: int = 0
    failures: int = 0
    retries: int = 0
    skipped_overlaps: int = 0
    consecutive_failures: int = 0
    runtime_seconds: float = 0.0
    last_started_at: datetime | None = None
    last_success_at: datetime | None = None
    last_error_at: datetime | None = None
    last_error: str | None = None
    last_skipped_at: datetime | None = None

    def snapshot(self) -> SweepJobSnapshot:
        return SweepJobSnapshot(
            job_id=self.job_id,
            task=self.task,
            totals={
                "runs": self.runs,
                "success": self.success,
                "failures": self.failures,
                "retries": self.retries,
                "skipped_overlaps": self.skipped_overlaps,
                "consecutive_failures": self.consecutive_failures,
            },
            runtime_seconds=self.runtime_seconds,
            last_started_at=self.last_started_at,
            last_success_at=self.last_success_at,
            last_error_at=self.last_error_at,
            last_error=self.last_error,
            last_skipped_at=self.last_skipped_at,
        )


class SweepSchedulerObservabilityStore:
    """Tracks dispatches, failures and skipped overlapping runs per job."""

    def __init__(self) -> None:
        self._lock: Lock = Lock()
        self._jobs: Dict[str, _JobState] = {}

    def reset(self) -> None:
        with self._lock:
            self._jobs.clear()

    def _state(self, job_id: str, task: str | None = None) -> _JobState:
        state = self._jobs.get(job_id)
        if state is None:
            state = _JobState(job_id=job_id, task=task or "")
            self._jobs[job_id] = state
        elif task:
            state.task = task
        return state

    def record_dispatch(self, job_id: str, task: str) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.runs += 1
            state.last_started_at = _utcnow()

    def record_retry(self, job_id: str, task: str) -> None:
        with self._lock:
            self._state(job_id, task).retries += 1

    def record_success(self, job_id: str, task: str, *, runtime_seconds: float) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.success += 1
            state.runtime_seconds += runtime_seconds
            state.last_success_at = _utcnow()
            state.consecutive_failures = 0
            state.last_error = None

    def record_failure(self, job_id: str, task: str, *, runtime_seconds: float, error: str) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.failures += 1
            state.consecutive_failures += 1
            state.runtime_seconds += runtime_seconds
            state.last_error = error
            state.last_error_at = _utcnow()

    def record_skipped(self, job_id: str) -> None:
        with self._lock:
            state = self._state(job_id)
            state.skipped_overlaps += 1
            state.last_skipped_at = _utcnow()

    def snapshot(self) -> SweepSchedulerSnapshot:
        with self._lock:
            jobs = {job_id: state.snapshot() for job_id, state in self._jobs.items()}
            totals = {
                "runs": sum(state.runs for state in self._jobs.values()),
                "success": sum(state.success for state in self._jobs.values()),
                "failures": sum(state.failures for state in self._jobs.values()),
                "skipped_overlaps": sum(state.skipped_overlaps for state in self._jobs.values()),
            }
        return SweepSchedulerSnapshot(totals=totals, jobs=jobs)


_SCHEDULER_STORE = SweepSchedulerObservabilityStore()


def get_scheduler_store() -> SweepSchedulerObservabilityStore:
    return _SCHEDULER_STORE


__all__ = [
    "SweepSchedulerObservabilityStore",
    "SweepSchedulerSnapshot",
    "get_scheduler_store",
]
