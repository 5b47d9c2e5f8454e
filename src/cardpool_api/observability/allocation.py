"""In-memory allocation observability store for runtime metrics."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Dict


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AllocationEventLog:
    """Stores details about noteworthy allocation events."""

    last_exhausted_at: datetime | None = None
    last_exhausted_plan_id: int | None = None
    last_config_anomaly_at: datetime | None = None
    last_config_anomaly_plan_id: int | None = None
    last_config_anomaly: str | None = None


@dataclass
class AllocationMetricsSnapshot:
    """Serializable snapshot returned to diagnostics consumers."""

    totals: Dict[str, int]
    rejections: Dict[str, int]
    outcomes: Dict[str, int]
    events: AllocationEventLog

    def as_dict(self) -> Dict[str, object]:
        return {
            "totals": self.totals,
            "rejections_by_layer": self.rejections,
            "redemption_outcomes": self.outcomes,
            "events": {
                "last_exhausted_at": self.events.last_exhausted_at.isoformat()
                if self.events.last_exhausted_at
                else None,
                "last_exhausted_plan_id": self.events.last_exhausted_plan_id,
                "last_config_anomaly_at": self.events.last_config_anomaly_at.isoformat()
                if self.events.last_config_anomaly_at
                else None,
                "last_config_anomaly_plan_id": self.events.last_config_anomaly_plan_id,
                "last_config_anomaly": self.events.last_config_anomaly,
            },
        }


@dataclass
class AllocationObservabilityStore:
    """Tracks allocation counters, pipeline rejections and recent events."""

    _lock: Lock = field(default_factory=Lock)
    _totals: Counter = field(default_factory=Counter)
    _rejections: Counter = field(default_factory=Counter)
    _outcomes: Counter = field(default_factory=Counter)
    _events: AllocationEventLog = field(default_factory=AllocationEventLog)

    def record_allocated(self, *, attempts: int) -> None:
        with self._lock:
            self._totals["allocated"] += 1
            if attempts > 1:
                self._totals["retried_allocations"] += 1

    def record_contention(self) -> None:
        with self._lock:
            self._totals["contention_losses"] += 1

    def record_exhausted(self, plan_id: int | None) -> None:
        with self._lock:
            self._totals["exhausted"] += 1
            self._events.last_exhausted_at = _utcnow()
            self._events.last_exhausted_plan_id = plan_id

    def record_rejections(self, layer: str, count: int) -> None:
        if count <= 0:
            return
        with self._lock:
            self._rejections[layer] += count

    def record_config_anomaly(self, plan_id: int | None, message: str) -> None:
        with self._lock:
            self._totals["config_anomalies"] += 1
            self._events.last_config_anomaly_at = _utcnow()
            self._events.last_config_anomaly_plan_id = plan_id
            self._events.last_config_anomaly = message

    def record_outcome(self, outcome: str) -> None:
        with self._lock:
            self._outcomes[outcome] += 1

    def snapshot(self) -> AllocationMetricsSnapshot:
        with self._lock:
            totals = dict(self._totals)
            rejections = dict(self._rejections)
            outcomes = dict(self._outcomes)
            events_copy = AllocationEventLog(
                last_exhausted_at=self._events.last_exhausted_at,
                last_exhausted_plan_id=self._events.last_exhausted_plan_id,
                last_config_anomaly_at=self._events.last_config_anomaly_at,
                last_config_anomaly_plan_id=self._events.last_config_anomaly_plan_id,
                last_config_anomaly=self._events.last_config_anomaly,
            )
        return AllocationMetricsSnapshot(
            totals=totals,
            rejections=rejections,
            outcomes=outcomes,
            events=events_copy,
        )

    def reset(self) -> None:
        with self._lock:
            self._totals.clear()
            self._rejections.clear()
            self._outcomes.clear()
            self._events = AllocationEventLog()


_ALLOCATION_STORE = AllocationObservabilityStore()


def get_allocation_store() -> AllocationObservabilityStore:
    return _ALLOCATION_STORE


__all__ = [
    "AllocationMetricsSnapshot",
    "AllocationObservabilityStore",
    "get_allocation_store",
]
