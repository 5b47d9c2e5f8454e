"""Audit rows for background sweeps."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, Index, JSON, String, Text, func
from sqlalchemy.dialects.postgresql import UUID

from cardpool_api.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SweepKindEnum(str, Enum):
    PENDING_RECONCILIATION = "pending_reconciliation"
    ACCOUNT_LIFECYCLE = "account_lifecycle"


class SweepRun(Base):
    """One execution of a reconciliation or lifecycle sweep."""

    __tablename__ = "sweep_runs"
    __table_args__ = (Index("ix_sweep_runs_kind_started", "kind", "started_at"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    kind = Column(String(64), nullable=False)
    triggered_by = Column(String(64), nullable=False)
    status = Column(String(32), nullable=False, default="running")
    metadata_json = Column("metadata", JSON, nullable=False, default=dict)
    error_message = Column(Text, nullable=True)
    started_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
