"""Per-attempt redemption records; the source of truth for quota sums."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
)

from cardpool_api.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExchangeStatusEnum(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class AccountExchangeLog(Base):
    __tablename__ = "account_exchange_logs"
    __table_args__ = (
        Index("ix_exchange_logs_quota", "account_id", "day", "status"),
        Index("ix_exchange_logs_code", "code", "status"),
        Index("ix_exchange_logs_pending", "status", "created_at"),
        Index("ix_exchange_logs_batch", "batch_id", "status"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(Integer, ForeignKey("trade_accounts.id", ondelete="CASCADE"), nullable=True)
    plan_id = Column(Integer, nullable=True)
    room_id = Column(String(128), nullable=True)
    batch_id = Column(String(128), nullable=True)
    code = Column(String(255), nullable=False)
    day = Column(Integer, nullable=True)
    amount = Column(Numeric(12, 2), nullable=False, default=0)
    status = Column(
        SqlEnum(ExchangeStatusEnum, name="exchange_status_enum"),
        nullable=False,
        default=ExchangeStatusEnum.PENDING,
    )
    after_balance = Column(Numeric(12, 2), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
        onupdate=_utcnow,
        nullable=False,
    )
