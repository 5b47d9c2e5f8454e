"""Redemption-capable trading accounts."""

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
    JSON,
    Numeric,
    String,
    func,
)

from cardpool_api.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountStatusEnum(str, Enum):
    WAITING = "waiting"
    PROCESSING = "processing"
    LOCKING = "locking"
    COMPLETED = "completed"


class LoginStateEnum(str, Enum):
    ACTIVE = "active"
    INVALID = "invalid"


class TradeAccount(Base):
    __tablename__ = "trade_accounts"
    __table_args__ = (
        Index("ix_trade_accounts_pool", "status", "login_state", "country_code"),
        Index("ix_trade_accounts_plan", "bound_plan_id", "status"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    account = Column(String(255), nullable=False, unique=True)
    country_code = Column(String(8), nullable=False)
    balance = Column(Numeric(12, 2), nullable=False, default=0)
    status = Column(
        SqlEnum(AccountStatusEnum, name="account_status_enum"),
        nullable=False,
        default=AccountStatusEnum.WAITING,
    )
    login_state = Column(
        SqlEnum(LoginStateEnum, name="login_state_enum"),
        nullable=False,
        default=LoginStateEnum.INVALID,
    )
    bound_plan_id = Column(Integer, ForeignKey("trade_plans.id", ondelete="SET NULL"), nullable=True)
    bound_room_id = Column(String(128), nullable=True)
    current_day = Column(Integer, nullable=True)
    completed_days = Column(JSON, nullable=False, default=dict)
    locked_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
        onupdate=_utcnow,
        nullable=False,
    )
    deleted_at = Column(DateTime(timezone=True), nullable=True)
