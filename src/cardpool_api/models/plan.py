"""Multi-day spending plans shared by many accounts."""

from __future__ import annotations

from enum import Enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    func,
)
from sqlalchemy.orm import relationship

from cardpool_api.db.base import Base


class PlanStatusEnum(str, Enum):
    ENABLED = "enabled"
    DISABLED = "disabled"


class TradePlan(Base):
    __tablename__ = "trade_plans"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(128), nullable=False)
    country_code = Column(String(8), nullable=False)
    rate_id = Column(Integer, ForeignKey("trade_rates.id", ondelete="SET NULL"), nullable=True)
    total_amount = Column(Numeric(12, 2), nullable=False)
    plan_days = Column(Integer, nullable=False, default=1)
    daily_amounts = Column(JSON, nullable=False, default=list)
    float_amount = Column(Numeric(12, 2), nullable=False, default=0)
    day_interval_hours = Column(Integer, nullable=True)
    exchange_interval_minutes = Column(Integer, nullable=True)
    requires_room_binding = Column(Boolean, nullable=False, default=False)
    status = Column(
        SqlEnum(PlanStatusEnum, name="plan_status_enum"),
        nullable=False,
        default=PlanStatusEnum.ENABLED,
    )
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    rate = relationship("TradeRate", lazy="joined")
