"""Exchange rate rows carrying the amount constraint of a plan."""

from __future__ import annotations

from enum import Enum

from sqlalchemy import Column, DateTime, Enum as SqlEnum, Integer, JSON, Numeric, String, func

from cardpool_api.db.base import Base


class AmountConstraintEnum(str, Enum):
    ALL = "all"
    MULTIPLE = "multiple"
    FIXED = "fixed"


class TradeRate(Base):
    __tablename__ = "trade_rates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(128), nullable=False)
    country_code = Column(String(8), nullable=False)
    amount_constraint = Column(
        SqlEnum(AmountConstraintEnum, name="amount_constraint_enum"),
        nullable=False,
        default=AmountConstraintEnum.ALL,
    )
    multiple_base = Column(Numeric(12, 2), nullable=True)
    min_amount = Column(Numeric(12, 2), nullable=True)
    fixed_amounts = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
