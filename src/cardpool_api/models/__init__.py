"""SQLAlchemy models package."""

from .rate import AmountConstraintEnum, TradeRate  # noqa: F401
from .plan import PlanStatusEnum, TradePlan  # noqa: F401
from .account import AccountStatusEnum, LoginStateEnum, TradeAccount  # noqa: F401
from .exchange_log import AccountExchangeLog, ExchangeStatusEnum  # noqa: F401
from .sweep_run import SweepKindEnum, SweepRun  # noqa: F401

__all__ = [
    "AccountExchangeLog",
    "AccountStatusEnum",
    "AmountConstraintEnum",
    "ExchangeStatusEnum",
    "LoginStateEnum",
    "PlanStatusEnum",
    "SweepKindEnum",
    "SweepRun",
    "TradeAccount",
    "TradePlan",
    "TradeRate",
]
