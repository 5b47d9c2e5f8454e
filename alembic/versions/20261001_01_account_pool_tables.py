"""Account pool tables.

Revision ID: 20261001_01
Revises: 
Create Date: 2026-10-01
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261001_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

amount_constraint_enum = sa.Enum("ALL", "MULTIPLE", "FIXED", name="amount_constraint_enum")
plan_status_enum = sa.Enum("ENABLED", "DISABLED", name="plan_status_enum")
account_status_enum = sa.Enum("WAITING", "PROCESSING", "LOCKING", "COMPLETED", name="account_status_enum")
login_state_enum = sa.Enum("ACTIVE", "INVALID", name="login_state_enum")
exchange_status_enum = sa.Enum("PENDING", "SUCCESS", "FAILED", name="exchange_status_enum")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "trade_rates",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("country_code", sa.String(length=8), nullable=False),
        sa.Column("amount_constraint", amount_constraint_enum, nullable=False),
        sa.Column("multiple_base", sa.Numeric(12, 2), nullable=True),
        sa.Column("min_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("fixed_amounts", sa.JSON(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "trade_plans",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("country_code", sa.String(length=8), nullable=False),
        sa.Column("rate_id", sa.Integer(), sa.ForeignKey("trade_rates.id", ondelete="SET NULL"), nullable=True),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("plan_days", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("daily_amounts", sa.JSON(), nullable=False),
        sa.Column("float_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("day_interval_hours", sa.Integer(), nullable=True),
        sa.Column("exchange_interval_minutes", sa.Integer(), nullable=True),
        sa.Column("requires_room_binding", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("status", plan_status_enum, nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "trade_accounts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("account", sa.String(length=255), nullable=False, unique=True),
        sa.Column("country_code", sa.String(length=8), nullable=False),
        sa.Column("balance", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("status", account_status_enum, nullable=False),
        sa.Column("login_state", login_state_enum, nullable=False),
        sa.Column("bound_plan_id", sa.Integer(), sa.ForeignKey("trade_plans.id", ondelete="SET NULL"), nullable=True),
        sa.Column("bound_room_id", sa.String(length=128), nullable=True),
        sa.Column("current_day", sa.Integer(), nullable=True),
        sa.Column("completed_days", sa.JSON(), nullable=False),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_trade_accounts_pool", "trade_accounts", ["status", "login_state", "country_code"])
    op.create_index("ix_trade_accounts_plan", "trade_accounts", ["bound_plan_id", "status"])

    op.create_table(
        "account_exchange_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("trade_accounts.id", ondelete="CASCADE"), nullable=True),
        sa.Column("plan_id", sa.Integer(), nullable=True),
        sa.Column("room_id", sa.String(length=128), nullable=True),
        sa.Column("batch_id", sa.String(length=128), nullable=True),
        sa.Column("code", sa.String(length=255), nullable=False),
        sa.Column("day", sa.Integer(), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("status", exchange_status_enum, nullable=False),
        sa.Column("after_balance", sa.Numeric(12, 2), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    )
    op.create_index("ix_exchange_logs_quota", "account_exchange_logs", ["account_id", "day", "status"])
    op.create_index("ix_exchange_logs_code", "account_exchange_logs", ["code", "status"])
    op.create_index("ix_exchange_logs_pending", "account_exchange_logs", ["status", "created_at"])
    op.create_index("ix_exchange_logs_batch", "account_exchange_logs", ["batch_id", "status"])

    op.create_table(
        "sweep_runs",
        sa.Column("id", sa.dialects.postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("kind", sa.String(length=64), nullable=False),
        sa.Column("triggered_by", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="running"),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_sweep_runs_kind_started", "sweep_runs", ["kind", "started_at"])


def downgrade() -> None:
    op.drop_index("ix_sweep_runs_kind_started", table_name="sweep_runs")
    op.drop_table("sweep_runs")
    op.drop_index("ix_exchange_logs_batch", table_name="account_exchange_logs")
    op.drop_index("ix_exchange_logs_pending", table_name="account_exchange_logs")
    op.drop_index("ix_exchange_logs_code", table_name="account_exchange_logs")
    op.drop_index("ix_exchange_logs_quota", table_name="account_exchange_logs")
    op.drop_table("account_exchange_logs")
    op.drop_index("ix_trade_accounts_plan", table_name="trade_accounts")
    op.drop_index("ix_trade_accounts_pool", table_name="trade_accounts")
    op.drop_table("trade_accounts")
    op.drop_table("trade_plans")
    op.drop_table("trade_rates")

    bind = op.get_bind()
    for enum in (
        exchange_status_enum,
        login_state_enum,
        account_status_enum,
        plan_status_enum,
        amount_constraint_enum,
    ):
        enum.drop(bind, checkfirst=True)
