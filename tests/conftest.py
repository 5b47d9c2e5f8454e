import sys
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

from cardpool_api.app import create_app  # noqa: E402
from cardpool_api.core.settings import Settings  # noqa: E402
from cardpool_api.db.base import Base  # noqa: E402
from cardpool_api.db.session import get_session  # noqa: E402
from cardpool_api.models import (  # noqa: E402
    AccountExchangeLog,
    AccountStatusEnum,
    AmountConstraintEnum,
    ExchangeStatusEnum,
    LoginStateEnum,
    PlanStatusEnum,
    TradeAccount,
    TradePlan,
    TradeRate,
)
from cardpool_api.observability.allocation import get_allocation_store  # noqa: E402
from cardpool_api.observability.scheduler import get_scheduler_store  # noqa: E402


@pytest.fixture(autouse=True)
def reset_stores():
    get_allocation_store().reset()
    get_scheduler_store().reset()
    yield


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        allocation_max_retries=3,
        allocation_retry_backoff_seconds=0,
        pending_timeout_minutes=10,
        pending_batch_grace_minutes=60,
        lifecycle_locking_grace_seconds=30,
        lifecycle_final_day_timeout_hours=48,
        session_gateway_url=None,
        completion_webhook_url=None,
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path: Path):
    # A file database gives every session its own connection, which the
    # concurrent allocation tests rely on.
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'cardpool.db'}",
        future=True,
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def app_with_db(session_factory):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()


async def _persist(session_factory, row: Any) -> Any:
    async with session_factory() as session:
        session.add(row)
        await session.commit()
        await session.refresh(row)
    return row


@pytest.fixture
def make_rate(session_factory):
    async def _make_rate(
        constraint: AmountConstraintEnum = AmountConstraintEnum.ALL,
        *,
        multiple_base: Any = None,
        min_amount: Any = None,
        fixed_amounts: list | None = None,
        country_code: str = "US",
    ) -> TradeRate:
        return await _persist(
            session_factory,
            TradeRate(
                name=f"{country_code}-{constraint.value}",
                country_code=country_code,
                amount_constraint=constraint,
                multiple_base=multiple_base,
                min_amount=min_amount,
                fixed_amounts=fixed_amounts,
            ),
        )

    return _make_rate


@pytest.fixture
def make_plan(session_factory):
    async def _make_plan(
        *,
        total_amount: Any = 600,
        plan_days: int = 1,
        daily_amounts: list | None = None,
        float_amount: Any = 0,
        rate: TradeRate | None = None,
        requires_room_binding: bool = False,
        day_interval_hours: int | None = 24,
        exchange_interval_minutes: int | None = 5,
        status: PlanStatusEnum = PlanStatusEnum.ENABLED,
        country_code: str = "US",
    ) -> TradePlan:
        return await _persist(
            session_factory,
            TradePlan(
                name="plan",
                country_code=country_code,
                rate_id=rate.id if rate is not None else None,
                total_amount=Decimal(str(total_amount)),
                plan_days=plan_days,
                daily_amounts=daily_amounts if daily_amounts is not None else [total_amount],
                float_amount=Decimal(str(float_amount)),
                requires_room_binding=requires_room_binding,
                day_interval_hours=day_interval_hours,
                exchange_interval_minutes=exchange_interval_minutes,
                status=status,
            ),
        )

    return _make_plan


@pytest.fixture
def make_account(session_factory):
    counter = {"value": 0}

    async def _make_account(
        *,
        balance: Any = 0,
        status: AccountStatusEnum = AccountStatusEnum.PROCESSING,
        login_state: LoginStateEnum = LoginStateEnum.ACTIVE,
        country_code: str = "US",
        bound_plan_id: int | None = None,
        bound_room_id: str | None = None,
        current_day: int | None = None,
        locked_at: datetime | None = None,
        deleted_at: datetime | None = None,
    ) -> TradeAccount:
        counter["value"] += 1
        if bound_plan_id is not None and current_day is None:
            current_day = 1
        return await _persist(
            session_factory,
            TradeAccount(
                account=f"account-{counter['value']}@example.test",
                country_code=country_code,
                balance=Decimal(str(balance)),
                status=status,
                login_state=login_state,
                bound_plan_id=bound_plan_id,
                bound_room_id=bound_room_id,
                current_day=current_day,
                completed_days={},
                locked_at=locked_at,
                deleted_at=deleted_at,
            ),
        )

    return _make_account


@pytest.fixture
def add_log(session_factory):
    async def _add_log(
        *,
        code: str,
        amount: Any = 0,
        status: ExchangeStatusEnum = ExchangeStatusEnum.SUCCESS,
        account_id: int | None = None,
        plan_id: int | None = None,
        day: int | None = None,
        batch_id: str | None = None,
        created_at: datetime | None = None,
        resolved_at: datetime | None = None,
    ) -> AccountExchangeLog:
        created = created_at or datetime.now(timezone.utc)
        if resolved_at is None and status == ExchangeStatusEnum.SUCCESS:
            resolved_at = created
        return await _persist(
            session_factory,
            AccountExchangeLog(
                code=code,
                amount=Decimal(str(amount)),
                status=status,
                account_id=account_id,
                plan_id=plan_id,
                day=day,
                batch_id=batch_id,
                created_at=created,
                resolved_at=resolved_at,
            ),
        )

    return _add_log


@pytest.fixture
def fetch_account(session_factory):
    async def _fetch_account(account_id: int) -> TradeAccount:
        async with session_factory() as session:
            account = await session.get(TradeAccount, account_id)
            assert account is not None
            return account

    return _fetch_account


@pytest.fixture
def fetch_log(session_factory):
    async def _fetch_log(log_id: int) -> AccountExchangeLog:
        async with session_factory() as session:
            log = await session.get(AccountExchangeLog, log_id)
            assert log is not None
            return log

    return _fetch_log


class RecordingSessionGateway:
    def __init__(self) -> None:
        self.logins: list[tuple[int, str]] = []
        self.logouts: list[tuple[int, str]] = []

    async def request_login(self, account_id: int, reason: str) -> None:
        self.logins.append((account_id, reason))

    async def request_logout(self, account_id: int, reason: str) -> None:
        self.logouts.append((account_id, reason))


class RecordingNotifier:
    def __init__(self) -> None:
        self.completions: list[dict[str, Any]] = []

    async def notify_completion(
        self,
        account_id: int,
        account: str,
        final_balance: Decimal,
        *,
        plan_id: int | None = None,
        room_id: str | None = None,
    ) -> None:
        self.completions.append(
            {
                "account_id": account_id,
                "account": account,
                "final_balance": final_balance,
                "plan_id": plan_id,
                "room_id": room_id,
            }
        )


@pytest.fixture
def session_gateway() -> RecordingSessionGateway:
    return RecordingSessionGateway()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()
