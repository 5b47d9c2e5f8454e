from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest

from cardpool_api.domain.plans import build_plan_config
from cardpool_api.models import AccountStatusEnum, ExchangeStatusEnum, LoginStateEnum
from cardpool_api.models.plan import PlanStatusEnum
from cardpool_api.services.lifecycle.progression import WaitingAction, decide_waiting
from cardpool_api.services.lifecycle.state_machine import AccountStateMachine
from cardpool_api.services.lifecycle.sweep import AccountLifecycleSweeper


@pytest.fixture
def run_sweep(session_factory, session_gateway, notifier, test_settings):
    async def _run_sweep(now: datetime | None = None) -> dict[str, int]:
        async with session_factory() as session:
            machine = AccountStateMachine(session, session_gateway=session_gateway, notifier=notifier)
            sweeper = AccountLifecycleSweeper(session, machine, settings=test_settings)
            return await sweeper.run(now=now)

    return _run_sweep


@pytest.fixture
def two_day_plan(make_plan):
    async def _two_day_plan():
        return await make_plan(
            total_amount=1000,
            plan_days=2,
            daily_amounts=[400, 600],
            float_amount=50,
            day_interval_hours=24,
            exchange_interval_minutes=5,
        )

    return _two_day_plan


@pytest.mark.asyncio
async def test_stale_locks_are_released(
    two_day_plan, make_account, add_log, fetch_account, run_sweep
) -> None:
    plan = await two_day_plan()
    now = datetime.now(timezone.utc)
    stale = await make_account(status=AccountStatusEnum.LOCKING, bound_plan_id=plan.id, locked_at=now - timedelta(minutes=5))
    fresh = await make_account(status=AccountStatusEnum.LOCKING, bound_plan_id=plan.id, locked_at=now)
    in_flight = await make_account(
        status=AccountStatusEnum.LOCKING,
        bound_plan_id=plan.id,
        locked_at=now - timedelta(minutes=5),
    )
    await add_log(code="IN-FLIGHT", status=ExchangeStatusEnum.PENDING, account_id=in_flight.id, amount=50)

    summary = await run_sweep(now)

    assert summary["stale_locks_released"] == 1
    assert (await fetch_account(stale.id)).status == AccountStatusEnum.PROCESSING
    assert (await fetch_account(stale.id)).locked_at is None
    assert (await fetch_account(fresh.id)).status == AccountStatusEnum.LOCKING
    assert (await fetch_account(in_flight.id)).status == AccountStatusEnum.LOCKING

    second = await run_sweep(now)
    assert second.get("stale_locks_released", 0) == 0


@pytest.mark.asyncio
async def test_orphaned_plan_reference_is_unbound(make_account, fetch_account, run_sweep, session_gateway) -> None:
    orphan = await make_account(status=AccountStatusEnum.PROCESSING, bound_plan_id=9999)
    dangling_day = await make_account(status=AccountStatusEnum.WAITING, current_day=3)

    summary = await run_sweep()

    assert summary["orphans_unbound"] == 2
    for account_id in (orphan.id, dangling_day.id):
        refreshed = await fetch_account(account_id)
        assert refreshed.status == AccountStatusEnum.WAITING
        assert refreshed.bound_plan_id is None
        assert refreshed.current_day is None
    assert {account_id for account_id, _ in session_gateway.logouts} == {orphan.id, dangling_day.id}


@pytest.mark.asyncio
async def test_day_pointer_is_clamped_to_plan_length(two_day_plan, make_account, fetch_account, run_sweep) -> None:
    plan = await two_day_plan()
    account = await make_account(status=AccountStatusEnum.PROCESSING, bound_plan_id=plan.id, current_day=5)

    summary = await run_sweep()

    assert summary["days_clamped"] == 1
    refreshed = await fetch_account(account.id)
    assert refreshed.current_day == 2
    assert refreshed.status == AccountStatusEnum.PROCESSING


@pytest.mark.asyncio
async def test_processing_accounts_are_settled(
    make_plan, two_day_plan, make_account, add_log, fetch_account, run_sweep, notifier
) -> None:
    now = datetime.now(timezone.utc)
    single_day = await make_plan(total_amount=600)
    plan = await two_day_plan()
    full = await make_account(balance=600, bound_plan_id=single_day.id)
    quota_met = await make_account(balance=400, bound_plan_id=plan.id)
    await add_log(code="Q-1", amount=400, account_id=quota_met.id, day=1, created_at=now - timedelta(minutes=1))
    pending = await make_account(balance=1000, bound_plan_id=plan.id)
    await add_log(code="Q-2", status=ExchangeStatusEnum.PENDING, amount=50, account_id=pending.id, day=1)

    summary = await run_sweep(now)

    assert summary["completed"] == 1
    assert summary["moved_to_waiting"] == 1
    assert summary["skipped_pending"] >= 1
    assert (await fetch_account(full.id)).status == AccountStatusEnum.COMPLETED
    assert (await fetch_account(quota_met.id)).status == AccountStatusEnum.WAITING
    assert (await fetch_account(pending.id)).status == AccountStatusEnum.PROCESSING
    assert [entry["account_id"] for entry in notifier.completions] == [full.id]


@pytest.mark.asyncio
async def test_waiting_accounts_are_reevaluated(
    two_day_plan, make_account, add_log, fetch_account, run_sweep, session_gateway
) -> None:
    now = datetime.now(timezone.utc)
    plan = await two_day_plan()

    fresh = await make_account(
        status=AccountStatusEnum.WAITING,
        login_state=LoginStateEnum.INVALID,
        bound_plan_id=plan.id,
    )
    cooling = await make_account(balance=100, status=AccountStatusEnum.WAITING, bound_plan_id=plan.id)
    await add_log(code="W-1", amount=100, account_id=cooling.id, day=1, created_at=now - timedelta(minutes=2))
    next_day = await make_account(balance=400, status=AccountStatusEnum.WAITING, bound_plan_id=plan.id)
    await add_log(code="W-2", amount=400, account_id=next_day.id, day=1, created_at=now - timedelta(hours=25))
    resting = await make_account(balance=400, status=AccountStatusEnum.WAITING, bound_plan_id=plan.id)
    await add_log(code="W-3", amount=400, account_id=resting.id, day=1, created_at=now - timedelta(hours=3))
    expired = await make_account(balance=500, status=AccountStatusEnum.WAITING, bound_plan_id=plan.id, current_day=2)
    await add_log(code="W-4", amount=100, account_id=expired.id, day=2, created_at=now - timedelta(hours=49))
    unmet = await make_account(balance=100, status=AccountStatusEnum.WAITING, bound_plan_id=plan.id)
    await add_log(code="W-5", amount=100, account_id=unmet.id, day=1, created_at=now - timedelta(minutes=10))

    summary = await run_sweep(now)

    assert summary["activated"] == 2
    assert summary["days_advanced"] == 1
    assert summary["timed_out"] == 1

    assert (await fetch_account(fresh.id)).status == AccountStatusEnum.PROCESSING
    assert session_gateway.logins == [(fresh.id, "no successful exchange yet")]
    assert (await fetch_account(cooling.id)).status == AccountStatusEnum.WAITING
    advanced = await fetch_account(next_day.id)
    assert advanced.status == AccountStatusEnum.PROCESSING
    assert advanced.current_day == 2
    assert (await fetch_account(resting.id)).status == AccountStatusEnum.WAITING
    timed_out = await fetch_account(expired.id)
    assert timed_out.status == AccountStatusEnum.COMPLETED
    assert timed_out.bound_plan_id is None
    assert (await fetch_account(unmet.id)).status == AccountStatusEnum.PROCESSING


@pytest.mark.asyncio
async def test_unbound_waiting_account_with_balance_is_activated(make_account, fetch_account, run_sweep) -> None:
    funded = await make_account(balance=25, status=AccountStatusEnum.WAITING)
    empty = await make_account(balance=0, status=AccountStatusEnum.WAITING)

    summary = await run_sweep()

    assert summary["activated"] == 1
    assert (await fetch_account(funded.id)).status == AccountStatusEnum.PROCESSING
    assert (await fetch_account(empty.id)).status == AccountStatusEnum.WAITING


@pytest.mark.asyncio
async def test_completed_accounts_still_signed_in_are_logged_out(
    make_account, fetch_account, run_sweep, session_gateway
) -> None:
    account = await make_account(status=AccountStatusEnum.COMPLETED, login_state=LoginStateEnum.ACTIVE)

    summary = await run_sweep()

    assert summary["logouts_requested"] == 1
    assert session_gateway.logouts == [(account.id, "plan completed")]
    assert (await fetch_account(account.id)).login_state == LoginStateEnum.INVALID
    assert (await run_sweep()).get("logouts_requested", 0) == 0


def _config(**overrides):
    values = dict(
        id=1,
        country_code="US",
        total_amount=Decimal("1000"),
        plan_days=3,
        daily_amounts=[300, 300, 400],
        float_amount=Decimal("0"),
        day_interval_hours=24,
        exchange_interval_minutes=5,
        requires_room_binding=False,
        status=PlanStatusEnum.ENABLED,
        rate=None,
    )
    values.update(overrides)
    return build_plan_config(SimpleNamespace(**values))


@pytest.mark.parametrize(
    "balance, day, spent, since_success, expected",
    [
        (Decimal("1000"), 1, Decimal("0"), None, WaitingAction.COMPLETE_TOTAL),
        (Decimal("0"), 1, Decimal("0"), None, WaitingAction.ACTIVATE),
        (Decimal("300"), 1, Decimal("300"), timedelta(minutes=1), WaitingAction.HOLD),
        (Decimal("100"), 1, Decimal("100"), timedelta(minutes=6), WaitingAction.ACTIVATE),
        (Decimal("300"), 1, Decimal("300"), timedelta(hours=2), WaitingAction.HOLD),
        (Decimal("300"), 1, Decimal("300"), timedelta(hours=24), WaitingAction.ADVANCE_DAY),
        (Decimal("900"), 3, Decimal("300"), timedelta(hours=30), WaitingAction.ACTIVATE),
        (Decimal("900"), 3, Decimal("300"), timedelta(hours=48), WaitingAction.COMPLETE_TIMEOUT),
    ],
)
def test_decide_waiting(balance, day, spent, since_success, expected) -> None:
    now = datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc)
    decision = decide_waiting(
        _config(),
        balance=balance,
        day=day,
        spent_today=spent,
        last_success=now - since_success if since_success is not None else None,
        now=now,
        final_day_timeout_hours=48,
    )

    assert decision.action == expected
    if expected == WaitingAction.ADVANCE_DAY:
        assert decision.day == day + 1
