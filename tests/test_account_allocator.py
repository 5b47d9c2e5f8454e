import asyncio
import random
from decimal import Decimal

import pytest
from sqlalchemy import update

from cardpool_api.domain.constraints import AllAmounts, fixed_amounts, is_reservable, multiple_of
from cardpool_api.models import AccountStatusEnum, AmountConstraintEnum, TradeAccount
from cardpool_api.observability.allocation import get_allocation_store
from cardpool_api.services.allocation import allocator as allocator_module
from cardpool_api.services.allocation.allocator import AccountAllocator
from cardpool_api.services.allocation.lock import try_lock_account
from cardpool_api.services.allocation.types import (
    AccountAllocated,
    AllocationRequest,
    NoAccountAvailable,
    PlanNotFoundError,
)


@pytest.mark.asyncio
async def test_lock_sets_assignment_and_locked_at(session_factory, make_plan, make_account, fetch_account) -> None:
    plan = await make_plan(total_amount=600)
    account = await make_account(balance=0)
    request = AllocationRequest(amount=Decimal("50"), country_code="US", plan_id=plan.id, room_id="room-a")

    async with session_factory() as session:
        assert await try_lock_account(session, account.id, request)
        assert not await try_lock_account(session, account.id, request)

    locked = await fetch_account(account.id)
    assert locked.status == AccountStatusEnum.LOCKING
    assert locked.bound_plan_id == plan.id
    assert locked.bound_room_id == "room-a"
    assert locked.current_day == 1
    assert locked.locked_at is not None


@pytest.mark.asyncio
async def test_lock_keeps_existing_day_pointer(session_factory, make_plan, make_account, fetch_account) -> None:
    plan = await make_plan(total_amount=1000, plan_days=3, daily_amounts=[300, 300, 400])
    account = await make_account(balance=300, bound_plan_id=plan.id, current_day=2)
    request = AllocationRequest(amount=Decimal("50"), country_code="US", plan_id=plan.id)

    async with session_factory() as session:
        assert await try_lock_account(session, account.id, request)

    assert (await fetch_account(account.id)).current_day == 2


@pytest.mark.asyncio
async def test_lock_refuses_account_bound_to_another_plan(session_factory, make_plan, make_account) -> None:
    plan = await make_plan(total_amount=600)
    other = await make_plan(total_amount=600)
    account = await make_account(balance=0, bound_plan_id=other.id)
    request = AllocationRequest(amount=Decimal("50"), country_code="US", plan_id=plan.id)

    async with session_factory() as session:
        assert not await try_lock_account(session, account.id, request)


@pytest.mark.asyncio
async def test_allocator_returns_highest_ranked_account(
    session_factory, make_rate, make_plan, make_account, test_settings, fetch_account
) -> None:
    rate = await make_rate(AmountConstraintEnum.MULTIPLE, multiple_base=50, min_amount=50)
    plan = await make_plan(total_amount=600, rate=rate)
    await make_account(balance=100)
    nearly_full = await make_account(balance=550)

    allocator = AccountAllocator(session_factory, settings=test_settings)
    result = await allocator.allocate(AllocationRequest(amount=Decimal("50"), country_code="US", plan_id=plan.id))

    assert isinstance(result, AccountAllocated)
    assert result.account_id == nearly_full.id
    assert result.day == 1
    assert result.attempts == 1
    assert (await fetch_account(nearly_full.id)).status == AccountStatusEnum.LOCKING
    assert get_allocation_store().snapshot().totals["allocated"] == 1


@pytest.mark.asyncio
async def test_allocator_reports_no_account_without_raising(
    session_factory, make_plan, make_account, test_settings
) -> None:
    plan = await make_plan(total_amount=600)
    await make_account(balance=0, status=AccountStatusEnum.WAITING)

    allocator = AccountAllocator(session_factory, settings=test_settings)
    result = await allocator.allocate(AllocationRequest(amount=Decimal("50"), country_code="US", plan_id=plan.id))

    assert isinstance(result, NoAccountAvailable)
    assert result.plan_id == plan.id
    assert result.reason == "no eligible account"
    snapshot = get_allocation_store().snapshot()
    assert snapshot.totals["exhausted"] == 1
    assert snapshot.events.last_exhausted_plan_id == plan.id


@pytest.mark.asyncio
async def test_allocator_raises_for_missing_plan(session_factory, test_settings) -> None:
    allocator = AccountAllocator(session_factory, settings=test_settings)

    with pytest.raises(PlanNotFoundError):
        await allocator.allocate(AllocationRequest(amount=Decimal("50"), country_code="US", plan_id=999))


@pytest.mark.asyncio
async def test_allocator_moves_past_accounts_taken_concurrently(
    session_factory, make_plan, make_account, test_settings, monkeypatch
) -> None:
    plan = await make_plan(total_amount=600)
    preferred = await make_account(balance=500)
    fallback = await make_account(balance=100)

    real_lock = allocator_module.try_lock_account

    async def racing_lock(session, account_id, request, **kwargs):
        if account_id == preferred.id:
            # Another caller wins the preferred account first.
            async with session_factory() as rival:
                assert await real_lock(rival, account_id, request)
        return await real_lock(session, account_id, request, **kwargs)

    monkeypatch.setattr(allocator_module, "try_lock_account", racing_lock)

    allocator = AccountAllocator(session_factory, settings=test_settings)
    result = await allocator.allocate(AllocationRequest(amount=Decimal("50"), country_code="US", plan_id=plan.id))

    assert isinstance(result, AccountAllocated)
    assert result.account_id == fallback.id
    assert get_allocation_store().snapshot().totals["contention_losses"] == 1


@pytest.mark.asyncio
async def test_concurrent_allocations_lock_single_account_once(
    session_factory, make_plan, make_account, test_settings
) -> None:
    plan = await make_plan(total_amount=600)
    only = await make_account(balance=0)

    allocator = AccountAllocator(session_factory, settings=test_settings)
    request = AllocationRequest(amount=Decimal("50"), country_code="US", plan_id=plan.id)
    results = await asyncio.gather(*(allocator.allocate(request) for _ in range(8)))

    winners = [result for result in results if isinstance(result, AccountAllocated)]
    losers = [result for result in results if isinstance(result, NoAccountAvailable)]
    assert len(winners) == 1
    assert winners[0].account_id == only.id
    assert len(losers) == 7


@pytest.mark.asyncio
async def test_two_requests_for_only_account(session_factory, make_plan, make_account, test_settings) -> None:
    plan = await make_plan(total_amount=600)
    await make_account(balance=0)

    allocator = AccountAllocator(session_factory, settings=test_settings)
    request = AllocationRequest(amount=Decimal("100"), country_code="US", plan_id=plan.id)
    first, second = await asyncio.gather(allocator.allocate(request), allocator.allocate(request))

    outcomes = sorted(type(result).__name__ for result in (first, second))
    assert outcomes == ["AccountAllocated", "NoAccountAvailable"]


@pytest.mark.asyncio
async def test_allocated_accounts_never_strand_remainder(
    session_factory, make_rate, make_plan, make_account, test_settings
) -> None:
    rng = random.Random(20240611)
    multiple_rate = await make_rate(AmountConstraintEnum.MULTIPLE, multiple_base=25, min_amount=50)
    fixed_rate = await make_rate(AmountConstraintEnum.FIXED, fixed_amounts=[25, 50, 100, 200])
    plans = [
        (await make_plan(total_amount=500, rate=multiple_rate), multiple_of(25, 50)),
        (await make_plan(total_amount=500, rate=fixed_rate), fixed_amounts([25, 50, 100, 200])),
        (await make_plan(total_amount=500), AllAmounts()),
    ]
    accounts = []
    for _ in range(12):
        accounts.append(await make_account(balance=rng.choice([0, 100, 250, 275, 300, 400, 425, 450, 475])))
    balances = {account.id: Decimal(account.balance) for account in accounts}

    allocator = AccountAllocator(session_factory, settings=test_settings)
    for _ in range(30):
        plan, constraint = rng.choice(plans)
        amount = Decimal(rng.choice([25, 50, 60, 75, 100, 125, 150, 200]))
        result = await allocator.allocate(AllocationRequest(amount=amount, country_code="US", plan_id=plan.id))
        if not isinstance(result, AccountAllocated):
            continue
        remainder = Decimal(str(plan.total_amount)) - balances[result.account_id] - amount
        assert remainder >= 0
        assert is_reservable(remainder, constraint)

        # Release the reservation so the account stays in the pool.
        async with session_factory() as session:
            await session.execute(
                update(TradeAccount)
                .where(TradeAccount.id == result.account_id)
                .values(status=AccountStatusEnum.PROCESSING, bound_plan_id=None, current_day=None, locked_at=None)
            )
            await session.commit()


@pytest.mark.asyncio
async def test_lock_refuses_when_balance_moved(session_factory, make_plan, make_account, fetch_account) -> None:
    plan = await make_plan(total_amount=600)
    account = await make_account(balance=500)
    request = AllocationRequest(amount=Decimal("100"), country_code="US", plan_id=plan.id)

    async with session_factory() as session:
        assert not await try_lock_account(
            session, account.id, request, expected_balance=Decimal("450"), max_balance=Decimal("500")
        )
        assert not await try_lock_account(
            session, account.id, request, expected_balance=Decimal("500"), max_balance=Decimal("450")
        )
        assert await try_lock_account(
            session, account.id, request, expected_balance=Decimal("500"), max_balance=Decimal("500")
        )

    assert (await fetch_account(account.id)).status == AccountStatusEnum.LOCKING


@pytest.mark.asyncio
async def test_balance_raised_after_ranking_is_not_reserved(
    session_factory, make_plan, make_account, fetch_account, test_settings, monkeypatch
) -> None:
    plan = await make_plan(total_amount=600)
    only = await make_account(balance=500)

    real_lock = allocator_module.try_lock_account

    async def lock_after_rival_redemption(session, account_id, request, **kwargs):
        # A rival redemption settles on the account between ranking and locking.
        async with session_factory() as rival:
            await rival.execute(update(TradeAccount).where(TradeAccount.id == account_id).values(balance=550))
            await rival.commit()
        return await real_lock(session, account_id, request, **kwargs)

    monkeypatch.setattr(allocator_module, "try_lock_account", lock_after_rival_redemption)

    allocator = AccountAllocator(session_factory, settings=test_settings)
    result = await allocator.allocate(AllocationRequest(amount=Decimal("100"), country_code="US", plan_id=plan.id))

    assert isinstance(result, NoAccountAvailable)
    refreshed = await fetch_account(only.id)
    assert refreshed.status == AccountStatusEnum.PROCESSING
    assert Decimal(refreshed.balance) == Decimal("550")
    assert get_allocation_store().snapshot().totals["contention_losses"] == 1


@pytest.mark.asyncio
async def test_moved_balance_falls_back_to_next_candidate(
    session_factory, make_plan, make_account, test_settings, monkeypatch
) -> None:
    plan = await make_plan(total_amount=600)
    exact_fill = await make_account(balance=500)
    fallback = await make_account(balance=100)

    real_lock = allocator_module.try_lock_account

    async def lock_after_rival_redemption(session, account_id, request, **kwargs):
        if account_id == exact_fill.id:
            async with session_factory() as rival:
                await rival.execute(update(TradeAccount).where(TradeAccount.id == account_id).values(balance=550))
                await rival.commit()
        return await real_lock(session, account_id, request, **kwargs)

    monkeypatch.setattr(allocator_module, "try_lock_account", lock_after_rival_redemption)

    allocator = AccountAllocator(session_factory, settings=test_settings)
    result = await allocator.allocate(AllocationRequest(amount=Decimal("100"), country_code="US", plan_id=plan.id))

    assert isinstance(result, AccountAllocated)
    assert result.account_id == fallback.id
    assert result.balance + Decimal("100") <= Decimal("600")
