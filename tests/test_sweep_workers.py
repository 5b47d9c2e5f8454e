import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cardpool_api.jobs.account_lifecycle import run_account_lifecycle_sweep
from cardpool_api.jobs.pending_reconciliation import run_pending_reconciliation
from cardpool_api.models import AccountStatusEnum, ExchangeStatusEnum
from cardpool_api.models.sweep_run import SweepKindEnum, SweepRun
from cardpool_api.workers.account_lifecycle import AccountLifecycleWorker
from cardpool_api.workers.base import SweepWorker
from cardpool_api.workers.pending_reconciliation import PendingReconciliationWorker


async def _runs(session_factory, kind: str | None = None) -> list[SweepRun]:
    async with session_factory() as session:
        stmt = select(SweepRun).order_by(SweepRun.started_at)
        if kind is not None:
            stmt = stmt.where(SweepRun.kind == kind)
        return list((await session.execute(stmt)).scalars().all())


class BrokenWorker(SweepWorker):
    kind = "broken"

    async def _sweep(self, session: AsyncSession) -> Dict[str, Any]:
        raise RuntimeError("sweep exploded")


class BlockingWorker(SweepWorker):
    kind = "blocking"

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def _sweep(self, session: AsyncSession) -> Dict[str, Any]:
        self.entered.set()
        await self.release.wait()
        return {"processed": 1}


@pytest.mark.asyncio
async def test_reconciliation_worker_records_completed_run(
    session_factory, add_log, fetch_log, test_settings
) -> None:
    stuck = await add_log(
        code="W-1",
        status=ExchangeStatusEnum.PENDING,
        created_at=datetime.now(timezone.utc) - timedelta(minutes=30),
    )

    worker = PendingReconciliationWorker(session_factory, settings=test_settings)
    summary = await worker.run_once(triggered_by="manual")

    assert summary["failed"] == 1
    assert (await fetch_log(stuck.id)).status == ExchangeStatusEnum.FAILED
    [run] = await _runs(session_factory, SweepKindEnum.PENDING_RECONCILIATION.value)
    assert run.status == "completed"
    assert run.triggered_by == "manual"
    assert run.completed_at is not None
    assert run.metadata_json["counters"]["failed"] == 1


@pytest.mark.asyncio
async def test_lifecycle_worker_uses_injected_collaborators(
    session_factory, make_account, fetch_account, test_settings, session_gateway, notifier
) -> None:
    account = await make_account(status=AccountStatusEnum.PROCESSING, bound_plan_id=4242)

    worker = AccountLifecycleWorker(
        session_factory,
        settings=test_settings,
        session_gateway_factory=lambda: session_gateway,
        notifier_factory=lambda: notifier,
    )
    summary = await worker.run_once()

    assert summary["orphans_unbound"] == 1
    assert (await fetch_account(account.id)).status == AccountStatusEnum.WAITING
    assert session_gateway.logouts[0][0] == account.id
    [run] = await _runs(session_factory, SweepKindEnum.ACCOUNT_LIFECYCLE.value)
    assert run.triggered_by == "interval"
    assert run.status == "completed"


@pytest.mark.asyncio
async def test_failed_sweep_is_recorded_and_reraised(session_factory) -> None:
    worker = BrokenWorker(session_factory, interval_seconds=60)

    with pytest.raises(RuntimeError, match="sweep exploded"):
        await worker.run_once(triggered_by="manual")

    [run] = await _runs(session_factory, "broken")
    assert run.status == "failed"
    assert run.error_message == "sweep exploded"
    assert run.metadata_json["error"] == "sweep exploded"


@pytest.mark.asyncio
async def test_overlapping_run_is_skipped(session_factory) -> None:
    worker = BlockingWorker(session_factory, interval_seconds=60)

    first = asyncio.create_task(worker.run_once())
    await asyncio.wait_for(worker.entered.wait(), timeout=5)

    assert await worker.run_once() == {"skipped": 1}

    worker.release.set()
    assert await first == {"processed": 1}
    assert len(await _runs(session_factory, "blocking")) == 1


@pytest.mark.asyncio
async def test_worker_loop_starts_and_stops(session_factory) -> None:
    worker = BlockingWorker(session_factory, interval_seconds=3600)
    worker.release.set()

    worker.start()
    assert worker.is_running
    await asyncio.wait_for(worker.entered.wait(), timeout=5)
    await worker.stop()

    assert not worker.is_running
    [run] = await _runs(session_factory, "blocking")
    assert run.status == "completed"


@pytest.mark.asyncio
async def test_job_entrypoints_run_their_workers(session_factory, add_log, fetch_log) -> None:
    stuck = await add_log(
        code="JOB-1",
        status=ExchangeStatusEnum.PENDING,
        created_at=datetime.now(timezone.utc) - timedelta(hours=2),
    )

    dry = await run_pending_reconciliation(session_factory=session_factory, dry_run=True, triggered_by="cli")
    assert dry["dry_run"] is True
    assert (await fetch_log(stuck.id)).status == ExchangeStatusEnum.PENDING

    applied = await run_pending_reconciliation(session_factory=session_factory, batch_size=10)
    assert applied["failed"] == 1
    assert (await fetch_log(stuck.id)).status == ExchangeStatusEnum.FAILED

    lifecycle = await run_account_lifecycle_sweep(session_factory=session_factory)
    assert "skipped" not in lifecycle

    runs = await _runs(session_factory)
    assert [run.triggered_by for run in runs] == ["cli", "scheduler", "scheduler"]
    assert {run.kind for run in runs} == {
        SweepKindEnum.PENDING_RECONCILIATION.value,
        SweepKindEnum.ACCOUNT_LIFECYCLE.value,
    }
