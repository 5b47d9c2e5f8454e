from datetime import datetime, timezone

import pytest
from httpx import ASGITransport, AsyncClient

from cardpool_api.core.settings import settings
from cardpool_api.models.sweep_run import SweepKindEnum, SweepRun
from cardpool_api.workers import PendingReconciliationWorker


@pytest.mark.asyncio
async def test_healthz_is_static(app_with_db) -> None:
    app, _ = app_with_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_readyz_reports_component_statuses(app_with_db) -> None:
    app, _ = app_with_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/readyz")

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] in {"ready", "degraded", "error"}
    components = payload["components"]
    assert set(components) == {"pending_reconciler", "account_lifecycle", "sweep_scheduler"}
    for component in components.values():
        assert component["status"] in {"disabled", "ready", "error", "starting", "degraded"}
        assert "last_success_at" in component


@pytest.mark.asyncio
async def test_readyz_surfaces_failed_worker_runs(app_with_db, monkeypatch) -> None:
    app, session_factory = app_with_db
    monkeypatch.setattr(settings, "pending_reconciler_enabled", True)
    monkeypatch.setattr(settings, "job_scheduler_enabled", False)
    app.state.pending_reconciliation_worker = PendingReconciliationWorker(session_factory)

    async with session_factory() as session:
        session.add(
            SweepRun(
                kind=SweepKindEnum.PENDING_RECONCILIATION.value,
                triggered_by="interval",
                status="failed",
                error_message="database is locked",
                metadata_json={},
                completed_at=datetime.now(timezone.utc),
            )
        )
        await session.commit()

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/readyz")

    payload = response.json()
    assert payload["status"] == "error"
    component = payload["components"]["pending_reconciler"]
    assert component["status"] == "error"
    assert component["detail"] == "database is locked"
    assert component["last_error_at"] is not None
