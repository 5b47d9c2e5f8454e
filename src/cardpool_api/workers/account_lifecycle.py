"""Worker wiring for the account lifecycle sweep."""

from __future__ import annotations

from typing import Any, Callable, Dict

from sqlalchemy.ext.asyncio import AsyncSession

from cardpool_api.core.settings import Settings, settings as default_settings
from cardpool_api.db.session import SessionFactory
from cardpool_api.models.sweep_run import SweepKindEnum
from cardpool_api.services.lifecycle.state_machine import AccountStateMachine
from cardpool_api.services.lifecycle.sweep import AccountLifecycleSweeper
from cardpool_api.services.redemption.collaborators import (
    CompletionNotifier,
    SessionGateway,
    build_completion_notifier,
    build_session_gateway,
)
from cardpool_api.workers.base import SweepWorker


class AccountLifecycleWorker(SweepWorker):
    """Periodically corrects stale, orphaned and idle account states."""

    kind = SweepKindEnum.ACCOUNT_LIFECYCLE.value

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        settings: Settings = default_settings,
        interval_seconds: int | None = None,
        session_gateway_factory: Callable[[], SessionGateway] | None = None,
        notifier_factory: Callable[[], CompletionNotifier] | None = None,
        trigger_label: str = "interval",
    ) -> None:
        super().__init__(
            session_factory,
            interval_seconds=interval_seconds or settings.lifecycle_sweep_interval_seconds,
            trigger_label=trigger_label,
        )
        self._settings = settings
        self._session_gateway_factory = session_gateway_factory or (lambda: build_session_gateway(settings))
        self._notifier_factory = notifier_factory or (lambda: build_completion_notifier(settings))

    async def _sweep(self, session: AsyncSession) -> Dict[str, Any]:
        machine = AccountStateMachine(
            session,
            session_gateway=self._session_gateway_factory(),
            notifier=self._notifier_factory(),
        )
        sweeper = AccountLifecycleSweeper(session, machine, settings=self._settings)
        return await sweeper.run()


__all__ = ["AccountLifecycleWorker"]
