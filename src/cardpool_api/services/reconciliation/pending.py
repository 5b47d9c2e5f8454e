"""Resolve exchange log rows stuck in PENDING."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from loguru import logger
from sqlalchemy import exists, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from cardpool_api.core.settings import Settings, settings as default_settings
from cardpool_api.domain.timestamps import ensure_aware
from cardpool_api.models.exchange_log import AccountExchangeLog, ExchangeStatusEnum

ALREADY_REDEEMED = "already redeemed elsewhere"
TIMED_OUT = "timed out"
TIMED_OUT_BATCH_HEALTHY = "timed out; batch siblings succeeded"
TIMED_OUT_BATCH_GRACE = "timed out; batch grace period exceeded"


@dataclass(slots=True)
class PendingSweepSummary:
    scanned: int = 0
    failed: int = 0
    already_redeemed: int = 0
    awaiting_batch: int = 0
    dry_run: bool = False
    failed_ids: list[int] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "scanned": self.scanned,
            "failed": self.failed,
            "already_redeemed": self.already_redeemed,
            "awaiting_batch": self.awaiting_batch,
            "dry_run": self.dry_run,
        }


class PendingTransactionReconciler:
    """Fail PENDING rows that can no longer complete.

    A row whose code already succeeded elsewhere is failed at any age. Past the
    standard timeout, rows without a batch fail outright and batched rows fail
    once a sibling succeeded; a batch with no success yet gets the longer grace
    period. Failing a row never retries the redemption.
    """

    def __init__(self, session: AsyncSession, *, settings: Settings = default_settings) -> None:
        self._session = session
        self._settings = settings

    async def run(
        self,
        *,
        now: datetime | None = None,
        dry_run: bool = False,
        batch_size: int | None = None,
    ) -> PendingSweepSummary:
        moment = now or datetime.now(timezone.utc)
        page_size = max(1, batch_size or self._settings.pending_sweep_batch_size)
        timeout_cutoff = moment - timedelta(minutes=self._settings.pending_timeout_minutes)
        grace_cutoff = moment - timedelta(minutes=self._settings.pending_batch_grace_minutes)
        summary = PendingSweepSummary(dry_run=dry_run)

        last_id = 0
        while True:
            rows = await self._next_page(last_id, timeout_cutoff, page_size)
            if not rows:
                break
            for row in rows:
                summary.scanned += 1
                reason = await self._resolution_for(row, timeout_cutoff, grace_cutoff)
                if reason is None:
                    if row.batch_id and ensure_aware(row.created_at) < timeout_cutoff:
                        summary.awaiting_batch += 1
                    continue
                if dry_run:
                    logger.info("Would fail pending exchange", log_id=row.id, code=row.code, reason=reason)
                    applied = True
                else:
                    applied = await self._mark_failed(row.id, reason, moment)
                if applied:
                    summary.failed += 1
                    summary.failed_ids.append(row.id)
                    if reason == ALREADY_REDEEMED:
                        summary.already_redeemed += 1
            last_id = rows[-1].id
            if len(rows) < page_size:
                break

        logger.info("Pending reconciliation finished", **summary.as_dict())
        return summary

    async def _next_page(self, after_id: int, timeout_cutoff: datetime, limit: int) -> list[AccountExchangeLog]:
        sibling = aliased(AccountExchangeLog)
        same_code_success = exists().where(
            sibling.code == AccountExchangeLog.code,
            sibling.id != AccountExchangeLog.id,
            sibling.status == ExchangeStatusEnum.SUCCESS,
        )
        stmt = (
            select(AccountExchangeLog)
            .where(
                AccountExchangeLog.status == ExchangeStatusEnum.PENDING,
                AccountExchangeLog.id > after_id,
                or_(AccountExchangeLog.created_at < timeout_cutoff, same_code_success),
            )
            .order_by(AccountExchangeLog.id)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def _resolution_for(
        self,
        row: AccountExchangeLog,
        timeout_cutoff: datetime,
        grace_cutoff: datetime,
    ) -> str | None:
        if await self._has_success(AccountExchangeLog.code == row.code, exclude_id=row.id):
            return ALREADY_REDEEMED

        created_at = ensure_aware(row.created_at)
        if created_at >= timeout_cutoff:
            return None
        if not row.batch_id:
            return TIMED_OUT
        if await self._has_success(AccountExchangeLog.batch_id == row.batch_id, exclude_id=row.id):
            return TIMED_OUT_BATCH_HEALTHY
        if created_at < grace_cutoff:
            return TIMED_OUT_BATCH_GRACE
        return None

    async def _has_success(self, condition: Any, *, exclude_id: int) -> bool:
        result = await self._session.execute(
            select(AccountExchangeLog.id)
            .where(
                condition,
                AccountExchangeLog.id != exclude_id,
                AccountExchangeLog.status == ExchangeStatusEnum.SUCCESS,
            )
            .limit(1)
        )
        return result.first() is not None

    async def _mark_failed(self, log_id: int, reason: str, now: datetime) -> bool:
        stmt = (
            update(AccountExchangeLog)
            .where(AccountExchangeLog.id == log_id, AccountExchangeLog.status == ExchangeStatusEnum.PENDING)
            .values(status=ExchangeStatusEnum.FAILED, error_message=reason, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.commit()
        applied = result.rowcount == 1
        if applied:
            logger.info("Failed stuck pending exchange", log_id=log_id, reason=reason)
        return applied


__all__ = [
    "ALREADY_REDEEMED",
    "PendingSweepSummary",
    "PendingTransactionReconciler",
    "TIMED_OUT",
    "TIMED_OUT_BATCH_GRACE",
    "TIMED_OUT_BATCH_HEALTHY",
]
