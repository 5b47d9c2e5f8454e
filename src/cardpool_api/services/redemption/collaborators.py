"""Outbound collaborator contracts and their default implementations."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Protocol, Sequence

import httpx
from loguru import logger

from cardpool_api.core.settings import Settings


@dataclass(slots=True)
class RedemptionCallResult:
    """What the external redemption call reported for one code."""

    success: bool
    amount: Decimal
    new_balance: Decimal | None = None
    error_message: str | None = None


@dataclass(slots=True)
class ReservedAccount:
    """Account handed to the redemption gateway while it holds LOCKING."""

    account_id: int
    account: str
    country_code: str
    plan_id: int
    day: int
    balance: Decimal


class RedemptionGateway(Protocol):
    """Performs the external redemption against a reserved account."""

    async def execute_redemption(self, account: ReservedAccount, code: str) -> RedemptionCallResult:
        ...


class SessionGateway(Protocol):
    """Fire-and-forget login/logout requests for account sessions."""

    async def request_login(self, account_id: int, reason: str) -> None:
        ...

    async def request_logout(self, account_id: int, reason: str) -> None:
        ...


class CompletionNotifier(Protocol):
    """Announces that an account reached the end of its plan."""

    async def notify_completion(
        self,
        account_id: int,
        account: str,
        final_balance: Decimal,
        *,
        plan_id: int | None = None,
        room_id: str | None = None,
    ) -> None:
        ...


class LoggingSessionGateway:
    """Session gateway that only records requests in the log stream."""

    async def request_login(self, account_id: int, reason: str) -> None:
        logger.info("Login requested", account_id=account_id, reason=reason)

    async def request_logout(self, account_id: int, reason: str) -> None:
        logger.info("Logout requested", account_id=account_id, reason=reason)


class LoggingCompletionNotifier:
    async def notify_completion(
        self,
        account_id: int,
        account: str,
        final_balance: Decimal,
        *,
        plan_id: int | None = None,
        room_id: str | None = None,
    ) -> None:
        logger.info(
            "Account plan completed",
            account_id=account_id,
            account=account,
            final_balance=str(final_balance),
            plan_id=plan_id,
            room_id=room_id,
        )


class HttpSessionGateway:
    """POST login/logout requests to the session management service.

    Delivery failures are logged and dropped; retrying is the remote
    service's job.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._http_client = http_client

    async def request_login(self, account_id: int, reason: str) -> None:
        await self._post("login", account_id, reason)

    async def request_logout(self, account_id: int, reason: str) -> None:
        await self._post("logout", account_id, reason)

    async def _post(self, action: str, account_id: int, reason: str) -> None:
        close_client = False
        client = self._http_client
        if client is None:
            client = httpx.AsyncClient(timeout=self._timeout)
            close_client = True
        try:
            response = await client.post(
                f"{self._base_url}/accounts/{account_id}/{action}",
                json={"account_id": account_id, "reason": reason},
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning(
                "Session gateway request failed",
                action=action,
                account_id=account_id,
                error=str(exc),
            )
        finally:
            if close_client:
                await client.aclose()


class WebhookCompletionNotifier:
    """Send completion notices to a chat webhook, once per configured channel."""

    def __init__(
        self,
        webhook_url: str,
        *,
        channels: Sequence[str] = (),
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._webhook_url = webhook_url
        self._channels = list(channels)
        self._http_client = http_client

    async def notify_completion(
        self,
        account_id: int,
        account: str,
        final_balance: Decimal,
        *,
        plan_id: int | None = None,
        room_id: str | None = None,
    ) -> None:
        text = f"Account {account} completed its plan with balance {final_balance}"
        payloads: list[dict[str, Any]] = []
        targets = self._channels or ([room_id] if room_id else [None])
        for channel in targets:
            payload: dict[str, Any] = {
                "text": text,
                "account_id": account_id,
                "plan_id": plan_id,
                "final_balance": str(final_balance),
            }
            if channel:
                payload["channel"] = channel
            payloads.append(payload)

        close_client = False
        client = self._http_client
        if client is None:
            client = httpx.AsyncClient(timeout=10)
            close_client = True
        try:
            for payload in payloads:
                try:
                    response = await client.post(self._webhook_url, json=payload)
                    response.raise_for_status()
                except httpx.HTTPError as exc:
                    logger.warning(
                        "Completion webhook failed",
                        account_id=account_id,
                        channel=payload.get("channel"),
                        error=str(exc),
                    )
        finally:
            if close_client:
                await client.aclose()


def build_session_gateway(settings: Settings) -> SessionGateway:
    if settings.session_gateway_url:
        return HttpSessionGateway(
            settings.session_gateway_url,
            timeout_seconds=settings.session_gateway_timeout_seconds,
        )
    return LoggingSessionGateway()


def build_completion_notifier(settings: Settings) -> CompletionNotifier:
    if settings.completion_webhook_url:
        return WebhookCompletionNotifier(
            settings.completion_webhook_url,
            channels=settings.completion_webhook_channels,
        )
    return LoggingCompletionNotifier()


__all__ = [
    "CompletionNotifier",
    "HttpSessionGateway",
    "LoggingCompletionNotifier",
    "LoggingSessionGateway",
    "RedemptionCallResult",
    "RedemptionGateway",
    "ReservedAccount",
    "SessionGateway",
    "WebhookCompletionNotifier",
    "build_completion_notifier",
    "build_session_gateway",
]
