"""Outbound customer notifications.

Rendering and delivery belong to an external notification service; this
module only names a template, passes its data, and says who receives it.
Delivery is retried with backoff on transport errors and 5xx responses.
Anything still failing raises :class:`~billing_engine.errors.NotificationError`,
which dunning records against the attempt without touching payment state.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Protocol

import httpx
from pydantic import BaseModel

from billing_engine.errors import NotificationError
from billing_engine.retry import RetryPolicy, retry_async

logger = logging.getLogger(__name__)


class Channel(str, Enum):
    EMAIL = "email"
    IN_APP = "in_app"


class Recipient(BaseModel):
    """Who a notification is for; the service resolves addresses itself."""

    workspace_id: str
    customer_id: str
    channel: Channel = Channel.EMAIL


class NotificationSender(Protocol):
    async def send(self, template: str, data: dict[str, Any], recipient: Recipient) -> None: ...


class _ServerError(Exception):
    """Internal marker so 5xx responses are retried like transport errors."""


class HttpNotificationSender:
    """Deliver notifications through the notification service REST API.

    Parameters
    ----------
    base_url:
        Root URL of the notification service.
    api_key:
        Bearer token sent with every request; omitted when empty.
    timeout:
        Per-request timeout in seconds.
    retry:
        Backoff policy for transport errors and 5xx responses.
    http_client:
        Optional ``httpx.AsyncClient`` for testing.
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        timeout: float = 10.0,
        retry: RetryPolicy | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = http_client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout),
            headers=headers,
        )
        self._owns_client = http_client is None
        self._retry = retry or RetryPolicy()

    async def close(self) -> None:
        """Close the HTTP client if we own it."""
        if self._owns_client:
            await self._client.aclose()

    async def send(self, template: str, data: dict[str, Any], recipient: Recipient) -> None:
        body = {
            "template": template,
            "channel": recipient.channel.value,
            "recipient": recipient.model_dump(mode="json"),
            "data": data,
        }

        async def _post() -> httpx.Response:
            response = await self._client.post("/v1/notifications", json=body)
            if response.status_code >= 500:
                raise _ServerError(f"HTTP {response.status_code}")
            return response

        try:
            response = await retry_async(
                _post,
                self._retry,
                (httpx.TransportError, _ServerError),
                operation=f"notification {template}",
            )
        except (httpx.TransportError, _ServerError) as exc:
            raise NotificationError(f"Notification '{template}' not delivered: {exc}") from exc

        if response.status_code >= 400:
            raise NotificationError(f"Notification '{template}' rejected: HTTP {response.status_code}")

        logger.info(
            "Notification sent template=%s channel=%s customer=%s",
            template,
            recipient.channel.value,
            recipient.customer_id,
        )
