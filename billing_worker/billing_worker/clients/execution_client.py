"""HTTP client for the delegated-transfer execution service.

The execution service signs and broadcasts an on-chain transfer authorised
by a customer's delegation and answers with the transaction hash.  Every
submission carries the redemption key as ``Idempotency-Key`` so a service
that honours it returns the original hash on a repeated key.

Only connection failures (the request never left this host) are retried
here.  A timeout or a 5xx is reported as
:class:`~billing_engine.errors.ExecutionUnavailableError`; whether the
transfer went through is settled later by reconciliation.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from billing_engine.errors import ExecutionRejectedError, ExecutionUnavailableError
from billing_engine.models.settlement import DelegationProof, ExecutionPayload
from billing_engine.retry import RetryPolicy, retry_async

logger = logging.getLogger(__name__)

_REJECTION_STATUSES = frozenset({400, 402, 403, 409, 422})


class ExecutionService(Protocol):
    """Contract the settlement executor depends on."""

    async def submit(
        self,
        proof: DelegationProof,
        payload: ExecutionPayload,
        *,
        idempotency_key: str,
    ) -> str: ...

    async def find_submission(self, idempotency_key: str) -> str | None: ...


class HttpExecutionClient:
    """Async client for the execution service REST API.

    Parameters
    ----------
    base_url:
        Root URL of the execution service.
    api_key:
        Bearer token sent with every request; omitted when empty.
    timeout:
        Per-request timeout in seconds.
    connect_retry:
        Backoff policy for connection errors.
    http_client:
        Optional ``httpx.AsyncClient`` for testing.  A default client is
        created if not provided.
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        timeout: float = 30.0,
        connect_retry: RetryPolicy | None = None,
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
        self._connect_retry = connect_retry or RetryPolicy()

    async def close(self) -> None:
        """Close the HTTP client if we own it."""
        if self._owns_client:
            await self._client.aclose()

    async def submit(
        self,
        proof: DelegationProof,
        payload: ExecutionPayload,
        *,
        idempotency_key: str,
    ) -> str:
        """Submit one delegated transfer and return its transaction hash.

        Raises
        ------
        ExecutionRejectedError
            The service refused the transfer (balance, expired or invalid
            delegation, caveat violation).
        ExecutionUnavailableError
            The service could not be reached, timed out, or failed
            internally.
        """
        body = {
            "delegation": proof.model_dump(mode="json"),
            "execution": payload.model_dump(mode="json"),
        }
        response = await self._request(
            "POST",
            "/v1/redemptions",
            json=body,
            headers={"Idempotency-Key": idempotency_key},
        )

        if response.status_code in _REJECTION_STATUSES:
            detail = self._error_detail(response)
            logger.warning(
                "Execution rejected key=%s status=%d: %s",
                idempotency_key,
                response.status_code,
                detail,
            )
            raise ExecutionRejectedError(detail)
        if response.status_code >= 400:
            raise ExecutionUnavailableError(f"Execution service returned HTTP {response.status_code}")

        tx_hash = self._json(response).get("transaction_hash")
        if not tx_hash:
            # Accepted without a hash: outcome unknown until looked up again.
            raise ExecutionUnavailableError(
                "Execution service accepted the request without a transaction hash",
                timed_out=True,
            )

        logger.info("Execution submitted key=%s tx=%s", idempotency_key, tx_hash)
        return str(tx_hash)

    async def find_submission(self, idempotency_key: str) -> str | None:
        """Return the confirmed transaction hash for *idempotency_key*, if any."""
        response = await self._request("GET", f"/v1/redemptions/{idempotency_key}")
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise ExecutionUnavailableError(f"Execution service lookup returned HTTP {response.status_code}")

        data = self._json(response)
        if data.get("status") != "confirmed":
            return None
        tx_hash = data.get("transaction_hash")
        return str(tx_hash) if tx_hash else None

    # -- internals -----------------------------------------------------------

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return await retry_async(
                lambda: self._client.request(method, url, **kwargs),
                self._connect_retry,
                (httpx.ConnectError,),
                operation=f"execution {method} {url}",
            )
        except httpx.TimeoutException as exc:
            raise ExecutionUnavailableError(f"Execution service timed out: {exc}", timed_out=True) from exc
        except httpx.RequestError as exc:
            raise ExecutionUnavailableError(f"Execution service unreachable: {exc}") from exc

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError as exc:
            raise ExecutionUnavailableError("Execution service returned a non-JSON body", timed_out=True) from exc
        return data if isinstance(data, dict) else {}

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return response.text[:500] or f"HTTP {response.status_code}"
        if isinstance(data, dict):
            return str(data.get("error") or data.get("detail") or data)
        return str(data)
