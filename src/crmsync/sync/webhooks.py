"""Webhook delivery of completed sync operations to a CRM endpoint.

Posts a JSON body describing the operation with httpx, retrying transport
errors and 5xx responses with tenacity. Delivery never changes the
operation's state; the outcome is reported as a WebhookDeliveryResult.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any
from urllib.parse import urlparse

import httpx
import structlog
from pydantic import BaseModel
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.crmsync.config import Settings, get_settings
from src.crmsync.sync.schemas import SyncOperationRead

logger = structlog.get_logger(__name__)


class WebhookDeliveryResult(BaseModel):
    """Outcome of delivering one operation to a webhook."""

    operation_id: str
    url: str
    delivered: bool
    status_code: int | None = None
    attempts: int = 0
    error: str | None = None


class _RetryableStatus(Exception):
    def __init__(self, response: httpx.Response) -> None:
        super().__init__(f"webhook returned {response.status_code}")
        self.response = response


def build_payload(operation: SyncOperationRead, crm_format: str = "zoho") -> dict[str, Any]:
    """JSON body posted for an operation."""
    return {
        "operation_id": operation.id,
        "operation_type": operation.operation_type,
        "target_record_id": operation.target_record_id,
        "crm_format": crm_format,
        "fields": operation.sync_data,
    }


class WebhookDelivery:
    """Delivers sync operations to CRM webhooks.

    Args:
        settings: Optional settings (timeout, max attempts).
        client: Optional shared httpx.AsyncClient; one is created per
            delivery when omitted.
        sleep: Coroutine used to wait between attempts.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._settings = settings or get_settings()
        self._client = client
        self._sleep = sleep

    async def deliver(
        self,
        operation: SyncOperationRead,
        url: str,
        crm_format: str = "zoho",
    ) -> WebhookDeliveryResult:
        """POST the operation to ``url``.

        Returns:
            WebhookDeliveryResult; delivered=False with an error message on
            an invalid URL, a 4xx response or exhausted retries.
        """
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            logger.warning("webhook.invalid_url", operation_id=operation.id, url=url)
            return WebhookDeliveryResult(
                operation_id=operation.id,
                url=url,
                delivered=False,
                error=f"Invalid webhook URL: {url}",
            )

        payload = build_payload(operation, crm_format)
        attempts = 0
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._settings.WEBHOOK_MAX_ATTEMPTS),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            retry=retry_if_exception_type(
                (httpx.TransportError, _RetryableStatus)
            ),
            sleep=self._sleep,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    attempts += 1
                    response = await self._post(url, payload)
                    if response.status_code >= 500:
                        raise _RetryableStatus(response)
        except RetryError as exc:
            last = exc.last_attempt.exception()
            status_code = last.response.status_code if isinstance(last, _RetryableStatus) else None
            logger.error(
                "webhook.delivery_failed",
                operation_id=operation.id,
                url=url,
                attempts=attempts,
                error=str(last),
            )
            return WebhookDeliveryResult(
                operation_id=operation.id,
                url=url,
                delivered=False,
                status_code=status_code,
                attempts=attempts,
                error=f"Webhook delivery failed: {last}",
            )

        if response.is_success:
            logger.info(
                "webhook.delivered",
                operation_id=operation.id,
                url=url,
                status_code=response.status_code,
                attempts=attempts,
            )
            return WebhookDeliveryResult(
                operation_id=operation.id,
                url=url,
                delivered=True,
                status_code=response.status_code,
                attempts=attempts,
            )

        logger.warning(
            "webhook.rejected",
            operation_id=operation.id,
            url=url,
            status_code=response.status_code,
        )
        return WebhookDeliveryResult(
            operation_id=operation.id,
            url=url,
            delivered=False,
            status_code=response.status_code,
            attempts=attempts,
            error=f"Webhook rejected delivery with status {response.status_code}",
        )

    async def _post(self, url: str, payload: dict[str, Any]) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(url, json=payload)
        async with httpx.AsyncClient(timeout=self._settings.WEBHOOK_TIMEOUT_SECONDS) as client:
            return await client.post(url, json=payload)
