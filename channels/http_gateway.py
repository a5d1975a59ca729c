"""
HttpGatewayTransport — delivers messages through an HTTP messaging gateway.

Request:
  POST {base_url}/channels/{channel_id}/messages
  Authorization: Bearer {auth_token}
  {"phone": "...", "content": "...", "media": {"url": "...", "type": "image"}}

Response: JSON containing "id" or "message_id" (the delivery id).

5xx responses and network errors are retried with exponential backoff;
4xx responses fail immediately. A circuit breaker stops hammering a
gateway that keeps failing.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx
from tenacity import (
    AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential,
)

from channels.base import (
    ChannelTransport, CircuitBreaker, CircuitOpenError, Media, TransportError,
)
from config.settings import TransportConfig

logger = structlog.get_logger()


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, TransportError) and exc.retryable


class HttpGatewayTransport(ChannelTransport):

    def __init__(
        self,
        config: TransportConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_wait: float = 1.0,
    ):
        self.config = config
        self._transport = transport
        self._retry_wait = retry_wait
        self._breaker = CircuitBreaker(name="http_gateway")
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.auth_token:
                headers["Authorization"] = f"Bearer {self.config.auth_token}"
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=self.config.timeout_seconds,
                transport=self._transport,
            )
        return self.client

    async def send(
        self, channel_id: str, phone: str, content: str, media: Optional[Media] = None,
    ) -> str:
        if self._breaker.is_open:
            raise CircuitOpenError(channel_id)

        payload: dict[str, Any] = {"phone": phone, "content": content}
        if media is not None:
            payload["media"] = {"url": media.url, "type": media.type}

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(max(1, self.config.max_attempts)),
                wait=wait_exponential(multiplier=self._retry_wait, max=10),
                retry=retry_if_exception(_is_retryable),
                reraise=True,
            ):
                with attempt:
                    delivery_id = await self._post(channel_id, payload)
        except TransportError:
            self._breaker.record_failure()
            raise

        self._breaker.record_success()
        return delivery_id

    async def _post(self, channel_id: str, payload: dict[str, Any]) -> str:
        client = await self._get_client()
        try:
            response = await client.post(f"/channels/{channel_id}/messages", json=payload)
        except httpx.HTTPError as e:
            logger.warning("gateway_request_failed", channel_id=channel_id, error=str(e))
            raise TransportError(f"gateway unreachable: {e}", channel_id) from e

        if response.status_code >= 500:
            raise TransportError(
                f"gateway error {response.status_code}", channel_id, retryable=True,
            )
        if response.status_code >= 400:
            raise TransportError(
                f"gateway rejected message: {response.status_code} {response.text[:200]}",
                channel_id, retryable=False,
            )

        try:
            body = response.json()
        except ValueError:
            body = {}
        delivery_id = str(body.get("id") or body.get("message_id") or "")
        if not delivery_id:
            raise TransportError("gateway response missing delivery id", channel_id, retryable=False)
        return delivery_id

    async def health_check(self) -> dict[str, Any]:
        return {"transport": "http_gateway", "circuit_breaker": self._breaker.stats}

    async def close(self):
        if self.client:
            await self.client.aclose()
