"""
Integration client — outbound HTTP calls made by integration nodes.

The executor renders url, headers and body from flow variables before
calling in. Network errors and 5xx responses are retried; anything that
still fails surfaces as CollaboratorError.
"""
from __future__ import annotations

import json
import structlog
from typing import Any, Optional

import httpx
from tenacity import (
    AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential,
)

from core.collaborators import CollaboratorError

logger = structlog.get_logger()

_NO_BODY_METHODS = {"GET", "HEAD", "DELETE"}


class _ServerError(Exception):
    def __init__(self, status_code: int):
        self.status_code = status_code
        super().__init__(f"server error {status_code}")


class IntegrationClient:

    def __init__(
        self,
        timeout: float = 15.0,
        max_attempts: int = 2,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_wait: float = 0.5,
    ):
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.retry_wait = retry_wait
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self.client

    async def call(
        self, method: str, url: str, headers: Optional[dict[str, str]] = None, body: str = "",
    ) -> Any:
        """Perform the request and return the parsed JSON body, or its text."""
        method = method.upper()
        headers = dict(headers or {})
        content = None
        if method not in _NO_BODY_METHODS and body:
            content = body
            if not any(k.lower() == "content-type" for k in headers):
                headers["Content-Type"] = "application/json"

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=self.retry_wait, max=5),
                retry=retry_if_exception_type((httpx.TransportError, _ServerError)),
                reraise=True,
            ):
                with attempt:
                    response = await self._request(method, url, headers, content)
        except (httpx.HTTPError, _ServerError) as e:
            logger.warning("integration_call_failed", method=method, url=url, error=str(e))
            raise CollaboratorError(f"{method} {url} failed: {e}", "integration") from e

        logger.info("integration_call_ok", method=method, url=url, status=response.status_code)
        try:
            return response.json()
        except json.JSONDecodeError:
            return response.text

    async def _request(
        self, method: str, url: str, headers: dict[str, str], content: Optional[str],
    ) -> httpx.Response:
        client = await self._get_client()
        response = await client.request(method, url, headers=headers, content=content)
        if response.status_code >= 500:
            raise _ServerError(response.status_code)
        response.raise_for_status()
        return response

    async def close(self):
        if self.client:
            await self.client.aclose()
