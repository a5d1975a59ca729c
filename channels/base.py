"""
Channel transports — base infrastructure for delivering outbound messages.

Provides:
- TransportError: structured error with a retryable flag
- CircuitBreaker: failure-counting breaker with a half-open trial call
- Media: optional attachment carried with a send
- ChannelTransport: abstract "send this text to this phone on this channel"
- TransportRegistry: explicit channel_id → transport lookup owned by the runtime
"""
from __future__ import annotations

import abc
import time
import structlog
from dataclasses import dataclass
from typing import Any, Optional

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class TransportError(Exception):
    """Base exception for all transport operations."""

    def __init__(self, message: str, channel_id: str = "", retryable: bool = True):
        self.channel_id = channel_id
        self.retryable = retryable
        super().__init__(message)


class CircuitOpenError(TransportError):
    def __init__(self, channel_id: str = ""):
        super().__init__(f"Circuit breaker open for {channel_id}", channel_id, retryable=True)


class NoTransportError(TransportError):
    def __init__(self, channel_id: str = ""):
        super().__init__(f"No transport registered for channel {channel_id}", channel_id, retryable=False)


# ══════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    Synchronous circuit breaker with failure counting.

    closed → open (after threshold failures) → half_open (after timeout) →
    closed (on success) or open (on failure).
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0, name: str = ""):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.name = name
        self._state = "closed"
        self._failure_count = 0
        self._opened_at: float = 0.0
        self._total_failures = 0
        self._total_successes = 0

    @property
    def state(self) -> str:
        if self._state == "open":
            if time.monotonic() - self._opened_at >= self.recovery_timeout:
                return "half_open"
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == "open"

    def record_failure(self):
        self._total_failures += 1
        self._failure_count += 1
        if self.state == "half_open" or self._failure_count >= self.failure_threshold:
            self._open()

    def record_success(self):
        self._total_successes += 1
        if self.state == "half_open":
            self._close()
        else:
            self._failure_count = 0

    def _open(self):
        self._state = "open"
        self._opened_at = time.monotonic()
        logger.warning("circuit_opened", breaker=self.name, failures=self._failure_count)

    def _close(self):
        self._state = "closed"
        self._failure_count = 0

    def reset(self):
        self._close()

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "failure_count": self._failure_count,
            "total_failures": self._total_failures,
            "total_successes": self._total_successes,
        }


# ══════════════════════════════════════════════════════════════
#  TRANSPORT — Abstract Base
# ══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Media:
    url: str
    type: str = "image"


class ChannelTransport(abc.ABC):
    """
    Delivers one message on a connected channel.

    `send` returns the provider's delivery id, or raises TransportError.
    """

    @abc.abstractmethod
    async def send(
        self, channel_id: str, phone: str, content: str, media: Optional[Media] = None,
    ) -> str:
        ...

    async def health_check(self) -> dict[str, Any]:
        return {"transport": type(self).__name__}

    async def close(self) -> None:
        pass


# ══════════════════════════════════════════════════════════════
#  TRANSPORT REGISTRY
# ══════════════════════════════════════════════════════════════

class TransportRegistry:
    """
    channel_id → ChannelTransport, with an optional default for channels
    that have no dedicated transport.
    """

    def __init__(self, default: Optional[ChannelTransport] = None):
        self._transports: dict[str, ChannelTransport] = {}
        self._default = default

    def register(self, channel_id: str, transport: ChannelTransport):
        self._transports[channel_id] = transport

    def set_default(self, transport: ChannelTransport):
        self._default = transport

    def get(self, channel_id: str) -> Optional[ChannelTransport]:
        return self._transports.get(channel_id, self._default)

    def channels(self) -> list[str]:
        return list(self._transports.keys())

    async def send(
        self, channel_id: str, phone: str, content: str, media: Optional[Media] = None,
    ) -> str:
        transport = self.get(channel_id)
        if transport is None:
            raise NoTransportError(channel_id)
        return await transport.send(channel_id, phone, content, media)

    async def health_check_all(self) -> dict[str, Any]:
        checks = {ch: await t.health_check() for ch, t in self._transports.items()}
        if self._default is not None:
            checks["*"] = await self._default.health_check()
        return checks

    async def close_all(self):
        transports = list(self._transports.values())
        if self._default is not None:
            transports.append(self._default)
        for t in {id(t): t for t in transports}.values():
            try:
                await t.close()
            except Exception as e:
                logger.error("transport_close_failed", transport=type(t).__name__, error=str(e))
