"""
MockTransport — records sends in memory.

Used for development, tests and dry runs. Can be told to fail the next N
sends, or every send, to exercise the dispatcher's retry path.
"""
from __future__ import annotations

import uuid
import structlog
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from channels.base import ChannelTransport, Media, TransportError

logger = structlog.get_logger()


@dataclass
class SentRecord:
    channel_id: str
    phone: str
    content: str
    media: Optional[Media]
    delivery_id: str
    sent_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class MockTransport(ChannelTransport):

    def __init__(self, fail_times: int = 0, always_fail: bool = False):
        self.sent: list[SentRecord] = []
        self.attempts = 0
        self._fail_times = fail_times
        self._always_fail = always_fail

    def fail_next(self, times: int = 1):
        self._fail_times = times

    async def send(
        self, channel_id: str, phone: str, content: str, media: Optional[Media] = None,
    ) -> str:
        self.attempts += 1
        if self._always_fail or self._fail_times > 0:
            if self._fail_times > 0:
                self._fail_times -= 1
            raise TransportError(f"mock send failed for {phone}", channel_id)

        delivery_id = f"mock-{uuid.uuid4().hex[:12]}"
        self.sent.append(SentRecord(channel_id, phone, content, media, delivery_id))
        logger.info("mock_transport_sent", channel_id=channel_id, phone=phone,
                    content_length=len(content), delivery_id=delivery_id)
        return delivery_id

    async def health_check(self) -> dict[str, Any]:
        return {"transport": "mock", "sent": len(self.sent), "attempts": self.attempts}
