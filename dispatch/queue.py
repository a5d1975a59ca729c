"""
Dispatch Queue — durable outbound messages with humanized send times.

Every outbound message is persisted as `pending` with a scheduled_at in
the future (see dispatch.humanize). The background Dispatcher later claims
due rows and hands them to the channel transport.

Per-channel daily budget: messages sent today (in the configured
timezone) plus messages currently dispatching may not exceed the
channel's daily limit. Enqueueing into an exhausted budget raises
CapacityExceeded.
"""
from __future__ import annotations

import random
import structlog
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo

from config.settings import AntiBanConfig, DispatcherConfig
from database.store_base import BaseFlowStore
from dispatch.humanize import compute_delay_ms
from models.schemas import ChannelStats, OutboundMessage, QueueStats

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CapacityExceeded(Exception):
    """The channel already used its whole daily send budget."""

    def __init__(self, channel_id: str, limit: int):
        self.channel_id = channel_id
        self.limit = limit
        super().__init__(f"Daily message limit ({limit}) reached for channel {channel_id}")


class DispatchQueue:

    def __init__(
        self,
        store: BaseFlowStore,
        antiban: AntiBanConfig = None,
        dispatcher: DispatcherConfig = None,
        tz: str = "UTC",
        clock: Callable[[], datetime] = _utcnow,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.antiban = antiban or AntiBanConfig()
        self.dispatcher = dispatcher or DispatcherConfig()
        self.tz = ZoneInfo(tz)
        self.clock = clock
        self.rng = rng

    # ── Budget ────────────────────────────────────────────────

    def day_start(self, now: Optional[datetime] = None) -> datetime:
        """Midnight of the current day in the configured timezone, as UTC."""
        local = (now or self.clock()).astimezone(self.tz)
        midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
        return midnight.astimezone(timezone.utc)

    def daily_limit(self, channel_id: str) -> int:
        return self.antiban.limit_for(channel_id)

    async def used_today(self, channel_id: str, include_dispatching: bool = True) -> int:
        return await self.store.count_channel_usage(
            channel_id, self.day_start(), include_dispatching=include_dispatching,
        )

    async def has_capacity(self, channel_id: str) -> bool:
        return await self.used_today(channel_id) < self.daily_limit(channel_id)

    # ── Enqueue ───────────────────────────────────────────────

    async def enqueue(
        self,
        channel_id: str,
        contact_id: str,
        content: str,
        media_ref: Optional[str] = None,
        media_type: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> OutboundMessage:
        limit = self.daily_limit(channel_id)
        used = await self.used_today(channel_id)
        if used >= limit:
            logger.warning("dispatch_capacity_exceeded",
                           channel_id=channel_id, contact_id=contact_id,
                           used=used, limit=limit)
            raise CapacityExceeded(channel_id, limit)

        now = self.clock()
        delay_ms = compute_delay_ms(content, self.antiban, self.rng)
        message = OutboundMessage(
            channel_id=channel_id,
            contact_id=contact_id,
            content=content,
            media_ref=media_ref,
            media_type=media_type,
            scheduled_at=now + timedelta(milliseconds=delay_ms),
            metadata=dict(metadata or {}),
            created_at=now,
        )
        await self.store.add_outbound(message)
        logger.info("message_enqueued",
                    message_id=message.id, channel_id=channel_id,
                    contact_id=contact_id, delay_ms=delay_ms)
        return message

    # ── Stats & maintenance ───────────────────────────────────

    async def daily_stats(self, channel_id: str) -> ChannelStats:
        limit = self.daily_limit(channel_id)
        sent_today = await self.used_today(channel_id, include_dispatching=False)
        return ChannelStats(
            channel_id=channel_id,
            daily_limit=limit,
            sent_today=sent_today,
            remaining_today=max(0, limit - sent_today),
            total_sent=await self.store.count_channel_sent(channel_id),
        )

    async def queue_stats(self) -> QueueStats:
        """Counts by status for messages created in the last 24 hours."""
        return await self.store.outbound_stats(self.clock() - timedelta(hours=24))

    async def cleanup(self, older_than_days: Optional[int] = None) -> int:
        """Delete sent/failed messages older than the retention window."""
        days = self.dispatcher.retention_days if older_than_days is None else older_than_days
        removed = await self.store.purge_outbound(self.clock() - timedelta(days=days))
        logger.info("dispatch_queue_cleaned", removed=removed, older_than_days=days)
        return removed
