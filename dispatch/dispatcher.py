"""
Dispatcher — background consumer of the outbound Dispatch Queue.

Each poll:
  1. expire leases: `dispatching` rows claimed too long ago count as an
     attempt and go back to `pending` (or `failed` at max_attempts)
  2. claim up to batch_size due `pending` rows (atomic flip → `dispatching`)
  3. send each claimed row, bounded by a concurrency semaphore

Per row:
  route missing / daily budget spent   → failed (terminal)
  transport ok                         → sent + message history entry
  transport error, attempts remaining  → pending again at now + retry backoff
  transport error, attempts exhausted  → failed (terminal)
  non-retryable transport error        → failed (terminal)
  any other exception                  → treated as a retryable attempt
"""
from __future__ import annotations

import asyncio
import structlog
import weakref
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from channels.base import Media, TransportError, TransportRegistry
from config.settings import DispatcherConfig
from core.collaborators import ContactDirectory
from database.store_base import BaseFlowStore
from dispatch.queue import DispatchQueue
from models.schemas import MessageHistoryEntry, MessageStatus, OutboundMessage

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Dispatcher:
    """
    Usage:
        dispatcher = Dispatcher(store, queue, transports, directory)
        await dispatcher.run_once()          # one poll, returns rows handled
        await dispatcher.start_background()  # poll forever as a task
        await dispatcher.stop()
    """

    def __init__(
        self,
        store: BaseFlowStore,
        queue: DispatchQueue,
        transports: TransportRegistry,
        directory: ContactDirectory,
        config: DispatcherConfig = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.queue = queue
        self.transports = transports
        self.directory = directory
        self.config = config or DispatcherConfig()
        self.clock = clock
        self._semaphore = asyncio.Semaphore(max(1, self.config.concurrency))
        # Held only while a send is in flight; idle channels drop out
        self._channel_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self._task: Optional[asyncio.Task] = None
        self._last_cleanup: Optional[datetime] = None

    # ── Lifecycle ─────────────────────────────────────────────

    async def start_background(self) -> asyncio.Task:
        self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("dispatcher_stopped")

    async def _run(self):
        logger.info("dispatcher_started",
                    interval=self.config.poll_interval_seconds,
                    batch_size=self.config.batch_size)
        while True:
            try:
                await self.run_once()
                await self._maybe_cleanup()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("dispatcher_poll_error", error=str(e), exc_info=True)
            await asyncio.sleep(self.config.poll_interval_seconds)

    async def _maybe_cleanup(self):
        now = self.clock()
        if self._last_cleanup is None or now - self._last_cleanup >= timedelta(days=1):
            self._last_cleanup = now
            await self.queue.cleanup()

    # ── Poll ──────────────────────────────────────────────────

    async def run_once(self) -> int:
        now = self.clock()
        lease_cutoff = now - timedelta(seconds=self.config.claim_lease_seconds)
        expired = await self.store.release_stale_claims(lease_cutoff, self.config.max_attempts)
        if expired:
            logger.warning("dispatch_leases_expired", count=expired)

        batch = await self.store.claim_due_outbound(now, self.config.batch_size)
        if not batch:
            return 0

        results = await asyncio.gather(
            *(self._dispatch(msg) for msg in batch), return_exceptions=True,
        )
        for msg, result in zip(batch, results):
            if isinstance(result, Exception):
                # Row stays dispatching; lease expiry counts it as an attempt
                logger.error("dispatch_unexpected_error",
                             message_id=msg.id, error=str(result))
        return len(batch)

    # ── Single message ────────────────────────────────────────

    async def _dispatch(self, msg: OutboundMessage):
        async with self._semaphore:
            async with self._channel_lock(msg.channel_id):
                try:
                    delivery_id = await self._attempt(msg)
                except TransportError as e:
                    await self._retry_or_fail(msg, str(e), retryable=e.retryable)
                    return
                except asyncio.TimeoutError:
                    await self._retry_or_fail(msg, "transport send timed out", retryable=True)
                    return
                except Exception as e:
                    logger.error("dispatch_attempt_error", message_id=msg.id,
                                 error_type=type(e).__name__, error=str(e), exc_info=True)
                    await self._retry_or_fail(msg, f"{type(e).__name__}: {e}", retryable=True)
                    return
                if delivery_id is not None:
                    await self._mark_sent(msg, delivery_id)

    async def _attempt(self, msg: OutboundMessage) -> Optional[str]:
        """Route, budget-check and send one message. None when it was failed instead."""
        route = await self.directory.get_route(msg.contact_id)
        if route is None:
            await self._fail(msg, f"no route for contact {msg.contact_id}")
            return None

        sent_today = await self.queue.used_today(msg.channel_id, include_dispatching=False)
        limit = self.queue.daily_limit(msg.channel_id)
        if sent_today >= limit:
            await self._fail(msg, f"daily limit ({limit}) reached for channel {msg.channel_id}")
            return None

        media = Media(msg.media_ref, msg.media_type or "image") if msg.media_ref else None
        return await asyncio.wait_for(
            self.transports.send(msg.channel_id, route.phone, msg.content, media),
            timeout=self.config.send_timeout_seconds,
        )

    def _channel_lock(self, channel_id: str) -> asyncio.Lock:
        lock = self._channel_locks.get(channel_id)
        if lock is None:
            lock = asyncio.Lock()
            self._channel_locks[channel_id] = lock
        return lock

    async def _mark_sent(self, msg: OutboundMessage, delivery_id: str):
        now = self.clock()
        msg.status = MessageStatus.SENT
        msg.sent_at = now
        msg.delivery_id = delivery_id
        msg.last_error = None
        await self.store.save_outbound(msg)
        await self.store.add_history(MessageHistoryEntry(
            contact_id=msg.contact_id, channel_id=msg.channel_id,
            content=msg.content, media_ref=msg.media_ref, media_type=msg.media_type,
            delivery_id=delivery_id, outbound_id=msg.id, timestamp=now,
        ))
        logger.info("message_sent", message_id=msg.id, channel_id=msg.channel_id,
                    contact_id=msg.contact_id, delivery_id=delivery_id,
                    attempts=msg.retry_count + 1)

    async def _retry_or_fail(self, msg: OutboundMessage, error: str, retryable: bool):
        msg.retry_count += 1
        msg.last_error = error
        if not retryable or msg.retry_count >= self.config.max_attempts:
            await self._fail(msg, error)
            return
        msg.status = MessageStatus.PENDING
        msg.claimed_at = None
        msg.scheduled_at = self.clock() + timedelta(seconds=self.config.retry_backoff_seconds)
        await self.store.save_outbound(msg)
        logger.warning("message_send_retry_scheduled",
                       message_id=msg.id, retry_count=msg.retry_count,
                       scheduled_at=msg.scheduled_at.isoformat(), error=error)

    async def _fail(self, msg: OutboundMessage, error: str):
        msg.status = MessageStatus.FAILED
        msg.last_error = error
        msg.claimed_at = None
        await self.store.save_outbound(msg)
        logger.error("message_send_failed", message_id=msg.id,
                     channel_id=msg.channel_id, retry_count=msg.retry_count, error=error)
