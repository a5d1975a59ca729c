"""
InMemoryFlowStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database server)
  - Full interface compatibility with SqlFlowStore
  - Atomic claims and version checks via a single asyncio.Lock
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import asyncio
import structlog
from collections import defaultdict
from datetime import datetime, timezone
from typing import Optional

from database.store_base import BaseFlowStore
from models.errors import ConcurrencyConflict, FlowVersionExists
from models.schemas import (
    FlowDefinition, FlowState, OutboundMessage, FlowTimer,
    MessageHistoryEntry, FlowEvent, QueueStats,
    MessageStatus, TimerStatus,
)

logger = structlog.get_logger()

_TERMINAL = (MessageStatus.SENT, MessageStatus.FAILED)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryFlowStore(BaseFlowStore):
    """
    Full-featured in-memory store with the same interface as SqlFlowStore.
    Hands out copies so callers never mutate stored records in place.
    """

    def __init__(self):
        self._flows: dict[tuple[str, int], FlowDefinition] = {}        # (id, version) → definition
        self._states: dict[tuple[str, str], FlowState] = {}            # (contact, flow) → state
        self._outbound: dict[str, OutboundMessage] = {}                # id → message
        self._timers: dict[str, FlowTimer] = {}                        # id → timer
        self._history: dict[str, list[MessageHistoryEntry]] = defaultdict(list)  # contact → entries
        self._events: list[FlowEvent] = []
        self._lock = asyncio.Lock()
        logger.info("inmemory_store_initialized")

    # ── Flow definitions ──────────────────────────────────

    async def save_flow(self, flow: FlowDefinition) -> FlowDefinition:
        async with self._lock:
            key = (flow.id, flow.version)
            if key in self._flows:
                raise FlowVersionExists(flow.id, flow.version)
            self._flows[key] = flow
            self._on_change("flows")
        return flow

    async def get_flow(self, flow_id: str, version: Optional[int] = None) -> Optional[FlowDefinition]:
        if version is not None:
            return self._flows.get((flow_id, version))
        versions = [f for (fid, _), f in self._flows.items() if fid == flow_id]
        return max(versions, key=lambda f: f.version) if versions else None

    async def list_active_flows(self, organization_id: str) -> list[FlowDefinition]:
        latest: dict[str, FlowDefinition] = {}
        for flow in self._flows.values():
            if flow.organization_id != organization_id:
                continue
            current = latest.get(flow.id)
            if current is None or flow.version > current.version:
                latest[flow.id] = flow
        return [f for f in latest.values() if f.is_active]

    # ── Flow states ───────────────────────────────────────

    async def get_state(self, contact_id: str, flow_id: str) -> Optional[FlowState]:
        state = self._states.get((contact_id, flow_id))
        return state.model_copy(deep=True) if state else None

    async def start_state(self, state: FlowState) -> Optional[FlowState]:
        async with self._lock:
            existing = self._states.get(state.key)
            if existing is not None and not existing.completed:
                return None
            state.version = existing.version + 1 if existing else 1
            state.updated_at = _utcnow()
            self._states[state.key] = state.model_copy(deep=True)
            self._on_change("states")
        return state

    async def save_state(self, state: FlowState) -> FlowState:
        async with self._lock:
            existing = self._states.get(state.key)
            if existing is None or existing.version != state.version:
                raise ConcurrencyConflict(state.contact_id, state.flow_id, state.version)
            state.version += 1
            state.updated_at = _utcnow()
            self._states[state.key] = state.model_copy(deep=True)
            self._on_change("states")
        return state

    async def list_awaiting_states(self, contact_id: str) -> list[FlowState]:
        return [
            s.model_copy(deep=True) for s in self._states.values()
            if s.contact_id == contact_id and s.awaiting_input and not s.completed
        ]

    # ── Outbound queue ────────────────────────────────────

    async def add_outbound(self, message: OutboundMessage) -> OutboundMessage:
        async with self._lock:
            self._outbound[message.id] = message.model_copy(deep=True)
            self._on_change("outbound")
        return message

    async def get_outbound(self, message_id: str) -> Optional[OutboundMessage]:
        msg = self._outbound.get(message_id)
        return msg.model_copy(deep=True) if msg else None

    async def save_outbound(self, message: OutboundMessage) -> None:
        async with self._lock:
            self._outbound[message.id] = message.model_copy(deep=True)
            self._on_change("outbound")

    async def claim_due_outbound(self, now: datetime, limit: int) -> list[OutboundMessage]:
        async with self._lock:
            due = sorted(
                (m for m in self._outbound.values()
                 if m.status == MessageStatus.PENDING and m.scheduled_at <= now),
                key=lambda m: m.scheduled_at,
            )[:limit]
            for msg in due:
                msg.status = MessageStatus.DISPATCHING
                msg.claimed_at = now
            if due:
                self._on_change("outbound")
            return [m.model_copy(deep=True) for m in due]

    async def release_stale_claims(self, claimed_before: datetime, max_attempts: int) -> int:
        async with self._lock:
            expired = 0
            for msg in self._outbound.values():
                if (msg.status == MessageStatus.DISPATCHING
                        and msg.claimed_at is not None
                        and msg.claimed_at < claimed_before):
                    msg.retry_count += 1
                    msg.last_error = "dispatch lease expired"
                    msg.status = (MessageStatus.FAILED if msg.retry_count >= max_attempts
                                  else MessageStatus.PENDING)
                    msg.claimed_at = None
                    expired += 1
            if expired:
                self._on_change("outbound")
            return expired

    async def count_channel_usage(
        self, channel_id: str, since: datetime, include_dispatching: bool = True,
    ) -> int:
        return sum(
            1 for m in self._outbound.values()
            if m.channel_id == channel_id and (
                (include_dispatching and m.status == MessageStatus.DISPATCHING)
                or (m.status == MessageStatus.SENT and m.sent_at and m.sent_at >= since)
            )
        )

    async def count_channel_sent(self, channel_id: str) -> int:
        return sum(
            1 for m in self._outbound.values()
            if m.channel_id == channel_id and m.status == MessageStatus.SENT
        )

    async def purge_outbound(self, created_before: datetime) -> int:
        async with self._lock:
            doomed = [
                mid for mid, m in self._outbound.items()
                if m.status in _TERMINAL and m.created_at < created_before
            ]
            for mid in doomed:
                del self._outbound[mid]
            if doomed:
                self._on_change("outbound")
            return len(doomed)

    async def outbound_stats(self, since: datetime) -> QueueStats:
        recent = [m for m in self._outbound.values() if m.created_at >= since]
        counts = defaultdict(int)
        for m in recent:
            counts[m.status] += 1
        delays = [
            (m.sent_at - m.scheduled_at).total_seconds()
            for m in recent if m.status == MessageStatus.SENT and m.sent_at
        ]
        return QueueStats(
            pending=counts[MessageStatus.PENDING],
            dispatching=counts[MessageStatus.DISPATCHING],
            sent=counts[MessageStatus.SENT],
            failed=counts[MessageStatus.FAILED],
            avg_delay_seconds=sum(delays) / len(delays) if delays else None,
        )

    # ── Delay timers ──────────────────────────────────────

    async def add_timer(self, timer: FlowTimer) -> FlowTimer:
        async with self._lock:
            self._timers[timer.id] = timer.model_copy(deep=True)
            self._on_change("timers")
        return timer

    async def claim_due_timers(self, now: datetime, limit: int) -> list[FlowTimer]:
        async with self._lock:
            due = sorted(
                (t for t in self._timers.values()
                 if t.status == TimerStatus.PENDING and t.due_at <= now),
                key=lambda t: t.due_at,
            )[:limit]
            for timer in due:
                timer.status = TimerStatus.FIRING
                timer.claimed_at = now
            if due:
                self._on_change("timers")
            return [t.model_copy(deep=True) for t in due]

    async def complete_timer(self, timer_id: str) -> None:
        async with self._lock:
            timer = self._timers.get(timer_id)
            if timer is not None and timer.status != TimerStatus.FIRED:
                timer.status = TimerStatus.FIRED
                self._on_change("timers")

    async def release_stale_timers(self, claimed_before: datetime) -> int:
        async with self._lock:
            released = 0
            for timer in self._timers.values():
                if (timer.status == TimerStatus.FIRING
                        and timer.claimed_at is not None
                        and timer.claimed_at < claimed_before):
                    timer.status = TimerStatus.PENDING
                    timer.claimed_at = None
                    released += 1
            if released:
                self._on_change("timers")
            return released

    # ── Message history ───────────────────────────────────

    async def add_history(self, entry: MessageHistoryEntry) -> None:
        async with self._lock:
            self._history[entry.contact_id].append(entry.model_copy(deep=True))
            self._on_change("history")

    async def recent_history(self, contact_id: str, limit: int = 10) -> list[MessageHistoryEntry]:
        entries = self._history.get(contact_id, [])
        return [e.model_copy(deep=True) for e in entries[-limit:]] if limit > 0 else []

    # ── Event log ─────────────────────────────────────────

    async def add_event(self, event: FlowEvent) -> None:
        async with self._lock:
            self._events.append(event.model_copy(deep=True))
            self._on_change("events")

    async def list_events(
        self, contact_id: Optional[str] = None, flow_id: Optional[str] = None,
    ) -> list[FlowEvent]:
        return [
            e.model_copy(deep=True) for e in self._events
            if (contact_id is None or e.contact_id == contact_id)
            and (flow_id is None or e.flow_id == flow_id)
        ]

    # ── Hooks ─────────────────────────────────────────────

    def _on_change(self, collection: str):
        """Called under the lock after every mutation. Subclasses persist here."""

    # ── Stats (for debugging) ─────────────────────────────

    def stats(self) -> dict[str, int]:
        return {
            "flows": len(self._flows),
            "states": len(self._states),
            "outbound": len(self._outbound),
            "timers": len(self._timers),
            "history": sum(len(v) for v in self._history.values()),
            "events": len(self._events),
        }
