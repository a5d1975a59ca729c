"""
Abstract Flow Store — Interface for all storage backends.

Implementations:
  - SqlFlowStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryFlowStore (dict-based, single-process, no persistence)
  - FileFlowStore     (JSON files on disk, single-process, durable)

Every backend gives the same guarantees:
  - save_state is a compare-and-swap on FlowState.version
  - claim_due_outbound / claim_due_timers flip rows atomically, so a row
    is handed to at most one caller
  - claims are leases: a row whose worker died is released after the
    lease window and claimed again
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from models.schemas import (
    FlowDefinition, FlowState, OutboundMessage, FlowTimer,
    MessageHistoryEntry, FlowEvent, QueueStats,
)


class BaseFlowStore(ABC):
    """Interface that all flow store backends must implement."""

    # ── Flow definitions ──────────────────────────────────────

    @abstractmethod
    async def save_flow(self, flow: FlowDefinition) -> FlowDefinition:
        """Publish a definition. Raises FlowVersionExists for a known (id, version)."""

    @abstractmethod
    async def get_flow(self, flow_id: str, version: Optional[int] = None) -> Optional[FlowDefinition]:
        """Return a specific version, or the latest one when version is None."""

    @abstractmethod
    async def list_active_flows(self, organization_id: str) -> list[FlowDefinition]:
        """Latest version of every active flow in the organization."""

    # ── Flow states ───────────────────────────────────────────

    @abstractmethod
    async def get_state(self, contact_id: str, flow_id: str) -> Optional[FlowState]:
        ...

    @abstractmethod
    async def start_state(self, state: FlowState) -> Optional[FlowState]:
        """
        Insert a fresh state, or reset a completed one in place.

        Returns None (and changes nothing) when a non-completed state
        already exists for the same (contact_id, flow_id).
        """

    @abstractmethod
    async def save_state(self, state: FlowState) -> FlowState:
        """
        Persist `state` if the stored version still equals state.version.

        On success state.version is incremented and returned. Raises
        ConcurrencyConflict when another writer got there first.
        """

    @abstractmethod
    async def list_awaiting_states(self, contact_id: str) -> list[FlowState]:
        """Non-completed states of a contact that are waiting for a reply."""

    # ── Outbound queue ────────────────────────────────────────

    @abstractmethod
    async def add_outbound(self, message: OutboundMessage) -> OutboundMessage:
        ...

    @abstractmethod
    async def get_outbound(self, message_id: str) -> Optional[OutboundMessage]:
        ...

    @abstractmethod
    async def save_outbound(self, message: OutboundMessage) -> None:
        ...

    @abstractmethod
    async def claim_due_outbound(self, now: datetime, limit: int) -> list[OutboundMessage]:
        """Flip up to `limit` due pending rows to dispatching, oldest schedule first."""

    @abstractmethod
    async def release_stale_claims(self, claimed_before: datetime, max_attempts: int) -> int:
        """
        Expire dispatching rows claimed before the cutoff.

        An expired lease counts as an attempt: retry_count is incremented,
        and the row goes back to pending, or to failed once retry_count
        reaches max_attempts. Returns the number of rows expired.
        """

    @abstractmethod
    async def count_channel_usage(
        self, channel_id: str, since: datetime, include_dispatching: bool = True,
    ) -> int:
        """Rows sent since `since`, plus rows currently dispatching unless excluded."""

    @abstractmethod
    async def count_channel_sent(self, channel_id: str) -> int:
        """All-time sent rows for the channel."""

    @abstractmethod
    async def purge_outbound(self, created_before: datetime) -> int:
        """Delete sent/failed rows created before the cutoff."""

    @abstractmethod
    async def outbound_stats(self, since: datetime) -> QueueStats:
        ...

    # ── Delay timers ──────────────────────────────────────────

    @abstractmethod
    async def add_timer(self, timer: FlowTimer) -> FlowTimer:
        ...

    @abstractmethod
    async def claim_due_timers(self, now: datetime, limit: int) -> list[FlowTimer]:
        """Flip up to `limit` due pending timers to firing, stamping claimed_at."""

    @abstractmethod
    async def complete_timer(self, timer_id: str) -> None:
        """Mark a firing timer fired. A fired timer is never claimed again."""

    @abstractmethod
    async def release_stale_timers(self, claimed_before: datetime) -> int:
        """Return firing timers claimed before the cutoff to pending."""

    # ── Message history ───────────────────────────────────────

    @abstractmethod
    async def add_history(self, entry: MessageHistoryEntry) -> None:
        ...

    @abstractmethod
    async def recent_history(self, contact_id: str, limit: int = 10) -> list[MessageHistoryEntry]:
        """Last `limit` entries in chronological order."""

    # ── Event log ─────────────────────────────────────────────

    @abstractmethod
    async def add_event(self, event: FlowEvent) -> None:
        ...

    @abstractmethod
    async def list_events(
        self, contact_id: Optional[str] = None, flow_id: Optional[str] = None,
    ) -> list[FlowEvent]:
        ...
