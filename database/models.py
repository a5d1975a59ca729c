"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB — on PG the dialect maps
    JSON to jsonb automatically; on MySQL it uses native JSON; on SQLite
    it serializes to TEXT.
  - String primary keys (uuid hex) — no database-specific sequences.
  - Flow definitions are keyed by (id, version); a published version is
    never rewritten.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    String, Integer, Boolean, DateTime, Text, Index, JSON, UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Flow Definitions
# ──────────────────────────────────────────────────────────────

class FlowDefinitionRow(Base):
    __tablename__ = "flow_definitions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    version: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    organization_id: Mapped[str] = mapped_column(String(64), default="")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    # Full serialized FlowDefinition (nodes, edges, triggers)
    definition: Mapped[Any] = mapped_column(JSON, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_flow_definitions_org_active", "organization_id", "is_active"),
    )


# ──────────────────────────────────────────────────────────────
#  Flow States
# ──────────────────────────────────────────────────────────────

class FlowStateRow(Base):
    __tablename__ = "flow_states"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    contact_id: Mapped[str] = mapped_column(String(64), nullable=False)
    flow_id: Mapped[str] = mapped_column(String(64), nullable=False)
    flow_version: Mapped[int] = mapped_column(Integer, default=1)
    variant_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    organization_id: Mapped[str] = mapped_column(String(64), default="")

    current_node_id: Mapped[str] = mapped_column(String(64), nullable=False)
    variables: Mapped[Any] = mapped_column(JSON, default=dict)
    awaiting_input: Mapped[bool] = mapped_column(Boolean, default=False)
    awaiting_timer: Mapped[bool] = mapped_column(Boolean, default=False)
    timer_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    completed: Mapped[bool] = mapped_column(Boolean, default=False)
    engagement_score: Mapped[int] = mapped_column(Integer, default=50)
    path: Mapped[Any] = mapped_column(JSON, default=list)
    version: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("contact_id", "flow_id", name="uq_flow_states_contact_flow"),
        Index("ix_flow_states_contact_awaiting", "contact_id", "awaiting_input"),
    )


# ──────────────────────────────────────────────────────────────
#  Outbound Message Queue
# ──────────────────────────────────────────────────────────────

class OutboundMessageRow(Base):
    __tablename__ = "outbound_messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    channel_id: Mapped[str] = mapped_column(String(64), nullable=False)
    contact_id: Mapped[str] = mapped_column(String(64), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    media_ref: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    media_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    status: Mapped[str] = mapped_column(String(16), default="pending")
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    delivery_id: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    metadata_: Mapped[Any] = mapped_column("metadata", JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_outbound_status_scheduled", "status", "scheduled_at"),
        Index("ix_outbound_channel_status", "channel_id", "status"),
    )


# ──────────────────────────────────────────────────────────────
#  Durable delay timers
# ──────────────────────────────────────────────────────────────

class FlowTimerRow(Base):
    __tablename__ = "flow_timers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    contact_id: Mapped[str] = mapped_column(String(64), nullable=False)
    flow_id: Mapped[str] = mapped_column(String(64), nullable=False)
    node_id: Mapped[str] = mapped_column(String(64), nullable=False)
    due_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="pending")
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_flow_timers_status_due", "status", "due_at"),
    )


# ──────────────────────────────────────────────────────────────
#  Message History
# ──────────────────────────────────────────────────────────────

class MessageHistoryRow(Base):
    __tablename__ = "message_history"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    contact_id: Mapped[str] = mapped_column(String(64), nullable=False)
    channel_id: Mapped[str] = mapped_column(String(64), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    direction: Mapped[str] = mapped_column(String(16), default="outbound_bot")
    media_ref: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    media_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    delivery_id: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    outbound_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_message_history_contact_ts", "contact_id", "timestamp"),
    )


# ──────────────────────────────────────────────────────────────
#  Flow Event Log
# ──────────────────────────────────────────────────────────────

class FlowEventRow(Base):
    __tablename__ = "flow_event_log"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    contact_id: Mapped[str] = mapped_column(String(64), nullable=False)
    flow_id: Mapped[str] = mapped_column(String(64), default="")
    node_id: Mapped[str] = mapped_column(String(64), default="")
    node_type: Mapped[str] = mapped_column(String(32), default="")
    action: Mapped[str] = mapped_column(String(64), default="")
    payload: Mapped[Any] = mapped_column(JSON, default=dict)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_flow_event_log_flow_ts", "flow_id", "timestamp"),
        Index("ix_flow_event_log_contact", "contact_id"),
    )
