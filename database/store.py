"""
SqlFlowStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Portability notes:
  - Atomic claims use a guarded UPDATE ... WHERE status = 'pending' per row
    and check rowcount, instead of PG-only SELECT ... FOR UPDATE SKIP LOCKED.
  - Optimistic state writes use UPDATE ... WHERE version = :expected.
  - SQLite returns naive datetimes; everything read back is normalized to UTC.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Optional

from sqlalchemy import select, update, delete, func, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import (
    Base, FlowDefinitionRow, FlowStateRow, OutboundMessageRow, FlowTimerRow,
    MessageHistoryRow, FlowEventRow,
)
from database.session import get_session, create_session_factory, init_db, close_db
from database.store_base import BaseFlowStore
from models.errors import ConcurrencyConflict, FlowVersionExists
from models.schemas import (
    FlowDefinition, FlowState, OutboundMessage, FlowTimer,
    MessageHistoryEntry, FlowEvent, QueueStats,
    MessageStatus, TimerStatus,
)

logger = structlog.get_logger()

_TERMINAL = [MessageStatus.SENT.value, MessageStatus.FAILED.value]


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SqlFlowStore(BaseFlowStore):
    """
    Persistent flow store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.

    Uses the application-wide engine by default; pass `db_url` to bind
    the store to its own engine.
    """

    def __init__(self, db_url: Optional[str] = None):
        self._engine = None
        self._factory = None
        if db_url:
            self._engine, self._factory = create_session_factory(db_url)

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        if self._factory is None:
            async with get_session() as db:
                yield db
            return
        async with self._factory() as db:
            try:
                yield db
                await db.commit()
            except Exception:
                await db.rollback()
                raise

    async def init_schema(self) -> None:
        """Create tables on the store's own engine."""
        if self._engine is None:
            await init_db()
            return
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        if self._engine is None:
            await close_db()
            return
        await self._engine.dispose()

    # ── Flow definitions ───────────────────────────────────

    async def save_flow(self, flow: FlowDefinition) -> FlowDefinition:
        async with self._session() as db:
            existing = await db.get(FlowDefinitionRow, (flow.id, flow.version))
            if existing:
                raise FlowVersionExists(flow.id, flow.version)
            db.add(FlowDefinitionRow(
                id=flow.id, version=flow.version,
                organization_id=flow.organization_id,
                is_active=flow.is_active,
                definition=flow.model_dump(mode="json"),
            ))
        return flow

    async def get_flow(self, flow_id: str, version: Optional[int] = None) -> Optional[FlowDefinition]:
        async with self._session() as db:
            stmt = select(FlowDefinitionRow).where(FlowDefinitionRow.id == flow_id)
            if version is not None:
                stmt = stmt.where(FlowDefinitionRow.version == version)
            stmt = stmt.order_by(FlowDefinitionRow.version.desc()).limit(1)
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return FlowDefinition.load(row.definition) if row else None

    async def list_active_flows(self, organization_id: str) -> list[FlowDefinition]:
        async with self._session() as db:
            stmt = (
                select(FlowDefinitionRow)
                .where(FlowDefinitionRow.organization_id == organization_id)
                .order_by(FlowDefinitionRow.id, FlowDefinitionRow.version)
            )
            result = await db.execute(stmt)
            latest: dict[str, FlowDefinitionRow] = {}
            for row in result.scalars():
                latest[row.id] = row
            return [FlowDefinition.load(r.definition) for r in latest.values() if r.is_active]

    # ── Flow states ────────────────────────────────────────

    async def get_state(self, contact_id: str, flow_id: str) -> Optional[FlowState]:
        async with self._session() as db:
            row = await self._state_row(db, contact_id, flow_id)
            return self._row_to_state(row) if row else None

    async def start_state(self, state: FlowState) -> Optional[FlowState]:
        try:
            async with self._session() as db:
                row = await self._state_row(db, state.contact_id, state.flow_id)
                if row is None:
                    state.version = 1
                    db.add(FlowStateRow(**self._state_values(state)))
                    await db.flush()
                    return state
                if not row.completed:
                    return None
                expected = row.version
                state.version = expected + 1
                state.updated_at = datetime.now(timezone.utc)
                result = await db.execute(
                    update(FlowStateRow)
                    .where(and_(
                        FlowStateRow.id == row.id,
                        FlowStateRow.version == expected,
                        FlowStateRow.completed.is_(True),
                    ))
                    .values(**self._state_values(state))
                )
                return state if result.rowcount == 1 else None
        except IntegrityError:
            logger.info("flow_state_start_raced",
                        contact_id=state.contact_id, flow_id=state.flow_id)
            return None

    async def save_state(self, state: FlowState) -> FlowState:
        expected = state.version
        now = datetime.now(timezone.utc)
        async with self._session() as db:
            values = self._state_values(state)
            values.update(version=expected + 1, updated_at=now)
            result = await db.execute(
                update(FlowStateRow)
                .where(and_(
                    FlowStateRow.contact_id == state.contact_id,
                    FlowStateRow.flow_id == state.flow_id,
                    FlowStateRow.version == expected,
                ))
                .values(**values)
            )
            if result.rowcount != 1:
                raise ConcurrencyConflict(state.contact_id, state.flow_id, expected)
        state.version = expected + 1
        state.updated_at = now
        return state

    async def list_awaiting_states(self, contact_id: str) -> list[FlowState]:
        async with self._session() as db:
            stmt = select(FlowStateRow).where(and_(
                FlowStateRow.contact_id == contact_id,
                FlowStateRow.awaiting_input.is_(True),
                FlowStateRow.completed.is_(False),
            ))
            result = await db.execute(stmt)
            return [self._row_to_state(r) for r in result.scalars().all()]

    # ── Outbound queue ─────────────────────────────────────

    async def add_outbound(self, message: OutboundMessage) -> OutboundMessage:
        async with self._session() as db:
            db.add(OutboundMessageRow(**self._outbound_values(message)))
        return message

    async def get_outbound(self, message_id: str) -> Optional[OutboundMessage]:
        async with self._session() as db:
            row = await db.get(OutboundMessageRow, message_id)
            return self._row_to_outbound(row) if row else None

    async def save_outbound(self, message: OutboundMessage) -> None:
        values = self._outbound_values(message)
        values.pop("id")
        async with self._session() as db:
            await db.execute(
                update(OutboundMessageRow)
                .where(OutboundMessageRow.id == message.id)
                .values(**values)
            )

    async def claim_due_outbound(self, now: datetime, limit: int) -> list[OutboundMessage]:
        async with self._session() as db:
            stmt = (
                select(OutboundMessageRow.id)
                .where(and_(
                    OutboundMessageRow.status == MessageStatus.PENDING.value,
                    OutboundMessageRow.scheduled_at <= now,
                ))
                .order_by(OutboundMessageRow.scheduled_at)
                .limit(limit)
            )
            candidates = list((await db.execute(stmt)).scalars().all())
            claimed = []
            for message_id in candidates:
                result = await db.execute(
                    update(OutboundMessageRow)
                    .where(and_(
                        OutboundMessageRow.id == message_id,
                        OutboundMessageRow.status == MessageStatus.PENDING.value,
                    ))
                    .values(status=MessageStatus.DISPATCHING.value, claimed_at=now)
                )
                if result.rowcount == 1:
                    claimed.append(message_id)
            if not claimed:
                return []
            rows = await db.execute(
                select(OutboundMessageRow)
                .where(OutboundMessageRow.id.in_(claimed))
                .order_by(OutboundMessageRow.scheduled_at)
                .execution_options(populate_existing=True)
            )
            return [self._row_to_outbound(r) for r in rows.scalars().all()]

    async def release_stale_claims(self, claimed_before: datetime, max_attempts: int) -> int:
        stale = and_(
            OutboundMessageRow.status == MessageStatus.DISPATCHING.value,
            OutboundMessageRow.claimed_at < claimed_before,
        )
        # Two statements: MySQL evaluates SET clauses left to right
        async with self._session() as db:
            failed = await db.execute(
                update(OutboundMessageRow)
                .where(and_(stale, OutboundMessageRow.retry_count + 1 >= max_attempts))
                .values(status=MessageStatus.FAILED.value, claimed_at=None,
                        retry_count=OutboundMessageRow.retry_count + 1,
                        last_error="dispatch lease expired")
            )
            released = await db.execute(
                update(OutboundMessageRow)
                .where(stale)
                .values(status=MessageStatus.PENDING.value, claimed_at=None,
                        retry_count=OutboundMessageRow.retry_count + 1,
                        last_error="dispatch lease expired")
            )
            return (failed.rowcount or 0) + (released.rowcount or 0)

    async def count_channel_usage(
        self, channel_id: str, since: datetime, include_dispatching: bool = True,
    ) -> int:
        async with self._session() as db:
            sent = await db.scalar(
                select(func.count()).select_from(OutboundMessageRow).where(and_(
                    OutboundMessageRow.channel_id == channel_id,
                    OutboundMessageRow.status == MessageStatus.SENT.value,
                    OutboundMessageRow.sent_at >= since,
                ))
            )
            if not include_dispatching:
                return int(sent or 0)
            in_flight = await db.scalar(
                select(func.count()).select_from(OutboundMessageRow).where(and_(
                    OutboundMessageRow.channel_id == channel_id,
                    OutboundMessageRow.status == MessageStatus.DISPATCHING.value,
                ))
            )
            return int(sent or 0) + int(in_flight or 0)

    async def count_channel_sent(self, channel_id: str) -> int:
        async with self._session() as db:
            total = await db.scalar(
                select(func.count()).select_from(OutboundMessageRow).where(and_(
                    OutboundMessageRow.channel_id == channel_id,
                    OutboundMessageRow.status == MessageStatus.SENT.value,
                ))
            )
            return int(total or 0)

    async def purge_outbound(self, created_before: datetime) -> int:
        async with self._session() as db:
            result = await db.execute(
                delete(OutboundMessageRow).where(and_(
                    OutboundMessageRow.status.in_(_TERMINAL),
                    OutboundMessageRow.created_at < created_before,
                ))
            )
            return result.rowcount or 0

    async def outbound_stats(self, since: datetime) -> QueueStats:
        async with self._session() as db:
            counts = await db.execute(
                select(OutboundMessageRow.status, func.count())
                .where(OutboundMessageRow.created_at >= since)
                .group_by(OutboundMessageRow.status)
            )
            by_status = {status: int(n) for status, n in counts.all()}
            # Average delay computed in Python; date arithmetic is not portable
            sent = await db.execute(
                select(OutboundMessageRow.scheduled_at, OutboundMessageRow.sent_at)
                .where(and_(
                    OutboundMessageRow.created_at >= since,
                    OutboundMessageRow.status == MessageStatus.SENT.value,
                    OutboundMessageRow.sent_at.is_not(None),
                ))
            )
            delays = [
                (_aware(sent_at) - _aware(scheduled_at)).total_seconds()
                for scheduled_at, sent_at in sent.all()
            ]
        return QueueStats(
            pending=by_status.get(MessageStatus.PENDING.value, 0),
            dispatching=by_status.get(MessageStatus.DISPATCHING.value, 0),
            sent=by_status.get(MessageStatus.SENT.value, 0),
            failed=by_status.get(MessageStatus.FAILED.value, 0),
            avg_delay_seconds=sum(delays) / len(delays) if delays else None,
        )

    # ── Delay timers ───────────────────────────────────────

    async def add_timer(self, timer: FlowTimer) -> FlowTimer:
        async with self._session() as db:
            db.add(FlowTimerRow(
                id=timer.id, contact_id=timer.contact_id, flow_id=timer.flow_id,
                node_id=timer.node_id, due_at=timer.due_at,
                status=timer.status.value, created_at=timer.created_at,
            ))
        return timer

    async def claim_due_timers(self, now: datetime, limit: int) -> list[FlowTimer]:
        async with self._session() as db:
            stmt = (
                select(FlowTimerRow)
                .where(and_(
                    FlowTimerRow.status == TimerStatus.PENDING.value,
                    FlowTimerRow.due_at <= now,
                ))
                .order_by(FlowTimerRow.due_at)
                .limit(limit)
            )
            candidates = list((await db.execute(stmt)).scalars().all())
            claimed = []
            for row in candidates:
                result = await db.execute(
                    update(FlowTimerRow)
                    .where(and_(
                        FlowTimerRow.id == row.id,
                        FlowTimerRow.status == TimerStatus.PENDING.value,
                    ))
                    .values(status=TimerStatus.FIRING.value, claimed_at=now)
                )
                if result.rowcount == 1:
                    claimed.append(FlowTimer(
                        id=row.id, contact_id=row.contact_id, flow_id=row.flow_id,
                        node_id=row.node_id, due_at=_aware(row.due_at),
                        status=TimerStatus.FIRING, claimed_at=now,
                        created_at=_aware(row.created_at),
                    ))
            return claimed

    async def complete_timer(self, timer_id: str) -> None:
        async with self._session() as db:
            await db.execute(
                update(FlowTimerRow)
                .where(FlowTimerRow.id == timer_id)
                .values(status=TimerStatus.FIRED.value)
            )

    async def release_stale_timers(self, claimed_before: datetime) -> int:
        async with self._session() as db:
            result = await db.execute(
                update(FlowTimerRow)
                .where(and_(
                    FlowTimerRow.status == TimerStatus.FIRING.value,
                    FlowTimerRow.claimed_at < claimed_before,
                ))
                .values(status=TimerStatus.PENDING.value, claimed_at=None)
            )
            return result.rowcount or 0

    # ── Message history ────────────────────────────────────

    async def add_history(self, entry: MessageHistoryEntry) -> None:
        async with self._session() as db:
            db.add(MessageHistoryRow(**entry.model_dump()))

    async def recent_history(self, contact_id: str, limit: int = 10) -> list[MessageHistoryEntry]:
        async with self._session() as db:
            stmt = (
                select(MessageHistoryRow)
                .where(MessageHistoryRow.contact_id == contact_id)
                .order_by(MessageHistoryRow.timestamp.desc())
                .limit(limit)
            )
            result = await db.execute(stmt)
            rows = result.scalars().all()
            return [
                MessageHistoryEntry(
                    id=r.id, contact_id=r.contact_id, channel_id=r.channel_id,
                    content=r.content, direction=r.direction,
                    media_ref=r.media_ref, media_type=r.media_type,
                    delivery_id=r.delivery_id, outbound_id=r.outbound_id,
                    timestamp=_aware(r.timestamp),
                )
                for r in reversed(rows)
            ]

    # ── Event log ──────────────────────────────────────────

    async def add_event(self, event: FlowEvent) -> None:
        async with self._session() as db:
            values = event.model_dump(mode="json")
            values["timestamp"] = event.timestamp
            db.add(FlowEventRow(**values))

    async def list_events(
        self, contact_id: Optional[str] = None, flow_id: Optional[str] = None,
    ) -> list[FlowEvent]:
        async with self._session() as db:
            stmt = select(FlowEventRow).order_by(FlowEventRow.timestamp)
            if contact_id is not None:
                stmt = stmt.where(FlowEventRow.contact_id == contact_id)
            if flow_id is not None:
                stmt = stmt.where(FlowEventRow.flow_id == flow_id)
            result = await db.execute(stmt)
            return [
                FlowEvent(
                    id=r.id, kind=r.kind, contact_id=r.contact_id,
                    flow_id=r.flow_id, node_id=r.node_id, node_type=r.node_type,
                    action=r.action, payload=r.payload or {},
                    timestamp=_aware(r.timestamp),
                )
                for r in result.scalars().all()
            ]

    # ── Converters ─────────────────────────────────────────

    @staticmethod
    async def _state_row(db: AsyncSession, contact_id: str, flow_id: str) -> Optional[FlowStateRow]:
        stmt = select(FlowStateRow).where(and_(
            FlowStateRow.contact_id == contact_id,
            FlowStateRow.flow_id == flow_id,
        ))
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    def _state_values(state: FlowState) -> dict[str, Any]:
        return {
            "contact_id": state.contact_id, "flow_id": state.flow_id,
            "flow_version": state.flow_version, "variant_id": state.variant_id,
            "organization_id": state.organization_id,
            "current_node_id": state.current_node_id,
            "variables": dict(state.variables),
            "awaiting_input": state.awaiting_input,
            "awaiting_timer": state.awaiting_timer,
            "timer_id": state.timer_id,
            "completed": state.completed,
            "engagement_score": state.engagement_score,
            "path": [p.model_dump(mode="json") for p in state.path],
            "version": state.version,
            "created_at": state.created_at, "updated_at": state.updated_at,
        }

    @staticmethod
    def _row_to_state(row: FlowStateRow) -> FlowState:
        return FlowState(
            contact_id=row.contact_id, flow_id=row.flow_id,
            flow_version=row.flow_version, variant_id=row.variant_id,
            organization_id=row.organization_id,
            current_node_id=row.current_node_id,
            variables=row.variables or {},
            awaiting_input=row.awaiting_input,
            awaiting_timer=row.awaiting_timer,
            timer_id=row.timer_id,
            completed=row.completed,
            engagement_score=row.engagement_score,
            path=row.path or [],
            version=row.version,
            created_at=_aware(row.created_at), updated_at=_aware(row.updated_at),
        )

    @staticmethod
    def _outbound_values(message: OutboundMessage) -> dict[str, Any]:
        return {
            "id": message.id, "channel_id": message.channel_id,
            "contact_id": message.contact_id, "content": message.content,
            "media_ref": message.media_ref, "media_type": message.media_type,
            "status": message.status.value, "scheduled_at": message.scheduled_at,
            "sent_at": message.sent_at, "claimed_at": message.claimed_at,
            "retry_count": message.retry_count, "last_error": message.last_error,
            "delivery_id": message.delivery_id, "metadata_": dict(message.metadata),
            "created_at": message.created_at,
        }

    @staticmethod
    def _row_to_outbound(row: OutboundMessageRow) -> OutboundMessage:
        return OutboundMessage(
            id=row.id, channel_id=row.channel_id, contact_id=row.contact_id,
            content=row.content, media_ref=row.media_ref, media_type=row.media_type,
            status=MessageStatus(row.status),
            scheduled_at=_aware(row.scheduled_at), sent_at=_aware(row.sent_at),
            claimed_at=_aware(row.claimed_at), retry_count=row.retry_count,
            last_error=row.last_error, delivery_id=row.delivery_id,
            metadata=row.metadata_ or {}, created_at=_aware(row.created_at),
        )
