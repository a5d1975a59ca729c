"""
Delay Timer Worker — resumes flows parked on delay nodes.

Delay nodes write a FlowTimer row to the store instead of sleeping in
process, so a pending delay survives restarts. This worker polls for due
timers, claims them (pending → firing, atomically, as a lease), continues
each flow after its delay node, and only then marks the timer fired. A
worker that dies mid-fire leaves the timer firing; once the lease expires
it is released to pending and fired again. A re-fired timer whose flow
already moved on is skipped as stale.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from config.settings import FlowConfig
from core.executor import AdvanceResult, FlowExecutor
from database.store_base import BaseFlowStore
from models.errors import GraphError
from models.schemas import FlowTimer

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DelayTimerWorker:

    def __init__(
        self,
        store: BaseFlowStore,
        executor: FlowExecutor,
        config: FlowConfig = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.executor = executor
        self.config = config or FlowConfig()
        self.clock = clock
        self._task: Optional[asyncio.Task] = None

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
        logger.info("delay_timer_worker_stopped")

    async def _run(self):
        logger.info("delay_timer_worker_started", interval=self.config.timer_poll_interval_seconds)
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("delay_timer_poll_error", error=str(e), exc_info=True)
            await asyncio.sleep(self.config.timer_poll_interval_seconds)

    async def run_once(self) -> list[AdvanceResult]:
        """Fire every due timer once. Returns the results of resumed flows."""
        now = self.clock()
        released = await self.store.release_stale_timers(
            now - timedelta(seconds=self.config.timer_lease_seconds),
        )
        if released:
            logger.warning("flow_timer_leases_released", count=released)

        timers = await self.store.claim_due_timers(now, self.config.timer_batch_size)
        results = []
        for timer in timers:
            try:
                result = await self._fire(timer)
                await self.store.complete_timer(timer.id)
            except Exception as e:
                # Timer stays firing; it is claimed again once the lease expires
                logger.error("flow_timer_fire_failed", timer_id=timer.id,
                             contact_id=timer.contact_id, flow_id=timer.flow_id,
                             error_type=type(e).__name__, error=str(e), exc_info=True)
                continue
            if result is not None:
                results.append(result)
        return results

    async def _fire(self, timer: FlowTimer) -> Optional[AdvanceResult]:
        state = await self.store.get_state(timer.contact_id, timer.flow_id)
        if state is None:
            logger.warning("flow_timer_orphaned", timer_id=timer.id,
                           contact_id=timer.contact_id, flow_id=timer.flow_id)
            return None

        flow = await self.store.get_flow(state.flow_id, state.flow_version)
        if flow is None:
            logger.error("flow_definition_missing", flow_id=state.flow_id,
                         version=state.flow_version, timer_id=timer.id)
            return None

        try:
            result = await self.executor.resume_timer(flow, state, timer)
        except GraphError as e:
            logger.error("flow_timer_graph_error", timer_id=timer.id,
                         flow_id=flow.id, node_id=e.node_id, error=str(e))
            return None

        if result is not None:
            logger.info("flow_timer_fired", timer_id=timer.id, contact_id=timer.contact_id,
                        flow_id=timer.flow_id, status=result.status.value)
        return result
