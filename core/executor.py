"""
Flow Executor — walks a flow graph for one contact.

`advance` starts at state.current_node_id and executes nodes one at a
time, following one outgoing edge per step, until the flow suspends
(userInput, delay), completes, or stalls on an error. The state is
persisted after every node, so a crash loses at most the node in flight.

Suspend points:
  userInput → awaiting_input; resumed by the ResumptionTrigger
  delay     → awaiting_timer + a durable FlowTimer; resumed by DelayTimerWorker

Node policies:
  critical    — an exception aborts the advance; the node is reported
                dropped_off and the persisted state stays on that node
  best-effort — collaborator failures and timeouts are logged and
                replaced by a fallback; the flow continues

Writes for one (contact_id, flow_id) are serialized by an in-process
keyed lock plus the store's version check, so racing resumers cannot
both apply a transition.
"""
from __future__ import annotations

import asyncio
import json
import structlog
import weakref
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from config.settings import FlowConfig
from core.collaborators import AIReply, Analytics, ContactDirectory, Handoff, Tagging
from core.integration import IntegrationClient
from database.store_base import BaseFlowStore
from dispatch.queue import DispatchQueue
from models.errors import ConcurrencyConflict, GraphError, RoutingError
from models.schemas import (
    FlowDefinition, FlowState, FlowTimer, NodeAction, NodeType, coerce_variables,
)
from utils.conditions import evaluate_condition
from utils.templating import render_template

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Policies & results
# ──────────────────────────────────────────────────────────────

class NodePolicy(str, Enum):
    CRITICAL = "critical"
    BEST_EFFORT = "best_effort"


NODE_POLICIES: dict[NodeType, NodePolicy] = {
    NodeType.START: NodePolicy.CRITICAL,
    NodeType.BOT_RESPONSE: NodePolicy.CRITICAL,
    NodeType.USER_INPUT: NodePolicy.CRITICAL,
    NodeType.CONDITION: NodePolicy.CRITICAL,
    NodeType.DELAY: NodePolicy.CRITICAL,
    NodeType.AI_RESPONSE: NodePolicy.BEST_EFFORT,
    NodeType.ASSIGN_AGENT: NodePolicy.CRITICAL,
    NodeType.ADD_TAG: NodePolicy.CRITICAL,
    NodeType.UPDATE_SCORE: NodePolicy.CRITICAL,
    NodeType.LOG_EVENT: NodePolicy.CRITICAL,
    NodeType.INTEGRATION: NodePolicy.BEST_EFFORT,
}


class AdvanceStatus(str, Enum):
    SUSPENDED_INPUT = "suspended_input"
    SUSPENDED_DELAY = "suspended_delay"
    COMPLETED = "completed"
    STALLED = "stalled"
    CONFLICT = "conflict"


class AdvanceResult:
    """Outcome of driving a flow state forward."""

    def __init__(
        self,
        status: AdvanceStatus,
        state: FlowState,
        steps: int = 0,
        error: Optional[Exception] = None,
    ):
        self.status = status
        self.state = state
        self.steps = steps
        self.error = error

    @property
    def ok(self) -> bool:
        return self.status not in (AdvanceStatus.STALLED, AdvanceStatus.CONFLICT)

    def __bool__(self) -> bool:
        return self.ok

    def __repr__(self) -> str:
        return (f"AdvanceResult({self.status.value}, node={self.state.current_node_id}, "
                f"steps={self.steps})")


class _Step(str, Enum):
    NEXT = "next"
    WAIT_INPUT = "wait_input"
    WAIT_TIMER = "wait_timer"
    FINISH = "finish"


class FlowLocks:
    """
    One asyncio.Lock per (contact_id, flow_id).

    Entries are weak: a lock lives while some caller holds or waits on it,
    so the map only holds flows with a transition in flight.
    """

    def __init__(self):
        self._locks: weakref.WeakValueDictionary[tuple[str, str], asyncio.Lock] = weakref.WeakValueDictionary()

    def get(self, contact_id: str, flow_id: str) -> asyncio.Lock:
        key = (contact_id, flow_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def __len__(self) -> int:
        return len(self._locks)


# ──────────────────────────────────────────────────────────────
#  Executor
# ──────────────────────────────────────────────────────────────

class FlowExecutor:

    def __init__(
        self,
        store: BaseFlowStore,
        queue: DispatchQueue,
        directory: ContactDirectory,
        analytics: Analytics,
        ai: AIReply,
        tagging: Tagging,
        handoff: Handoff,
        integration: Optional[IntegrationClient] = None,
        config: FlowConfig = None,
        locks: Optional[FlowLocks] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.queue = queue
        self.directory = directory
        self.analytics = analytics
        self.ai = ai
        self.tagging = tagging
        self.handoff = handoff
        self.config = config or FlowConfig()
        self.integration = integration or IntegrationClient(
            timeout=self.config.integration_timeout_seconds,
            max_attempts=self.config.integration_max_attempts,
        )
        self.locks = locks if locks is not None else FlowLocks()
        self.clock = clock

    # ── Public entry points ───────────────────────────────────

    async def advance(
        self, flow: FlowDefinition, state: FlowState, variables: Optional[dict[str, Any]] = None,
    ) -> AdvanceResult:
        async with self.locks.get(state.contact_id, state.flow_id):
            conflict = await self._check_current(state)
            if conflict:
                return conflict
            return await self._run(flow, state, variables)

    async def resume_input(self, flow: FlowDefinition, state: FlowState, reply: str) -> AdvanceResult:
        """Capture a reply on the current userInput node and continue after it."""
        async with self.locks.get(state.contact_id, state.flow_id):
            conflict = await self._check_current(state)
            if conflict:
                return conflict
            if not state.awaiting_input or state.completed:
                return AdvanceResult(AdvanceStatus.CONFLICT, state, 0)
            node = flow.node(state.current_node_id)
            if node is None or node.type != NodeType.USER_INPUT.value:
                raise GraphError(
                    f"State is not parked on a userInput node: {state.current_node_id}",
                    flow_id=flow.id, node_id=state.current_node_id,
                )
            state.variables[node.config.save_as] = reply
            state.variables["last_user_message"] = reply
            state.awaiting_input = False
            await self._report(state, node, NodeAction.COMPLETED, {"response": reply})
            return await self._continue_after(flow, state, node.id)

    async def resume_timer(self, flow: FlowDefinition, state: FlowState, timer: FlowTimer) -> Optional[AdvanceResult]:
        """Continue after a delay node whose timer fired. None if the state moved on."""
        async with self.locks.get(state.contact_id, state.flow_id):
            fresh = await self.store.get_state(state.contact_id, state.flow_id)
            if fresh is not None:
                state = fresh
            if (state.completed or not state.awaiting_timer
                    or state.current_node_id != timer.node_id
                    or (state.timer_id is not None and state.timer_id != timer.id)):
                logger.info("flow_timer_stale", timer_id=timer.id,
                            contact_id=state.contact_id, flow_id=state.flow_id,
                            current_node_id=state.current_node_id)
                return None
            node = flow.node(timer.node_id)
            if node is None:
                raise GraphError(f"Delay node {timer.node_id} not in flow",
                                 flow_id=flow.id, node_id=timer.node_id)
            state.awaiting_timer = False
            state.timer_id = None
            await self._report(state, node, NodeAction.COMPLETED)
            return await self._continue_after(flow, state, node.id)

    # ── Traversal ─────────────────────────────────────────────

    async def _check_current(self, state: FlowState) -> Optional[AdvanceResult]:
        """CONFLICT result when the stored state moved past `state.version`."""
        stored = await self.store.get_state(state.contact_id, state.flow_id)
        if stored is None or stored.version != state.version:
            logger.info("flow_state_stale", contact_id=state.contact_id, flow_id=state.flow_id,
                        expected_version=state.version,
                        stored_version=stored.version if stored else None)
            return AdvanceResult(
                AdvanceStatus.CONFLICT, stored or state, 0,
                ConcurrencyConflict(state.contact_id, state.flow_id, state.version),
            )
        return None

    async def _continue_after(self, flow: FlowDefinition, state: FlowState, node_id: str) -> AdvanceResult:
        next_id = flow.next_node_id(node_id)
        if next_id is None:
            return await self._complete(flow, state, steps=0)
        state.current_node_id = next_id
        try:
            await self.store.save_state(state)
        except ConcurrencyConflict as e:
            logger.info("flow_resume_conflict", contact_id=state.contact_id,
                        flow_id=state.flow_id, node_id=node_id)
            return AdvanceResult(AdvanceStatus.CONFLICT, state, 0, e)
        return await self._run(flow, state, None)

    async def _run(
        self, flow: FlowDefinition, state: FlowState, variables: Optional[dict[str, Any]],
    ) -> AdvanceResult:
        if variables:
            state.variables.update(coerce_variables(variables))
        if state.completed:
            return AdvanceResult(AdvanceStatus.COMPLETED, state, 0)

        steps = 0
        while True:
            checkpoint = state.model_copy(deep=True)
            node = flow.node(state.current_node_id)
            steps += 1
            try:
                if node is None:
                    raise GraphError(f"Node {state.current_node_id} not in flow {flow.id}",
                                     flow_id=flow.id, node_id=state.current_node_id)
                if steps > self.config.max_steps_per_advance:
                    raise GraphError(
                        f"Step budget ({self.config.max_steps_per_advance}) exceeded; cycle suspected",
                        flow_id=flow.id, node_id=node.id,
                    )
                await self._report(state, node, NodeAction.ENTERED)
                step, next_id = await self._execute(flow, state, node)
            except Exception as e:
                return await self._stall(flow, checkpoint, node, e, steps)

            try:
                if step == _Step.WAIT_INPUT:
                    state.awaiting_input = True
                    await self.store.save_state(state)
                    logger.info("flow_awaiting_input", contact_id=state.contact_id,
                                flow_id=flow.id, node_id=node.id)
                    return AdvanceResult(AdvanceStatus.SUSPENDED_INPUT, state, steps)

                if step == _Step.WAIT_TIMER:
                    await self.store.save_state(state)
                    return AdvanceResult(AdvanceStatus.SUSPENDED_DELAY, state, steps)

                await self._report(state, node, NodeAction.COMPLETED)
                if step == _Step.FINISH or next_id is None:
                    return await self._complete(flow, state, steps)

                state.current_node_id = next_id
                await self.store.save_state(state)
            except ConcurrencyConflict as e:
                logger.warning("flow_state_conflict", contact_id=state.contact_id,
                               flow_id=flow.id, node_id=node.id)
                return AdvanceResult(AdvanceStatus.CONFLICT, state, steps, e)

    async def _complete(self, flow: FlowDefinition, state: FlowState, steps: int) -> AdvanceResult:
        state.completed = True
        state.awaiting_input = False
        state.awaiting_timer = False
        state.timer_id = None
        try:
            await self.store.save_state(state)
        except ConcurrencyConflict as e:
            return AdvanceResult(AdvanceStatus.CONFLICT, state, steps, e)
        await self._journey("complete_journey", state)
        logger.info("flow_completed", contact_id=state.contact_id, flow_id=flow.id,
                    score=state.engagement_score)
        return AdvanceResult(AdvanceStatus.COMPLETED, state, steps)

    async def _stall(
        self, flow: FlowDefinition, checkpoint: FlowState, node, error: Exception, steps: int,
    ) -> AdvanceResult:
        node_id = node.id if node is not None else checkpoint.current_node_id
        logger.error("flow_stalled", contact_id=checkpoint.contact_id, flow_id=flow.id,
                     node_id=node_id, error_type=type(error).__name__, error=str(error))
        if node is not None:
            await self._emit(checkpoint, node.id, node.type, NodeAction.DROPPED_OFF,
                             {"error": str(error)})
        await self._journey("abandon_journey", checkpoint, node_id)
        return AdvanceResult(AdvanceStatus.STALLED, checkpoint, steps, error)

    # ── Node handlers ─────────────────────────────────────────

    async def _execute(self, flow: FlowDefinition, state: FlowState, node) -> tuple[_Step, Optional[str]]:
        handlers = {
            NodeType.START: self._node_start,
            NodeType.BOT_RESPONSE: self._node_bot_response,
            NodeType.USER_INPUT: self._node_user_input,
            NodeType.CONDITION: self._node_condition,
            NodeType.DELAY: self._node_delay,
            NodeType.AI_RESPONSE: self._node_ai_response,
            NodeType.ASSIGN_AGENT: self._node_assign_agent,
            NodeType.ADD_TAG: self._node_add_tag,
            NodeType.UPDATE_SCORE: self._node_update_score,
            NodeType.LOG_EVENT: self._node_log_event,
            NodeType.INTEGRATION: self._node_integration,
        }
        return await handlers[NodeType(node.type)](flow, state, node)

    async def _node_start(self, flow, state, node):
        return _Step.NEXT, flow.next_node_id(node.id)

    async def _node_bot_response(self, flow, state, node):
        cfg = node.config
        content = render_template(cfg.message, state.variables)
        media_ref = render_template(cfg.media_url, state.variables) if cfg.media_url else None
        await self._enqueue(flow, state, node, content, media_ref=media_ref,
                            media_type=cfg.media_type if media_ref else None)
        return _Step.NEXT, flow.next_node_id(node.id)

    async def _node_user_input(self, flow, state, node):
        return _Step.WAIT_INPUT, None

    async def _node_condition(self, flow, state, node):
        result = evaluate_condition(node.config, state.variables)
        label = "true" if result else "false"
        edges = flow.outgoing(node.id)
        chosen = next((e for e in edges if e.branch_label == label), None)
        if chosen is None and edges:
            # No labelled branch for this outcome: take the first edge
            chosen = edges[0]
        logger.debug("flow_condition_evaluated", node_id=node.id, result=result,
                     target=chosen.target if chosen else None)
        return _Step.NEXT, chosen.target if chosen else None

    async def _node_delay(self, flow, state, node):
        # 0 and unset both mean the default delay
        seconds = node.config.seconds or self.config.default_delay_seconds
        timer = FlowTimer(
            contact_id=state.contact_id, flow_id=state.flow_id, node_id=node.id,
            due_at=self.clock() + timedelta(seconds=seconds),
        )
        await self.store.add_timer(timer)
        state.awaiting_timer = True
        state.timer_id = timer.id
        logger.info("flow_delay_scheduled", contact_id=state.contact_id, flow_id=flow.id,
                    node_id=node.id, seconds=seconds, timer_id=timer.id)
        return _Step.WAIT_TIMER, None

    async def _node_ai_response(self, flow, state, node):
        cfg = node.config
        last_message = (state.variables.get("last_user_message")
                        or state.variables.get("user_input") or "")
        history = []
        if cfg.use_context:
            history = await self.store.recent_history(state.contact_id, self.config.ai_history_limit)

        result = await self._guarded(
            node, "ai_reply",
            lambda: self.ai.generate(state.contact_id, last_message, history, prompt=cfg.prompt),
            timeout=self.config.ai_timeout_seconds,
        )
        text = result.text if result is not None and result.text else self.config.ai_fallback_message
        await self._enqueue(flow, state, node, text, ai_generated=True)

        if result is not None and result.should_escalate:
            await self._guarded(
                node, "handoff",
                lambda: self.handoff.assign_agent(state.contact_id, "ai_escalation"),
                timeout=self.config.ai_timeout_seconds,
            )
        return _Step.NEXT, flow.next_node_id(node.id)

    async def _node_assign_agent(self, flow, state, node):
        await self.handoff.assign_agent(state.contact_id, node.config.department)
        return _Step.FINISH, None

    async def _node_add_tag(self, flow, state, node):
        await self.tagging.add_tag(state.contact_id, node.config.tag)
        return _Step.NEXT, flow.next_node_id(node.id)

    async def _node_update_score(self, flow, state, node):
        score = state.adjust_score(node.config.change)
        logger.debug("flow_score_updated", contact_id=state.contact_id, score=score)
        return _Step.NEXT, flow.next_node_id(node.id)

    async def _node_log_event(self, flow, state, node):
        await self.analytics.log_event(
            state.contact_id, state.flow_id, node.config.event_name, dict(state.variables),
        )
        return _Step.NEXT, flow.next_node_id(node.id)

    async def _node_integration(self, flow, state, node):
        cfg = node.config
        url = render_template(cfg.url, state.variables)
        headers = {k: render_template(v, state.variables) for k, v in cfg.headers.items()}
        body = render_template(cfg.body, state.variables)
        response = await self._guarded(
            node, "integration",
            lambda: self.integration.call(cfg.method, url, headers, body),
            timeout=self.config.integration_timeout_seconds,
        )
        if response is not None:
            state.variables["integration_response"] = (
                response if isinstance(response, str) else json.dumps(response)
            )
        return _Step.NEXT, flow.next_node_id(node.id)

    # ── Helpers ───────────────────────────────────────────────

    async def _enqueue(
        self, flow: FlowDefinition, state: FlowState, node, content: str,
        media_ref: Optional[str] = None, media_type: Optional[str] = None,
        ai_generated: bool = False,
    ):
        route = await self.directory.get_route(state.contact_id)
        if route is None:
            raise RoutingError(state.contact_id)
        metadata: dict[str, Any] = {"flow_id": flow.id, "node_id": node.id}
        if ai_generated:
            metadata["ai_generated"] = True
        await self.queue.enqueue(
            route.channel_id, state.contact_id, content,
            media_ref=media_ref, media_type=media_type, metadata=metadata,
        )

    async def _guarded(
        self, node, collaborator: str, call: Callable[[], Awaitable[Any]], timeout: float,
    ) -> Any:
        """
        Run a collaborator call with a timeout. For best-effort nodes a
        failure is logged and None returned; for critical nodes it propagates.
        """
        try:
            return await asyncio.wait_for(call(), timeout=timeout)
        except Exception as e:
            if NODE_POLICIES[NodeType(node.type)] is not NodePolicy.BEST_EFFORT:
                raise
            logger.warning("flow_collaborator_failed", node_id=node.id, node_type=node.type,
                           collaborator=collaborator, error_type=type(e).__name__, error=str(e))
            return None

    async def _report(self, state: FlowState, node, action: NodeAction, payload: Optional[dict] = None):
        state.record(node.id, action)
        await self._emit(state, node.id, node.type, action, payload)

    async def _emit(self, state: FlowState, node_id: str, node_type: str, action: NodeAction,
                    payload: Optional[dict] = None):
        try:
            await self.analytics.record_node_event(
                state.contact_id, state.flow_id, node_id, node_type, action, payload,
            )
        except Exception as e:
            logger.warning("flow_analytics_failed", node_id=node_id, action=action.value, error=str(e))

    async def _journey(self, event: str, state: FlowState, *args):
        try:
            await getattr(self.analytics, event)(state.contact_id, state.flow_id, *args)
        except Exception as e:
            logger.warning("flow_journey_report_failed", journey_event=event, error=str(e))
