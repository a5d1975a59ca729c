"""
Inbound triggers — what an inbound message or event does to flows.

  ResumptionTrigger  — a reply resumes every flow of the contact that is
                       waiting on a userInput node
  TriggerMatcher     — an inbound text (or named event) starts every
                       active flow whose triggers match
  InboundRouter      — the webhook entry point: record the message in
                       history, resume first, and only when nothing
                       was waiting, match new flows
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass, field
from typing import Any, Optional

from core.collaborators import Analytics, ContactDirectory
from core.executor import AdvanceResult, FlowExecutor
from database.store_base import BaseFlowStore
from models.errors import GraphError
from models.schemas import FlowDefinition, FlowState, MessageHistoryEntry

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Resumption
# ──────────────────────────────────────────────────────────────

class ResumptionTrigger:

    def __init__(self, store: BaseFlowStore, executor: FlowExecutor):
        self.store = store
        self.executor = executor

    async def resume(self, contact_id: str, reply_text: str) -> list[AdvanceResult]:
        results = []
        for state in await self.store.list_awaiting_states(contact_id):
            flow = await self.store.get_flow(state.flow_id, state.flow_version)
            if flow is None:
                logger.error("flow_definition_missing", contact_id=contact_id,
                             flow_id=state.flow_id, version=state.flow_version)
                continue
            try:
                result = await self.executor.resume_input(flow, state, reply_text)
            except GraphError as e:
                logger.error("flow_resume_graph_error", contact_id=contact_id,
                             flow_id=flow.id, node_id=e.node_id, error=str(e))
                continue
            logger.info("flow_resumed", contact_id=contact_id, flow_id=flow.id,
                        status=result.status.value, steps=result.steps)
            results.append(result)
        return results


# ──────────────────────────────────────────────────────────────
#  Matching
# ──────────────────────────────────────────────────────────────

class TriggerMatcher:

    def __init__(self, store: BaseFlowStore, executor: FlowExecutor, analytics: Analytics):
        self.store = store
        self.executor = executor
        self.analytics = analytics

    async def match(
        self, contact_id: str, organization_id: str, inbound_text: str,
        variables: Optional[dict[str, Any]] = None,
    ) -> list[FlowDefinition]:
        """Start every active flow whose keywords match the text, plus catch-all flows."""
        text = (inbound_text or "").strip().lower()
        matched = [
            flow for flow in await self.store.list_active_flows(organization_id)
            if not flow.has_triggers
            or text in {k.strip().lower() for k in flow.keyword_triggers}
        ]
        await self._start_all(matched, contact_id, organization_id, variables)
        return matched

    async def match_event(
        self, contact_id: str, organization_id: str, event_name: str,
        variables: Optional[dict[str, Any]] = None,
    ) -> list[FlowDefinition]:
        """Start every active flow that lists `event_name` among its event triggers."""
        matched = [
            flow for flow in await self.store.list_active_flows(organization_id)
            if event_name in flow.event_triggers
        ]
        await self._start_all(matched, contact_id, organization_id, variables)
        return matched

    async def _start_all(self, flows, contact_id, organization_id, variables):
        for flow in flows:
            await self.start(flow, contact_id, organization_id, variables)

    async def start(
        self, flow: FlowDefinition, contact_id: str, organization_id: str = "",
        variables: Optional[dict[str, Any]] = None,
    ) -> Optional[AdvanceResult]:
        """Create the flow state at the start node and run it. None if already running."""
        state = FlowState(
            contact_id=contact_id,
            flow_id=flow.id,
            flow_version=flow.version,
            variant_id=flow.variant_id,
            organization_id=organization_id or flow.organization_id,
            current_node_id=flow.start_node.id,
            variables=variables or {},
        )
        started = await self.store.start_state(state)
        if started is None:
            logger.info("flow_already_running", contact_id=contact_id, flow_id=flow.id)
            return None

        try:
            await self.analytics.start_journey(contact_id, flow.id, flow.variant_id)
        except Exception as e:
            logger.warning("flow_journey_report_failed", journey_event="start_journey", error=str(e))

        logger.info("flow_started", contact_id=contact_id, flow_id=flow.id, version=flow.version)
        return await self.executor.advance(flow, started)


# ──────────────────────────────────────────────────────────────
#  Inbound routing
# ──────────────────────────────────────────────────────────────

@dataclass
class InboundOutcome:
    resumed: list[AdvanceResult] = field(default_factory=list)
    matched: list[FlowDefinition] = field(default_factory=list)


class InboundRouter:
    """
    Every inbound text is written to the contact's message history before
    any flow runs, so aiResponse nodes see both sides of the conversation.
    """

    def __init__(
        self,
        resumer: ResumptionTrigger,
        matcher: TriggerMatcher,
        directory: Optional[ContactDirectory] = None,
    ):
        self.resumer = resumer
        self.matcher = matcher
        self.directory = directory
        self.store = resumer.store

    async def handle_inbound(
        self, contact_id: str, organization_id: str, text: str, channel_id: str = "",
    ) -> InboundOutcome:
        await self._record(contact_id, text, channel_id)
        resumed = await self.resumer.resume(contact_id, text)
        if resumed:
            return InboundOutcome(resumed=resumed)
        matched = await self.matcher.match(contact_id, organization_id, text)
        return InboundOutcome(matched=matched)

    async def _record(self, contact_id: str, text: str, channel_id: str):
        if not channel_id and self.directory is not None:
            route = await self.directory.get_route(contact_id)
            channel_id = route.channel_id if route else ""
        await self.store.add_history(MessageHistoryEntry(
            contact_id=contact_id, channel_id=channel_id, content=text, direction="inbound",
        ))
