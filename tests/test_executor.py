"""
Tests for the flow executor.

Covers:
  - every node type's behavior
  - suspend / resume on userInput and delay
  - stall semantics (critical failures keep the state on the failing node)
  - best-effort fallbacks (aiResponse, integration)
  - step budget, stale-state conflicts, analytics failures
"""
import gc
import json

import httpx
import pytest
from unittest.mock import AsyncMock

from core.collaborators import AIReplyResult, CannedAIReply
from core.executor import AdvanceStatus
from core.integration import IntegrationClient
from models.errors import GraphError, RoutingError
from models.schemas import (
    FlowEventKind, FlowState, MessageHistoryEntry, NodeAction,
)

from conftest import chain, make_flow


async def start_flow(store, executor, flow, contact_id="c1", variables=None):
    await store.save_flow(flow)
    state = await store.start_state(FlowState(
        contact_id=contact_id, flow_id=flow.id, flow_version=flow.version,
        current_node_id=flow.start_node.id, variables=variables or {},
    ))
    return await executor.advance(flow, state)


async def outbound_for(store, contact_id="c1"):
    messages = [m for m in store._outbound.values() if m.contact_id == contact_id]
    return sorted(messages, key=lambda m: m.created_at)


# ──────────────────────────────────────────────────────────────
#  Messaging nodes
# ──────────────────────────────────────────────────────────────

class TestBotResponse:
    @pytest.mark.asyncio
    async def test_renders_and_enqueues(self, store, executor, clock):
        flow = chain("welcome", {"id": "greet", "type": "botResponse",
                                 "config": {"message": "Hi {{name}}, welcome!"}})
        result = await start_flow(store, executor, flow, variables={"name": "Asha"})

        assert result.status == AdvanceStatus.COMPLETED
        assert result.ok
        assert result.steps == 2
        [msg] = await outbound_for(store)
        assert msg.content == "Hi Asha, welcome!"
        assert msg.channel_id == "ch1"
        assert msg.metadata == {"flow_id": "welcome", "node_id": "greet"}
        assert msg.scheduled_at > clock()

        stored = await store.get_state("c1", "welcome")
        assert stored.completed
        assert not stored.is_suspended

    @pytest.mark.asyncio
    async def test_media_url_rendered(self, store, executor):
        flow = chain("promo", {"id": "img", "type": "botResponse", "config": {
            "message": "Look", "mediaUrl": "https://cdn/{{sku}}.png", "mediaType": "image",
        }})
        await start_flow(store, executor, flow, variables={"sku": "A1"})
        [msg] = await outbound_for(store)
        assert msg.media_ref == "https://cdn/A1.png"
        assert msg.media_type == "image"

    @pytest.mark.asyncio
    async def test_no_route_stalls_on_node(self, store, executor):
        flow = chain("welcome", {"id": "greet", "type": "botResponse", "config": {"message": "hi"}})
        result = await start_flow(store, executor, flow, contact_id="unknown")

        assert result.status == AdvanceStatus.STALLED
        assert not result
        assert isinstance(result.error, RoutingError)
        assert result.state.current_node_id == "greet"

        stored = await store.get_state("unknown", "welcome")
        assert stored.current_node_id == "greet"
        assert not stored.completed

        events = await store.list_events(contact_id="unknown")
        dropped = [e for e in events if e.action == NodeAction.DROPPED_OFF.value]
        assert [e.node_id for e in dropped] == ["greet"]
        journeys = [e.action for e in events if e.kind == FlowEventKind.JOURNEY]
        assert journeys == ["abandoned"]


class TestUserInput:
    @pytest.mark.asyncio
    async def test_suspends_and_resumes(self, store, executor):
        flow = chain(
            "survey",
            {"id": "ask", "type": "userInput", "config": {"saveAs": "answer"}},
            {"id": "echo", "type": "botResponse", "config": {"message": "You said {{answer}}"}},
        )
        result = await start_flow(store, executor, flow)
        assert result.status == AdvanceStatus.SUSPENDED_INPUT

        state = await store.get_state("c1", "survey")
        assert state.awaiting_input
        assert state.current_node_id == "ask"

        resumed = await executor.resume_input(flow, state, "blue")
        assert resumed.status == AdvanceStatus.COMPLETED
        assert resumed.state.variables["answer"] == "blue"
        assert resumed.state.variables["last_user_message"] == "blue"
        [msg] = await outbound_for(store)
        assert msg.content == "You said blue"

        completed = [e for e in await store.list_events(contact_id="c1")
                     if e.node_id == "ask" and e.action == "completed"]
        assert completed[0].payload == {"response": "blue"}

    @pytest.mark.asyncio
    async def test_resume_when_not_awaiting_is_conflict(self, store, executor):
        flow = chain("f", {"id": "tag", "type": "addTag", "config": {"tag": "x"}})
        await start_flow(store, executor, flow)
        state = await store.get_state("c1", "f")
        result = await executor.resume_input(flow, state, "hello")
        assert result.status == AdvanceStatus.CONFLICT

    @pytest.mark.asyncio
    async def test_resume_with_stale_version_is_conflict(self, store, executor):
        flow = chain("f", {"id": "ask", "type": "userInput"},
                     {"id": "tag", "type": "addTag"})
        await start_flow(store, executor, flow)
        stale = await store.get_state("c1", "f")
        fresh = await store.get_state("c1", "f")
        first = await executor.resume_input(flow, fresh, "one")
        second = await executor.resume_input(flow, stale, "two")

        assert first.status == AdvanceStatus.COMPLETED
        assert second.status == AdvanceStatus.CONFLICT
        stored = await store.get_state("c1", "f")
        assert stored.variables["user_input"] == "one"

    @pytest.mark.asyncio
    async def test_resume_off_user_input_node_raises(self, store, executor):
        flow = chain("f", {"id": "ask", "type": "userInput"}, {"id": "tag", "type": "addTag"})
        await start_flow(store, executor, flow)
        state = await store.get_state("c1", "f")
        state.current_node_id = "tag"
        await store.save_state(state)
        with pytest.raises(GraphError):
            await executor.resume_input(flow, state, "hi")


# ──────────────────────────────────────────────────────────────
#  Branching & timing
# ──────────────────────────────────────────────────────────────

class TestCondition:
    def _flow(self, labelled=True):
        nodes = [
            {"id": "start", "type": "start"},
            {"id": "check", "type": "condition",
             "config": {"variable": "plan", "operator": "equals", "value": "pro"}},
            {"id": "yes", "type": "addTag", "config": {"tag": "pro"}},
            {"id": "no", "type": "addTag", "config": {"tag": "free"}},
        ]
        if labelled:
            edges = [("start", "check"), ("check", "no", "false"), ("check", "yes", "true")]
        else:
            edges = [("start", "check"), ("check", "no"), ("check", "yes")]
        return make_flow("branch", nodes, edges)

    @pytest.mark.asyncio
    async def test_true_branch(self, store, executor, tagging):
        await start_flow(store, executor, self._flow(), variables={"plan": "PRO"})
        assert tagging.tags["c1"] == {"pro"}

    @pytest.mark.asyncio
    async def test_false_branch(self, store, executor, tagging):
        await start_flow(store, executor, self._flow(), variables={"plan": "basic"})
        assert tagging.tags["c1"] == {"free"}

    @pytest.mark.asyncio
    async def test_unlabelled_edges_take_first(self, store, executor, tagging):
        await start_flow(store, executor, self._flow(labelled=False), variables={"plan": "pro"})
        assert tagging.tags["c1"] == {"free"}

    @pytest.mark.asyncio
    async def test_no_outgoing_edge_completes(self, store, executor):
        flow = chain("f", {"id": "check", "type": "condition",
                           "config": {"variable": "x", "operator": "equals", "value": "1"}})
        result = await start_flow(store, executor, flow)
        assert result.status == AdvanceStatus.COMPLETED


class TestDelay:
    @pytest.mark.asyncio
    async def test_schedules_durable_timer(self, store, executor, clock):
        flow = chain("drip", {"id": "wait", "type": "delay", "config": {"seconds": 60}},
                     {"id": "tag", "type": "addTag"})
        result = await start_flow(store, executor, flow)

        assert result.status == AdvanceStatus.SUSPENDED_DELAY
        [timer] = store._timers.values()
        assert timer.node_id == "wait"
        assert (timer.due_at - clock()).total_seconds() == 60
        state = await store.get_state("c1", "drip")
        assert state.awaiting_timer
        assert state.current_node_id == "wait"

    @pytest.mark.asyncio
    async def test_missing_seconds_uses_default(self, store, executor, clock, flow_config):
        flow = chain("drip", {"id": "wait", "type": "delay"})
        await start_flow(store, executor, flow)
        [timer] = store._timers.values()
        assert (timer.due_at - clock()).total_seconds() == flow_config.default_delay_seconds

    @pytest.mark.asyncio
    async def test_zero_seconds_uses_default(self, store, executor, clock, flow_config):
        flow = chain("drip", {"id": "wait", "type": "delay", "config": {"seconds": 0}})
        await start_flow(store, executor, flow)
        [timer] = store._timers.values()
        assert (timer.due_at - clock()).total_seconds() == flow_config.default_delay_seconds

    @pytest.mark.asyncio
    async def test_state_remembers_its_timer(self, store, executor):
        flow = chain("drip", {"id": "wait", "type": "delay", "config": {"seconds": 60}})
        await start_flow(store, executor, flow)
        [timer] = store._timers.values()
        state = await store.get_state("c1", "drip")
        assert state.timer_id == timer.id

    @pytest.mark.asyncio
    async def test_timer_from_earlier_visit_is_ignored(self, store, executor):
        flow = chain("drip", {"id": "wait", "type": "delay", "config": {"seconds": 60}},
                     {"id": "tag", "type": "addTag"})
        await start_flow(store, executor, flow)
        [current] = store._timers.values()
        earlier = current.model_copy(update={"id": "older-timer"})

        state = await store.get_state("c1", "drip")
        assert await executor.resume_timer(flow, state, earlier) is None
        assert (await store.get_state("c1", "drip")).awaiting_timer

        result = await executor.resume_timer(flow, state, current)
        assert result.status == AdvanceStatus.COMPLETED
        assert result.state.timer_id is None


# ──────────────────────────────────────────────────────────────
#  Collaborator nodes
# ──────────────────────────────────────────────────────────────

class TestAIResponse:
    @pytest.mark.asyncio
    async def test_enqueues_generated_reply(self, store, executor, ai):
        await store.add_history(MessageHistoryEntry(contact_id="c1", channel_id="ch1", content="earlier"))
        flow = chain("ai", {"id": "bot", "type": "aiResponse", "config": {"prompt": "Be brief"}})
        result = await start_flow(store, executor, flow, variables={"last_user_message": "price?"})

        assert result.status == AdvanceStatus.COMPLETED
        [msg] = await outbound_for(store)
        assert msg.content == "Happy to help!"
        assert msg.metadata["ai_generated"] is True
        assert ai.calls == [{"contact_id": "c1", "last_message": "price?", "history": 1,
                             "prompt": "Be brief"}]

    @pytest.mark.asyncio
    async def test_without_context_skips_history(self, store, executor, ai):
        await store.add_history(MessageHistoryEntry(contact_id="c1", channel_id="ch1", content="earlier"))
        flow = chain("ai", {"id": "bot", "type": "aiResponse", "config": {"useContext": False}})
        await start_flow(store, executor, flow)
        assert ai.calls[0]["history"] == 0

    @pytest.mark.asyncio
    async def test_failure_sends_fallback_and_continues(self, store, executor, flow_config, tagging):
        executor.ai = AsyncMock()
        executor.ai.generate.side_effect = RuntimeError("model down")
        flow = chain("ai", {"id": "bot", "type": "aiResponse"},
                     {"id": "tag", "type": "addTag", "config": {"tag": "after_ai"}})
        result = await start_flow(store, executor, flow)

        assert result.status == AdvanceStatus.COMPLETED
        [msg] = await outbound_for(store)
        assert msg.content == flow_config.ai_fallback_message
        assert tagging.tags["c1"] == {"after_ai"}

    @pytest.mark.asyncio
    async def test_escalation_requests_handoff(self, store, executor, handoff):
        executor.ai = CannedAIReply("Let me get someone", should_escalate=True)
        flow = chain("ai", {"id": "bot", "type": "aiResponse"})
        result = await start_flow(store, executor, flow)

        assert result.status == AdvanceStatus.COMPLETED
        assert handoff.sessions["c1"].department == "ai_escalation"
        assert handoff.sessions["c1"].status == "pending"

    @pytest.mark.asyncio
    async def test_empty_reply_uses_fallback(self, store, executor, flow_config):
        executor.ai = AsyncMock()
        executor.ai.generate.return_value = AIReplyResult(text="")
        await start_flow(store, executor, chain("ai", {"id": "bot", "type": "aiResponse"}))
        [msg] = await outbound_for(store)
        assert msg.content == flow_config.ai_fallback_message


class TestAgentTagScoreEvent:
    @pytest.mark.asyncio
    async def test_assign_agent_ends_flow(self, store, executor, handoff, tagging):
        flow = chain("handoff", {"id": "agent", "type": "assignAgent", "config": {"department": "sales"}},
                     {"id": "tag", "type": "addTag"})
        result = await start_flow(store, executor, flow)

        assert result.status == AdvanceStatus.COMPLETED
        assert handoff.sessions["c1"].department == "sales"
        assert "c1" not in tagging.tags

    @pytest.mark.asyncio
    async def test_add_tag(self, store, executor, tagging):
        await start_flow(store, executor, chain("t", {"id": "tag", "type": "addTag",
                                                      "config": {"tag": "vip"}}))
        assert tagging.tags["c1"] == {"vip"}

    @pytest.mark.asyncio
    async def test_tagging_failure_stalls(self, store, executor):
        executor.tagging = AsyncMock()
        executor.tagging.add_tag.side_effect = RuntimeError("crm down")
        result = await start_flow(store, executor, chain("t", {"id": "tag", "type": "addTag"}))
        assert result.status == AdvanceStatus.STALLED
        assert (await store.get_state("c1", "t")).current_node_id == "tag"

    @pytest.mark.asyncio
    async def test_update_score_clamps(self, store, executor):
        flow = chain("s", {"id": "up", "type": "updateScore", "config": {"change": 30}},
                     {"id": "up2", "type": "updateScore", "config": {"change": 40}})
        result = await start_flow(store, executor, flow)
        assert result.state.engagement_score == 100
        assert (await store.get_state("c1", "s")).engagement_score == 100

    @pytest.mark.asyncio
    async def test_log_event_writes_custom_event(self, store, executor):
        flow = chain("e", {"id": "log", "type": "logEvent", "config": {"eventName": "lead_captured"}})
        await start_flow(store, executor, flow, variables={"email": "a@b.co"})
        custom = [e for e in await store.list_events(contact_id="c1") if e.kind == FlowEventKind.CUSTOM]
        assert len(custom) == 1
        assert custom[0].action == "lead_captured"
        assert custom[0].payload == {"email": "a@b.co"}


class TestIntegration:
    @pytest.mark.asyncio
    async def test_call_and_store_response(self, store, executor):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            seen["auth"] = request.headers.get("X-Key")
            return httpx.Response(200, json={"status": "ok"})

        executor.integration = IntegrationClient(transport=httpx.MockTransport(handler), retry_wait=0)
        flow = chain("i", {"id": "hook", "type": "integration", "config": {
            "method": "post",
            "url": "https://crm.test/leads/{{lead_id}}",
            "headers": '{"X-Key": "{{api_key}}"}',
            "body": '{"name": "{{name}}"}',
        }})
        result = await start_flow(store, executor, flow,
                                  variables={"lead_id": "42", "api_key": "k1", "name": "Asha"})

        assert result.status == AdvanceStatus.COMPLETED
        assert seen == {"url": "https://crm.test/leads/42", "body": {"name": "Asha"}, "auth": "k1"}
        assert json.loads(result.state.variables["integration_response"]) == {"status": "ok"}

    @pytest.mark.asyncio
    async def test_server_error_is_best_effort(self, store, executor, tagging):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503)

        executor.integration = IntegrationClient(
            max_attempts=2, transport=httpx.MockTransport(handler), retry_wait=0,
        )
        flow = chain("i", {"id": "hook", "type": "integration", "config": {"url": "https://x.test"}},
                     {"id": "tag", "type": "addTag", "config": {"tag": "continued"}})
        result = await start_flow(store, executor, flow)

        assert result.status == AdvanceStatus.COMPLETED
        assert len(calls) == 2
        assert "integration_response" not in result.state.variables
        assert tagging.tags["c1"] == {"continued"}


# ──────────────────────────────────────────────────────────────
#  Traversal guarantees
# ──────────────────────────────────────────────────────────────

class TestTraversal:
    @pytest.mark.asyncio
    async def test_path_records_entered_and_completed(self, store, executor):
        flow = chain("p", {"id": "tag", "type": "addTag"})
        result = await start_flow(store, executor, flow)
        assert [(p.node_id, p.action) for p in result.state.path] == [
            ("start", NodeAction.ENTERED), ("start", NodeAction.COMPLETED),
            ("tag", NodeAction.ENTERED), ("tag", NodeAction.COMPLETED),
        ]
        stored = await store.get_state("c1", "p")
        assert len(stored.path) == 4

    @pytest.mark.asyncio
    async def test_step_budget_stalls_cycle(self, store, executor, flow_config):
        flow = make_flow("loop", [
            {"id": "start", "type": "start"},
            {"id": "a", "type": "updateScore", "config": {"change": 1}},
            {"id": "b", "type": "updateScore", "config": {"change": -1}},
        ], [("start", "a"), ("a", "b"), ("b", "a")])
        result = await start_flow(store, executor, flow)

        assert result.status == AdvanceStatus.STALLED
        assert isinstance(result.error, GraphError)
        assert result.steps == flow_config.max_steps_per_advance + 1

    @pytest.mark.asyncio
    async def test_stale_state_is_conflict_without_side_effects(self, store, executor):
        flow = chain("f", {"id": "greet", "type": "botResponse", "config": {"message": "hi"}})
        await store.save_flow(flow)
        state = await store.start_state(FlowState(contact_id="c1", flow_id="f", current_node_id="start"))
        newer = await store.get_state("c1", "f")
        await store.save_state(newer)

        result = await executor.advance(flow, state)
        assert result.status == AdvanceStatus.CONFLICT
        assert await outbound_for(store) == []
        assert await store.list_events(contact_id="c1") == []

    @pytest.mark.asyncio
    async def test_variables_merged_on_advance(self, store, executor):
        flow = chain("f", {"id": "greet", "type": "botResponse", "config": {"message": "{{n}}"}})
        await store.save_flow(flow)
        state = await store.start_state(FlowState(contact_id="c1", flow_id="f", current_node_id="start"))
        result = await executor.advance(flow, state, variables={"n": 5})
        assert result.state.variables["n"] == "5"
        [msg] = await outbound_for(store)
        assert msg.content == "5"

    @pytest.mark.asyncio
    async def test_analytics_failure_does_not_stall(self, store, executor):
        executor.analytics = AsyncMock()
        executor.analytics.record_node_event.side_effect = RuntimeError("analytics down")
        executor.analytics.complete_journey.side_effect = RuntimeError("analytics down")
        result = await start_flow(store, executor, chain("f", {"id": "tag", "type": "addTag"}))
        assert result.status == AdvanceStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_completed_state_is_not_rerun(self, store, executor, tagging):
        flow = chain("f", {"id": "tag", "type": "addTag", "config": {"tag": "once"}})
        await start_flow(store, executor, flow)
        tagging.tags.clear()
        state = await store.get_state("c1", "f")
        result = await executor.advance(flow, state)
        assert result.status == AdvanceStatus.COMPLETED
        assert result.steps == 0
        assert tagging.tags == {}

    @pytest.mark.asyncio
    async def test_flow_locks_do_not_accumulate(self, store, executor):
        flow = chain("f", {"id": "ask", "type": "userInput"}, {"id": "tag", "type": "addTag"})
        await start_flow(store, executor, flow)
        state = await store.get_state("c1", "f")
        await executor.resume_input(flow, state, "yes")
        gc.collect()
        assert len(executor.locks) == 0
