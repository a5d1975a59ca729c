"""Tests for resumption, trigger matching and inbound routing."""
import asyncio

import pytest
from unittest.mock import AsyncMock

from core.executor import AdvanceStatus
from models.schemas import FlowEventKind

from conftest import chain, make_flow


def survey_flow(flow_id="survey", **kwargs):
    return chain(
        flow_id,
        {"id": "ask", "type": "userInput", "config": {"saveAs": "answer"}},
        {"id": "thanks", "type": "botResponse", "config": {"message": "Thanks, {{answer}}"}},
        **kwargs,
    )


class TestTriggerMatcher:
    @pytest.mark.asyncio
    async def test_keyword_match_is_trimmed_and_case_insensitive(self, store, matcher):
        await store.save_flow(survey_flow(keyword_triggers=["Start", "hi "]))
        started = await matcher.match("c1", "org1", "  START ")
        assert [f.id for f in started] == ["survey"]
        state = await store.get_state("c1", "survey")
        assert state.awaiting_input

    @pytest.mark.asyncio
    async def test_keyword_must_match_whole_text(self, store, matcher):
        await store.save_flow(survey_flow(keyword_triggers=["start"]))
        assert await matcher.match("c1", "org1", "please start") == []
        assert await store.get_state("c1", "survey") is None

    @pytest.mark.asyncio
    async def test_flow_without_triggers_is_catch_all(self, store, matcher):
        await store.save_flow(survey_flow())
        started = await matcher.match("c1", "org1", "anything at all")
        assert [f.id for f in started] == ["survey"]

    @pytest.mark.asyncio
    async def test_other_organization_and_inactive_ignored(self, store, matcher):
        await store.save_flow(survey_flow("other_org", organization_id="org2"))
        await store.save_flow(survey_flow("off", is_active=False))
        assert await matcher.match("c1", "org1", "hi") == []

    @pytest.mark.asyncio
    async def test_event_match(self, store, matcher):
        await store.save_flow(survey_flow("onboard", event_triggers=["signup"]))
        await store.save_flow(survey_flow("catchall"))
        started = await matcher.match_event("c1", "org1", "signup")
        assert [f.id for f in started] == ["onboard"]

    @pytest.mark.asyncio
    async def test_start_is_idempotent_while_running(self, store, matcher):
        flow = survey_flow()
        await store.save_flow(flow)
        first = await matcher.start(flow, "c1", "org1")
        second = await matcher.start(flow, "c1", "org1")
        assert first.status == AdvanceStatus.SUSPENDED_INPUT
        assert second is None

    @pytest.mark.asyncio
    async def test_completed_flow_can_restart(self, store, matcher):
        flow = chain("tagger", {"id": "tag", "type": "addTag"})
        await store.save_flow(flow)
        first = await matcher.start(flow, "c1")
        second = await matcher.start(flow, "c1")
        assert first.status == AdvanceStatus.COMPLETED
        assert second.status == AdvanceStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_start_pins_version_and_variant(self, store, matcher):
        await store.save_flow(survey_flow())
        v2 = survey_flow(version=2, variant_id="B")
        await store.save_flow(v2)
        await matcher.start(v2, "c1", variables={"source": "ad"})

        state = await store.get_state("c1", "survey")
        assert state.flow_version == 2
        assert state.variant_id == "B"
        assert state.organization_id == "org1"
        assert state.variables["source"] == "ad"

        journeys = [e for e in await store.list_events(contact_id="c1") if e.kind == FlowEventKind.JOURNEY]
        assert journeys[0].action == "started"
        assert journeys[0].payload == {"variant_id": "B"}

    @pytest.mark.asyncio
    async def test_journey_start_failure_does_not_block(self, store, executor):
        from core.triggers import TriggerMatcher
        analytics = AsyncMock()
        analytics.start_journey.side_effect = RuntimeError("down")
        matcher = TriggerMatcher(store, executor, analytics)
        flow = survey_flow()
        await store.save_flow(flow)
        result = await matcher.start(flow, "c1")
        assert result.status == AdvanceStatus.SUSPENDED_INPUT


class TestResumptionTrigger:
    @pytest.mark.asyncio
    async def test_reply_resumes_awaiting_flows(self, store, matcher, resumer):
        await store.save_flow(survey_flow("a"))
        await store.save_flow(survey_flow("b"))
        await matcher.match("c1", "org1", "hello")

        results = await resumer.resume("c1", "Green")
        assert sorted(r.state.flow_id for r in results) == ["a", "b"]
        assert all(r.status == AdvanceStatus.COMPLETED for r in results)
        for flow_id in ("a", "b"):
            state = await store.get_state("c1", flow_id)
            assert state.variables["answer"] == "Green"
            assert state.completed

    @pytest.mark.asyncio
    async def test_resume_uses_pinned_version(self, store, matcher, resumer):
        await store.save_flow(survey_flow())
        await matcher.match("c1", "org1", "hello")
        # v2 renames the node the running state sits on
        await store.save_flow(chain("survey", {"id": "other", "type": "userInput"}, version=2))

        [result] = await resumer.resume("c1", "yes")
        assert result.status == AdvanceStatus.COMPLETED
        assert result.state.variables["answer"] == "yes"

    @pytest.mark.asyncio
    async def test_no_awaiting_flows(self, resumer):
        assert await resumer.resume("c1", "hi") == []

    @pytest.mark.asyncio
    async def test_missing_definition_skipped(self, store, matcher, resumer):
        flow = survey_flow()
        await store.save_flow(flow)
        await matcher.start(flow, "c1")
        store._flows.clear()
        assert await resumer.resume("c1", "hi") == []


class TestInboundRouter:
    @pytest.mark.asyncio
    async def test_resume_takes_priority_over_matching(self, store, router):
        await store.save_flow(survey_flow(keyword_triggers=["join"]))
        await store.save_flow(chain("promo", {"id": "tag", "type": "addTag"}, keyword_triggers=["yes"]))

        first = await router.handle_inbound("c1", "org1", "join")
        assert [f.id for f in first.matched] == ["survey"]
        assert first.resumed == []

        second = await router.handle_inbound("c1", "org1", "yes")
        assert len(second.resumed) == 1
        assert second.matched == []
        assert await store.get_state("c1", "promo") is None

    @pytest.mark.asyncio
    async def test_no_match_does_nothing(self, store, router):
        await store.save_flow(survey_flow(keyword_triggers=["join"]))
        outcome = await router.handle_inbound("c1", "org1", "hello")
        assert outcome.resumed == []
        assert outcome.matched == []

    @pytest.mark.asyncio
    async def test_inbound_recorded_before_flows_run(self, store, router, ai, dispatcher, clock):
        flow = chain(
            "assist",
            {"id": "ask", "type": "userInput", "config": {"saveAs": "question"}},
            {"id": "bot", "type": "aiResponse"},
            keyword_triggers=["help"],
        )
        await store.save_flow(flow)
        await router.handle_inbound("c1", "org1", "help")
        await router.handle_inbound("c1", "org1", "what does it cost?")

        # The AI saw both customer messages
        assert ai.calls[0]["history"] == 2

        clock.advance(30)
        await dispatcher.run_once()
        history = await store.recent_history("c1")
        assert [(e.direction, e.content) for e in history] == [
            ("inbound", "help"),
            ("inbound", "what does it cost?"),
            ("outbound_bot", "Happy to help!"),
        ]
        assert {e.channel_id for e in history} == {"ch1"}

    @pytest.mark.asyncio
    async def test_explicit_channel_recorded(self, store, router):
        await router.handle_inbound("c9", "org1", "hi", channel_id="ch-web")
        [entry] = await store.recent_history("c9")
        assert entry.channel_id == "ch-web"
        assert entry.direction == "inbound"


def interleaved(coro_fn):
    """Wrap a store read so concurrent callers all see the same snapshot."""
    async def wrapper(*args, **kwargs):
        result = await coro_fn(*args, **kwargs)
        await asyncio.sleep(0)
        return result
    return wrapper


class TestConcurrentInbound:
    @pytest.mark.asyncio
    async def test_racing_replies_enter_successor_once(self, store, matcher, resumer):
        flow = survey_flow()
        await store.save_flow(flow)
        await matcher.start(flow, "c1")
        store.list_awaiting_states = interleaved(store.list_awaiting_states)

        first, second = await asyncio.gather(
            resumer.resume("c1", "Red"), resumer.resume("c1", "Blue"),
        )
        results = first + second
        assert sorted(r.status.value for r in results) == ["completed", "conflict"]

        [winner] = [r for r in results if r.status == AdvanceStatus.COMPLETED]
        state = await store.get_state("c1", "survey")
        assert state.variables["answer"] == winner.state.variables["answer"]

        entered = [e for e in await store.list_events(contact_id="c1")
                   if e.node_id == "thanks" and e.action == "entered"]
        assert len(entered) == 1
        [msg] = store._outbound.values()
        assert msg.content == f"Thanks, {state.variables['answer']}"

    @pytest.mark.asyncio
    async def test_racing_matches_start_once(self, store, matcher):
        await store.save_flow(survey_flow(keyword_triggers=["start"]))
        store.list_active_flows = interleaved(store.list_active_flows)

        await asyncio.gather(
            matcher.match("c1", "org1", "start"), matcher.match("c1", "org1", "start"),
        )

        state = await store.get_state("c1", "survey")
        assert state.awaiting_input
        events = await store.list_events(contact_id="c1")
        assert [e.action for e in events if e.kind == FlowEventKind.JOURNEY] == ["started"]
        assert [e.action for e in events if e.node_id == "start"] == ["entered", "completed"]
