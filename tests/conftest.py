"""Shared test fixtures for convoflow."""
from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone

import pytest

from channels.base import TransportRegistry
from channels.mock import MockTransport
from config.settings import AntiBanConfig, DispatcherConfig, FlowConfig
from core.collaborators import (
    CannedAIReply, InMemoryHandoff, InMemoryTagging, StaticContactDirectory,
    StoreAnalytics,
)
from core.executor import FlowExecutor
from core.integration import IntegrationClient
from core.timers import DelayTimerWorker
from core.triggers import InboundRouter, ResumptionTrigger, TriggerMatcher
from database.store_memory import InMemoryFlowStore
from dispatch.dispatcher import Dispatcher
from dispatch.queue import DispatchQueue
from models.schemas import FlowDefinition


class FakeClock:
    """Settable clock; call it to read the time."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs):
        self.now += timedelta(seconds=seconds, **kwargs)
        return self.now


def make_flow(flow_id: str = "welcome", nodes=None, edges=None, **kwargs) -> FlowDefinition:
    """Build a flow from node/edge dicts; edges may be (source, target[, label]) tuples."""
    edge_dicts = []
    for e in edges or []:
        if isinstance(e, dict):
            edge_dicts.append(e)
        else:
            d = {"source": e[0], "target": e[1]}
            if len(e) > 2:
                d["branch_label"] = e[2]
            edge_dicts.append(d)
    return FlowDefinition.load({
        "id": flow_id,
        "organization_id": kwargs.pop("organization_id", "org1"),
        "nodes": nodes or [{"id": "start", "type": "start"}],
        "edges": edge_dicts,
        **kwargs,
    })


def chain(flow_id: str, *nodes: dict, **kwargs) -> FlowDefinition:
    """Start node followed by `nodes` in a straight line."""
    all_nodes = [{"id": "start", "type": "start"}, *nodes]
    edges = [(a["id"], b["id"]) for a, b in zip(all_nodes, all_nodes[1:])]
    return make_flow(flow_id, all_nodes, edges, **kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def store() -> InMemoryFlowStore:
    return InMemoryFlowStore()


@pytest.fixture
def antiban() -> AntiBanConfig:
    return AntiBanConfig(
        message_delay_min_ms=1000, message_delay_max_ms=2000,
        typing_chars_per_second=50, daily_message_limit=100,
    )


@pytest.fixture
def dispatcher_config() -> DispatcherConfig:
    return DispatcherConfig(
        batch_size=10, concurrency=5, max_attempts=3,
        retry_backoff_seconds=300, claim_lease_seconds=120, retention_days=7,
    )


@pytest.fixture
def flow_config() -> FlowConfig:
    return FlowConfig(max_steps_per_advance=20, default_delay_seconds=3, ai_timeout_seconds=1)


@pytest.fixture
def queue(store, antiban, dispatcher_config, clock) -> DispatchQueue:
    return DispatchQueue(store, antiban, dispatcher_config, clock=clock, rng=random.Random(7))


@pytest.fixture
def directory() -> StaticContactDirectory:
    d = StaticContactDirectory()
    d.add("c1", "ch1", "+15550001")
    d.add("c2", "ch1", "+15550002")
    return d


@pytest.fixture
def mock_transport() -> MockTransport:
    return MockTransport()


@pytest.fixture
def transports(mock_transport) -> TransportRegistry:
    return TransportRegistry(default=mock_transport)


@pytest.fixture
def analytics(store) -> StoreAnalytics:
    return StoreAnalytics(store)


@pytest.fixture
def ai() -> CannedAIReply:
    return CannedAIReply("Happy to help!")


@pytest.fixture
def tagging() -> InMemoryTagging:
    return InMemoryTagging()


@pytest.fixture
def handoff() -> InMemoryHandoff:
    return InMemoryHandoff()


@pytest.fixture
def integration() -> IntegrationClient:
    return IntegrationClient(retry_wait=0)


@pytest.fixture
def executor(store, queue, directory, analytics, ai, tagging, handoff,
             integration, flow_config, clock) -> FlowExecutor:
    return FlowExecutor(
        store, queue, directory, analytics, ai, tagging, handoff,
        integration=integration, config=flow_config, clock=clock,
    )


@pytest.fixture
def matcher(store, executor, analytics) -> TriggerMatcher:
    return TriggerMatcher(store, executor, analytics)


@pytest.fixture
def resumer(store, executor) -> ResumptionTrigger:
    return ResumptionTrigger(store, executor)


@pytest.fixture
def router(resumer, matcher, directory) -> InboundRouter:
    return InboundRouter(resumer, matcher, directory)


@pytest.fixture
def dispatcher(store, queue, transports, directory, dispatcher_config, clock) -> Dispatcher:
    return Dispatcher(store, queue, transports, directory, dispatcher_config, clock=clock)


@pytest.fixture
def timer_worker(store, executor, flow_config, clock) -> DelayTimerWorker:
    return DelayTimerWorker(store, executor, flow_config, clock=clock)
