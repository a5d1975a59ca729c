"""
Runtime wiring — builds every component from Settings and owns the two
background loops (outbound dispatcher, delay timer worker).

Usage:
    runtime = FlowRuntime.from_settings(get_settings(), directory=my_directory)
    await runtime.start()
    await runtime.router.handle_inbound(contact_id, org_id, text)   # from a webhook
    await runtime.stop()
"""
from __future__ import annotations

import structlog
from typing import Optional

from channels.base import TransportRegistry
from channels.http_gateway import HttpGatewayTransport
from channels.mock import MockTransport
from config.settings import Settings
from core.collaborators import (
    AIReply, CannedAIReply, ContactDirectory, Handoff, InMemoryHandoff,
    InMemoryTagging, StaticContactDirectory, StoreAnalytics, Tagging,
)
from core.executor import FlowExecutor
from core.integration import IntegrationClient
from core.timers import DelayTimerWorker
from core.triggers import InboundRouter, ResumptionTrigger, TriggerMatcher
from database.store_base import BaseFlowStore
from database.store_factory import create_store
from dispatch.dispatcher import Dispatcher
from dispatch.queue import DispatchQueue

logger = structlog.get_logger()


def build_transports(settings: Settings) -> TransportRegistry:
    """Transport registry with the configured transport as the default for every channel."""
    cfg = settings.transport
    if cfg.type == "http":
        return TransportRegistry(default=HttpGatewayTransport(cfg))
    return TransportRegistry(default=MockTransport())


class FlowRuntime:

    def __init__(
        self,
        settings: Settings,
        store: BaseFlowStore,
        transports: TransportRegistry,
        directory: ContactDirectory,
        ai: AIReply,
        tagging: Tagging,
        handoff: Handoff,
    ):
        self.settings = settings
        self.store = store
        self.transports = transports
        self.directory = directory

        self.analytics = StoreAnalytics(store)
        self.queue = DispatchQueue(
            store, settings.antiban, settings.dispatcher, tz=settings.timezone,
        )
        self.integration = IntegrationClient(
            timeout=settings.flow.integration_timeout_seconds,
            max_attempts=settings.flow.integration_max_attempts,
        )
        self.executor = FlowExecutor(
            store, self.queue, directory, self.analytics, ai, tagging, handoff,
            integration=self.integration, config=settings.flow,
        )
        self.resumer = ResumptionTrigger(store, self.executor)
        self.matcher = TriggerMatcher(store, self.executor, self.analytics)
        self.router = InboundRouter(self.resumer, self.matcher, directory)
        self.dispatcher = Dispatcher(
            store, self.queue, transports, directory, settings.dispatcher,
        )
        self.timers = DelayTimerWorker(store, self.executor, settings.flow)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: Optional[BaseFlowStore] = None,
        transports: Optional[TransportRegistry] = None,
        directory: Optional[ContactDirectory] = None,
        ai: Optional[AIReply] = None,
        tagging: Optional[Tagging] = None,
        handoff: Optional[Handoff] = None,
    ) -> "FlowRuntime":
        if store is None:
            store = create_store(settings.database)
        return cls(
            settings=settings,
            store=store,
            transports=transports or build_transports(settings),
            directory=directory or StaticContactDirectory(),
            ai=ai or CannedAIReply(settings.flow.ai_fallback_message),
            tagging=tagging or InMemoryTagging(),
            handoff=handoff or InMemoryHandoff(),
        )

    async def start(self):
        init_schema = getattr(self.store, "init_schema", None)
        if init_schema is not None:
            await init_schema()
        await self.dispatcher.start_background()
        await self.timers.start_background()
        logger.info("flow_runtime_started",
                    store=type(self.store).__name__,
                    transports=self.transports.channels() or ["*"])

    async def stop(self):
        await self.dispatcher.stop()
        await self.timers.stop()
        await self.transports.close_all()
        await self.integration.close()
        close = getattr(self.store, "close", None)
        if close is not None:
            await close()
        logger.info("flow_runtime_stopped")
