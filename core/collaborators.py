"""
Collaborator interfaces the flow engine calls out to, with the bundled
implementations used in development and tests.

  AIReply           — generate a reply from the conversation so far
  Analytics         — node events and journey lifecycle
  Tagging           — attach a tag to a contact
  Handoff           — hand a contact to a human agent queue
  ContactDirectory  — which channel and phone reach a contact
"""
from __future__ import annotations

import abc
import structlog
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from database.store_base import BaseFlowStore
from models.schemas import (
    ContactRoute, FlowEvent, FlowEventKind, MessageHistoryEntry, NodeAction,
)

logger = structlog.get_logger()


class CollaboratorError(Exception):
    """A collaborator could not complete its call."""

    def __init__(self, message: str, collaborator: str = ""):
        self.collaborator = collaborator
        super().__init__(message)


# ══════════════════════════════════════════════════════════════
#  AI REPLY
# ══════════════════════════════════════════════════════════════

@dataclass
class AIReplyResult:
    text: str
    should_escalate: bool = False


class AIReply(abc.ABC):

    @abc.abstractmethod
    async def generate(
        self,
        contact_id: str,
        last_message: str,
        history: list[MessageHistoryEntry],
        prompt: str = "",
    ) -> AIReplyResult:
        ...


class CannedAIReply(AIReply):
    """Returns a fixed reply. Stands in for a model provider in dev and tests."""

    def __init__(self, text: str = "Thanks for your message!", should_escalate: bool = False):
        self.text = text
        self.should_escalate = should_escalate
        self.calls: list[dict[str, Any]] = []

    async def generate(self, contact_id, last_message, history, prompt=""):
        self.calls.append({
            "contact_id": contact_id, "last_message": last_message,
            "history": len(history), "prompt": prompt,
        })
        return AIReplyResult(text=self.text, should_escalate=self.should_escalate)


# ══════════════════════════════════════════════════════════════
#  ANALYTICS
# ══════════════════════════════════════════════════════════════

class Analytics(abc.ABC):

    @abc.abstractmethod
    async def record_node_event(
        self, contact_id: str, flow_id: str, node_id: str, node_type: str,
        action: NodeAction, payload: Optional[dict[str, Any]] = None,
    ) -> None:
        ...

    @abc.abstractmethod
    async def start_journey(self, contact_id: str, flow_id: str, variant_id: Optional[str] = None) -> None:
        ...

    @abc.abstractmethod
    async def complete_journey(self, contact_id: str, flow_id: str) -> None:
        ...

    @abc.abstractmethod
    async def abandon_journey(self, contact_id: str, flow_id: str, node_id: str = "") -> None:
        ...

    @abc.abstractmethod
    async def log_event(self, contact_id: str, flow_id: str, event_name: str, data: dict[str, Any]) -> None:
        ...


class StoreAnalytics(Analytics):
    """Appends every analytics call to the store's flow event log."""

    def __init__(self, store: BaseFlowStore):
        self.store = store

    async def record_node_event(self, contact_id, flow_id, node_id, node_type, action, payload=None):
        await self.store.add_event(FlowEvent(
            kind=FlowEventKind.NODE, contact_id=contact_id, flow_id=flow_id,
            node_id=node_id, node_type=node_type,
            action=NodeAction(action).value, payload=payload or {},
        ))

    async def start_journey(self, contact_id, flow_id, variant_id=None):
        await self.store.add_event(FlowEvent(
            kind=FlowEventKind.JOURNEY, contact_id=contact_id, flow_id=flow_id,
            action="started", payload={"variant_id": variant_id} if variant_id else {},
        ))

    async def complete_journey(self, contact_id, flow_id):
        await self.store.add_event(FlowEvent(
            kind=FlowEventKind.JOURNEY, contact_id=contact_id, flow_id=flow_id,
            action="completed",
        ))

    async def abandon_journey(self, contact_id, flow_id, node_id=""):
        await self.store.add_event(FlowEvent(
            kind=FlowEventKind.JOURNEY, contact_id=contact_id, flow_id=flow_id,
            node_id=node_id, action="abandoned",
        ))

    async def log_event(self, contact_id, flow_id, event_name, data):
        await self.store.add_event(FlowEvent(
            kind=FlowEventKind.CUSTOM, contact_id=contact_id, flow_id=flow_id,
            action=event_name, payload=dict(data),
        ))


# ══════════════════════════════════════════════════════════════
#  TAGGING / HANDOFF
# ══════════════════════════════════════════════════════════════

class Tagging(abc.ABC):

    @abc.abstractmethod
    async def add_tag(self, contact_id: str, tag: str) -> None:
        ...


class InMemoryTagging(Tagging):

    def __init__(self):
        self.tags: dict[str, set[str]] = {}

    async def add_tag(self, contact_id, tag):
        self.tags.setdefault(contact_id, set()).add(tag)
        logger.info("contact_tagged", contact_id=contact_id, tag=tag)


class Handoff(abc.ABC):

    @abc.abstractmethod
    async def assign_agent(self, contact_id: str, department: str) -> None:
        ...


@dataclass
class LiveChatSession:
    contact_id: str
    department: str
    status: str = "pending"
    requested_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class InMemoryHandoff(Handoff):
    """Opens a pending live chat session per contact; the latest request wins."""

    def __init__(self):
        self.sessions: dict[str, LiveChatSession] = {}

    async def assign_agent(self, contact_id, department):
        self.sessions[contact_id] = LiveChatSession(contact_id, department)
        logger.info("agent_handoff_requested", contact_id=contact_id, department=department)


# ══════════════════════════════════════════════════════════════
#  CONTACT DIRECTORY
# ══════════════════════════════════════════════════════════════

class ContactDirectory(abc.ABC):

    @abc.abstractmethod
    async def get_route(self, contact_id: str) -> Optional[ContactRoute]:
        """Connected channel and phone for the contact, or None."""


class StaticContactDirectory(ContactDirectory):

    def __init__(self, routes: Optional[dict[str, ContactRoute]] = None):
        self._routes: dict[str, ContactRoute] = dict(routes or {})

    def add(self, contact_id: str, channel_id: str, phone: str):
        self._routes[contact_id] = ContactRoute(channel_id=channel_id, phone=phone)

    def remove(self, contact_id: str):
        self._routes.pop(contact_id, None)

    async def get_route(self, contact_id):
        return self._routes.get(contact_id)
