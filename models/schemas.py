"""
Core data models for convoflow.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import json
import uuid
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    AliasChoices, BaseModel, ConfigDict, Field, ValidationError,
    field_validator, model_validator,
)

from models.errors import GraphError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class NodeType(str, Enum):
    START = "start"
    BOT_RESPONSE = "botResponse"
    USER_INPUT = "userInput"
    CONDITION = "condition"
    DELAY = "delay"
    AI_RESPONSE = "aiResponse"
    ASSIGN_AGENT = "assignAgent"
    ADD_TAG = "addTag"
    UPDATE_SCORE = "updateScore"
    LOG_EVENT = "logEvent"
    INTEGRATION = "integration"


class NodeAction(str, Enum):
    ENTERED = "entered"
    COMPLETED = "completed"
    DROPPED_OFF = "dropped_off"


class MessageStatus(str, Enum):
    PENDING = "pending"
    DISPATCHING = "dispatching"
    SENT = "sent"
    FAILED = "failed"


class TimerStatus(str, Enum):
    PENDING = "pending"
    FIRING = "firing"       # claimed by a worker; released back to pending if the lease expires
    FIRED = "fired"


class FlowEventKind(str, Enum):
    NODE = "node"
    JOURNEY = "journey"
    CUSTOM = "custom"


# ──────────────────────────────────────────────────────────────
#  Node configs — one explicit model per node type
# ──────────────────────────────────────────────────────────────

class _NodeConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)


class StartConfig(_NodeConfig):
    pass


class BotResponseConfig(_NodeConfig):
    message: str = ""
    media_url: Optional[str] = Field(default=None, alias="mediaUrl")
    media_type: Optional[str] = Field(default=None, alias="mediaType")


class UserInputConfig(_NodeConfig):
    save_as: str = Field(default="user_input", alias="saveAs")

    @field_validator("save_as", mode="before")
    @classmethod
    def _default_when_blank(cls, v):
        return v or "user_input"


class ConditionConfig(_NodeConfig):
    variable: str
    operator: Literal["equals", "contains", "greater", "less"]
    value: str = ""

    @field_validator("value", mode="before")
    @classmethod
    def _as_string(cls, v):
        return "" if v is None else str(v)


class DelayConfig(_NodeConfig):
    seconds: Optional[int] = Field(default=None, ge=0)      # None or 0 → flow.default_delay_seconds


class AIResponseConfig(_NodeConfig):
    prompt: str = "Respond helpfully to the customer"
    use_context: bool = Field(default=True, alias="useContext")


class AssignAgentConfig(_NodeConfig):
    department: str = "general"


class AddTagConfig(_NodeConfig):
    tag: str = "tagged"


class UpdateScoreConfig(_NodeConfig):
    change: int = 0


class LogEventConfig(_NodeConfig):
    event_name: str = Field(default="custom_event", alias="eventName")


class IntegrationConfig(_NodeConfig):
    method: str = "POST"
    url: str = Field(min_length=1)
    headers: dict[str, str] = {}
    body: str = "{}"

    @field_validator("headers", mode="before")
    @classmethod
    def _parse_headers(cls, v):
        # The editor stores headers as a JSON string
        if v is None or v == "":
            return {}
        if isinstance(v, str):
            return json.loads(v)
        return v

    @field_validator("body", mode="before")
    @classmethod
    def _body_as_text(cls, v):
        if v is None:
            return "{}"
        if isinstance(v, (dict, list)):
            return json.dumps(v)
        return v

    @field_validator("method")
    @classmethod
    def _upper(cls, v: str) -> str:
        return v.upper()


# ──────────────────────────────────────────────────────────────
#  Nodes — tagged union discriminated on `type`
# ──────────────────────────────────────────────────────────────

_CONFIG_ALIASES = AliasChoices("config", "data")


class _NodeBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)
    id: str

    @property
    def node_type(self) -> NodeType:
        return NodeType(self.type)


class StartNode(_NodeBase):
    type: Literal["start"] = "start"
    config: StartConfig = Field(default_factory=StartConfig, validation_alias=_CONFIG_ALIASES)


class BotResponseNode(_NodeBase):
    type: Literal["botResponse"] = "botResponse"
    config: BotResponseConfig = Field(default_factory=BotResponseConfig, validation_alias=_CONFIG_ALIASES)


class UserInputNode(_NodeBase):
    type: Literal["userInput"] = "userInput"
    config: UserInputConfig = Field(default_factory=UserInputConfig, validation_alias=_CONFIG_ALIASES)


class ConditionNode(_NodeBase):
    type: Literal["condition"] = "condition"
    config: ConditionConfig = Field(validation_alias=_CONFIG_ALIASES)


class DelayNode(_NodeBase):
    type: Literal["delay"] = "delay"
    config: DelayConfig = Field(default_factory=DelayConfig, validation_alias=_CONFIG_ALIASES)


class AIResponseNode(_NodeBase):
    type: Literal["aiResponse"] = "aiResponse"
    config: AIResponseConfig = Field(default_factory=AIResponseConfig, validation_alias=_CONFIG_ALIASES)


class AssignAgentNode(_NodeBase):
    type: Literal["assignAgent"] = "assignAgent"
    config: AssignAgentConfig = Field(default_factory=AssignAgentConfig, validation_alias=_CONFIG_ALIASES)


class AddTagNode(_NodeBase):
    type: Literal["addTag"] = "addTag"
    config: AddTagConfig = Field(default_factory=AddTagConfig, validation_alias=_CONFIG_ALIASES)


class UpdateScoreNode(_NodeBase):
    type: Literal["updateScore"] = "updateScore"
    config: UpdateScoreConfig = Field(default_factory=UpdateScoreConfig, validation_alias=_CONFIG_ALIASES)


class LogEventNode(_NodeBase):
    type: Literal["logEvent"] = "logEvent"
    config: LogEventConfig = Field(default_factory=LogEventConfig, validation_alias=_CONFIG_ALIASES)


class IntegrationNode(_NodeBase):
    type: Literal["integration"] = "integration"
    config: IntegrationConfig = Field(validation_alias=_CONFIG_ALIASES)


FlowNode = Annotated[
    Union[
        StartNode, BotResponseNode, UserInputNode, ConditionNode, DelayNode,
        AIResponseNode, AssignAgentNode, AddTagNode, UpdateScoreNode,
        LogEventNode, IntegrationNode,
    ],
    Field(discriminator="type"),
]


class FlowEdge(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str = Field(default_factory=_new_id)
    source: str = Field(validation_alias=AliasChoices("source", "sourceNodeId", "source_node_id"))
    target: str = Field(validation_alias=AliasChoices("target", "targetNodeId", "target_node_id"))
    branch_label: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("branch_label", "branchLabel", "sourceHandle"),
    )


# ──────────────────────────────────────────────────────────────
#  Flow Definition — immutable graph, validated on load
# ──────────────────────────────────────────────────────────────

class FlowDefinition(BaseModel):
    """
    A published flow graph.

    Immutable: publishing an edit means saving a new `version`. Running
    FlowStates pin the version they started on.

    Example:
      id: welcome
      keyword_triggers: [start, hi]
      nodes:
        - { id: n0, type: start }
        - { id: n1, type: botResponse, config: { message: "Welcome {{name}}!" } }
        - { id: n2, type: userInput, config: { save_as: answer } }
      edges:
        - { source: n0, target: n1 }
        - { source: n1, target: n2 }
    """
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    version: int = 1
    variant_id: Optional[str] = None
    organization_id: str = ""
    name: str = ""
    is_active: bool = True
    keyword_triggers: list[str] = []
    event_triggers: list[str] = []
    nodes: list[FlowNode]
    edges: list[FlowEdge] = []

    @model_validator(mode="after")
    def _check_graph(self) -> "FlowDefinition":
        errors = validate_graph(self)
        if errors:
            raise GraphError(
                f"Invalid flow '{self.id}': {'; '.join(errors)}", flow_id=self.id,
            )
        return self

    @classmethod
    def load(cls, data: dict[str, Any]) -> "FlowDefinition":
        """Parse a stored definition, reporting any defect as a GraphError."""
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise GraphError(
                f"Invalid flow '{data.get('id', '?')}': {e.error_count()} validation errors",
                flow_id=str(data.get("id", "")),
            ) from e

    # ── Graph navigation ──────────────────────────────────────

    @property
    def start_node(self) -> _NodeBase:
        return next(n for n in self.nodes if n.type == NodeType.START.value)

    def node(self, node_id: str) -> Optional[_NodeBase]:
        return next((n for n in self.nodes if n.id == node_id), None)

    def outgoing(self, node_id: str) -> list[FlowEdge]:
        return [e for e in self.edges if e.source == node_id]

    def next_node_id(self, node_id: str) -> Optional[str]:
        edges = self.outgoing(node_id)
        return edges[0].target if edges else None

    @property
    def has_triggers(self) -> bool:
        return bool(self.keyword_triggers or self.event_triggers)


def validate_graph(flow: FlowDefinition) -> list[str]:
    """Return a list of structural errors for a flow graph."""
    errors = []
    ids = [n.id for n in flow.nodes]
    id_set = set(ids)

    if len(ids) != len(id_set):
        dupes = sorted({i for i in ids if ids.count(i) > 1})
        errors.append(f"duplicate node ids {dupes}")

    starts = [n.id for n in flow.nodes if n.type == NodeType.START.value]
    if len(starts) != 1:
        errors.append(f"expected exactly one start node, found {len(starts)}")

    for e in flow.edges:
        if e.source not in id_set:
            errors.append(f"edge '{e.id}' source '{e.source}' not in nodes")
        if e.target not in id_set:
            errors.append(f"edge '{e.id}' target '{e.target}' not in nodes")

    if len(starts) == 1:
        seen = {starts[0]}
        queue = deque([starts[0]])
        while queue:
            current = queue.popleft()
            for e in flow.edges:
                if e.source == current and e.target in id_set and e.target not in seen:
                    seen.add(e.target)
                    queue.append(e.target)
        unreachable = [i for i in ids if i not in seen]
        if unreachable:
            errors.append(f"nodes unreachable from start {unreachable}")

    return errors


def coerce_variables(values: Optional[dict[str, Any]]) -> dict[str, str]:
    """Flow variables are strings; anything else is stored as its JSON text."""
    if not values:
        return {}
    return {
        str(k): v if isinstance(v, str) else json.dumps(v)
        for k, v in values.items()
    }


# ──────────────────────────────────────────────────────────────
#  Flow State — durable per-(contact, flow) execution cursor
# ──────────────────────────────────────────────────────────────

class PathEntry(BaseModel):
    node_id: str
    action: NodeAction
    timestamp: datetime = Field(default_factory=_utcnow)


class FlowState(BaseModel):
    """
    One row per (contact_id, flow_id).

    `version` is the optimistic-concurrency counter: stores only accept a
    save whose version matches what they hold, then increment it.
    """
    contact_id: str
    flow_id: str
    flow_version: int = 1
    variant_id: Optional[str] = None
    organization_id: str = ""
    current_node_id: str
    variables: dict[str, str] = {}
    awaiting_input: bool = False
    awaiting_timer: bool = False
    timer_id: Optional[str] = None          # FlowTimer the state is parked on
    completed: bool = False
    engagement_score: int = Field(default=50, ge=0, le=100)
    path: list[PathEntry] = []
    version: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator("variables", mode="before")
    @classmethod
    def _stringify(cls, v):
        return coerce_variables(v)

    @property
    def key(self) -> tuple[str, str]:
        return (self.contact_id, self.flow_id)

    @property
    def is_suspended(self) -> bool:
        return self.awaiting_input or self.awaiting_timer

    def adjust_score(self, change: int) -> int:
        self.engagement_score = max(0, min(100, self.engagement_score + change))
        return self.engagement_score

    def record(self, node_id: str, action: NodeAction):
        self.path.append(PathEntry(node_id=node_id, action=action))


# ──────────────────────────────────────────────────────────────
#  Outbound Message — a dispatch queue entry
# ──────────────────────────────────────────────────────────────

class OutboundMessage(BaseModel):
    id: str = Field(default_factory=_new_id)
    channel_id: str
    contact_id: str
    content: str
    media_ref: Optional[str] = None
    media_type: Optional[str] = None
    status: MessageStatus = MessageStatus.PENDING
    scheduled_at: datetime = Field(default_factory=_utcnow)
    sent_at: Optional[datetime] = None
    claimed_at: Optional[datetime] = None
    retry_count: int = 0
    last_error: Optional[str] = None
    delivery_id: Optional[str] = None
    metadata: dict[str, Any] = {}            # flow_id, node_id, ai_generated
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in (MessageStatus.SENT, MessageStatus.FAILED)


class ChannelStats(BaseModel):
    channel_id: str
    daily_limit: int
    sent_today: int
    remaining_today: int
    total_sent: int = 0


class QueueStats(BaseModel):
    pending: int = 0
    dispatching: int = 0
    sent: int = 0
    failed: int = 0
    avg_delay_seconds: Optional[float] = None   # scheduled_at → sent_at, sent rows only


# ──────────────────────────────────────────────────────────────
#  Supporting records
# ──────────────────────────────────────────────────────────────

class FlowTimer(BaseModel):
    """Durable continuation for a delay node."""
    id: str = Field(default_factory=_new_id)
    contact_id: str
    flow_id: str
    node_id: str
    due_at: datetime
    status: TimerStatus = TimerStatus.PENDING
    claimed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)


class MessageHistoryEntry(BaseModel):
    id: str = Field(default_factory=_new_id)
    contact_id: str
    channel_id: str
    content: str
    direction: str = "outbound_bot"          # "outbound_bot" | "inbound"
    media_ref: Optional[str] = None
    media_type: Optional[str] = None
    delivery_id: Optional[str] = None
    outbound_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)


class FlowEvent(BaseModel):
    """A row of the flow event log (node analytics, journeys, custom events)."""
    id: str = Field(default_factory=_new_id)
    kind: FlowEventKind
    contact_id: str
    flow_id: str = ""
    node_id: str = ""
    node_type: str = ""
    action: str = ""
    payload: dict[str, Any] = {}
    timestamp: datetime = Field(default_factory=_utcnow)


class ContactRoute(BaseModel):
    """Where to reach a contact: which connected channel and which address."""
    channel_id: str
    phone: str
