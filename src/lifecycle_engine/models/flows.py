"""Flow graph, enrollment and side-effect records.

Node and action configs are one dataclass per variant; the flow engine
dispatches on the node type / config class rather than probing for keys.
Stored flows use the builder's camelCase JSON, converted through
``models.serialization``.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Union

from lifecycle_engine.models.domain import LifecycleState, SegmentFilter
from lifecycle_engine.models.serialization import dump, load, parse_datetime


class NodeType(str, Enum):
    TRIGGER = "trigger"
    ACTION = "action"
    CONDITION = "condition"
    DELAY = "delay"
    SPLIT = "split"
    FILTER = "filter"
    GOTO = "goto"
    EXIT = "exit"


class EnrollmentStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    EXITED = "exited"
    ERROR = "error"

    @property
    def is_live(self) -> bool:
        return self in (EnrollmentStatus.ACTIVE, EnrollmentStatus.PAUSED)

    @property
    def is_terminal(self) -> bool:
        return not self.is_live


class HistoryAction(str, Enum):
    ENTERED = "entered"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"
    WAITING = "waiting"


class TriggerKind(str, Enum):
    LIFECYCLE_CHANGE = "lifecycle_change"
    EVENT_RECEIVED = "event_received"
    SCHEDULE = "schedule"
    MANUAL = "manual"
    SEGMENT_ENTRY = "segment_entry"
    WEBHOOK_RECEIVED = "webhook_received"
    DATE_PROPERTY = "date_property"


class DelayKind(str, Enum):
    FIXED_DURATION = "fixed_duration"
    UNTIL_EVENT = "until_event"
    UNTIL_DATE = "until_date"
    UNTIL_TIME_OF_DAY = "until_time_of_day"
    SMART_SEND_TIME = "smart_send_time"


def _rules():
    return field(default_factory=list, metadata={"item": SegmentFilter})


# ── Node configs ────────────────────────────────────────────────────────

@dataclass
class TriggerConfig:
    kind: str
    lifecycle_from: list[str] = field(default_factory=list)
    lifecycle_to: list[str] = field(default_factory=list)
    event_name: str | None = None
    event_filters: list[SegmentFilter] = _rules()
    cron_expression: str | None = None
    timezone: str | None = None
    segment_id: str | None = None
    webhook_path: str | None = None
    date_property: str | None = None
    date_offset_days: int | None = None
    allow_re_entry: bool = False
    re_entry_cooldown_minutes: int | None = None


@dataclass
class ConditionConfig:
    logic: str = "AND"
    rules: list[SegmentFilter] = _rules()


@dataclass
class FilterConfig:
    logic: str = "AND"
    rules: list[SegmentFilter] = _rules()


@dataclass
class DelayConfig:
    kind: str
    duration_minutes: float | None = None
    wait_for_event: str | None = None
    wait_timeout_minutes: float | None = None
    until_date: str | None = None
    until_time: str | None = None
    until_timezone: str | None = None
    send_window_start: str | None = None
    send_window_end: str | None = None


@dataclass
class SplitVariant:
    id: str
    label: str = ""
    percentage: float = 0


@dataclass
class SplitConfig:
    variants: list[SplitVariant] = field(default_factory=list, metadata={"item": SplitVariant})
    winner_metric: str | None = None
    auto_pick_after: int | None = None
    winner_id: str | None = None


@dataclass
class GotoConfig:
    target_node_id: str = ""
    max_loops: int | None = None


@dataclass
class ExitConfig:
    reason: str | None = None


# ── Action configs (one per action kind) ────────────────────────────────

@dataclass
class ActionConfig:
    kind: ClassVar[str] = ""


@dataclass
class SendEmailConfig(ActionConfig):
    kind: ClassVar[str] = "send_email"
    email_subject: str = ""
    email_body: str = ""
    email_from_name: str | None = None
    email_reply_to: str | None = None
    email_template_id: str | None = None


@dataclass
class SendWebhookConfig(ActionConfig):
    kind: ClassVar[str] = "send_webhook"
    webhook_url: str = ""
    webhook_method: str = "POST"
    webhook_headers: dict[str, str] = field(default_factory=dict)
    webhook_payload: str = "{}"


@dataclass
class UpdateUserConfig(ActionConfig):
    kind: ClassVar[str] = "update_user"
    user_properties: dict[str, Any] = field(default_factory=dict)


@dataclass
class AddTagConfig(ActionConfig):
    kind: ClassVar[str] = "add_tag"
    tag: str = ""


@dataclass
class RemoveTagConfig(ActionConfig):
    kind: ClassVar[str] = "remove_tag"
    tag: str = ""


@dataclass
class AssignSegmentConfig(ActionConfig):
    kind: ClassVar[str] = "assign_segment"
    segment_id: str = ""


@dataclass
class CreateTaskConfig(ActionConfig):
    kind: ClassVar[str] = "create_task"
    task_title: str = ""
    task_assignee: str | None = None
    task_priority: str | None = None


@dataclass
class ApiCallConfig(ActionConfig):
    kind: ClassVar[str] = "api_call"
    api_url: str = ""
    api_method: str = "POST"
    api_headers: dict[str, str] = field(default_factory=dict)
    api_body_template: str = "{}"
    api_response_variable: str | None = None


@dataclass
class SetVariableConfig(ActionConfig):
    kind: ClassVar[str] = "set_variable"
    variable_key: str = ""
    variable_value: str = ""


@dataclass
class SendNotificationConfig(ActionConfig):
    kind: ClassVar[str] = "send_notification"
    notification_title: str = ""
    notification_body: str = ""
    notification_channel: str = "in_app"


ACTION_CONFIG_TYPES: dict[str, type[ActionConfig]] = {
    cls.kind: cls
    for cls in (
        SendEmailConfig, SendWebhookConfig, UpdateUserConfig, AddTagConfig, RemoveTagConfig,
        AssignSegmentConfig, CreateTaskConfig, ApiCallConfig, SetVariableConfig, SendNotificationConfig,
    )
}

NodeConfig = Union[
    TriggerConfig, ActionConfig, ConditionConfig, DelayConfig,
    SplitConfig, FilterConfig, GotoConfig, ExitConfig,
]

# node type -> (wire key, config class); action configs resolve through ACTION_CONFIG_TYPES
_CONFIG_SLOTS: dict[NodeType, tuple[str, type | None]] = {
    NodeType.TRIGGER: ("triggerConfig", TriggerConfig),
    NodeType.ACTION: ("actionConfig", None),
    NodeType.CONDITION: ("conditionConfig", ConditionConfig),
    NodeType.DELAY: ("delayConfig", DelayConfig),
    NodeType.SPLIT: ("splitConfig", SplitConfig),
    NodeType.FILTER: ("filterConfig", FilterConfig),
    NodeType.GOTO: ("goToConfig", GotoConfig),
    NodeType.EXIT: ("exitConfig", ExitConfig),
}


def parse_action_config(raw: dict | None) -> ActionConfig | None:
    if not raw:
        return None
    cls = ACTION_CONFIG_TYPES.get(raw.get("kind", ""))
    if cls is None:
        return None
    return load(cls, raw)


def dump_action_config(config: ActionConfig) -> dict:
    return {"kind": config.kind, **dump(config)}


# ── Graph ───────────────────────────────────────────────────────────────

@dataclass
class FlowNode:
    id: str
    node_type: NodeType | str
    label: str = ""
    config: NodeConfig | None = None
    description: str | None = None
    position: dict[str, float] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: dict) -> FlowNode:
        data = raw.get("data") or {}
        node_type_raw = data.get("nodeType") or raw.get("type") or ""
        try:
            node_type: NodeType | str = NodeType(node_type_raw)
        except ValueError:
            node_type = node_type_raw
        config = None
        slot = _CONFIG_SLOTS.get(node_type) if isinstance(node_type, NodeType) else None
        if slot is not None:
            key, config_cls = slot
            raw_config = data.get(key)
            if node_type is NodeType.ACTION:
                config = parse_action_config(raw_config)
            elif raw_config is not None:
                config = load(config_cls, raw_config)
        return cls(
            id=raw["id"],
            node_type=node_type,
            label=data.get("label", ""),
            config=config,
            description=data.get("description"),
            position=raw.get("position") or {},
        )

    def to_dict(self) -> dict:
        type_value = self.node_type.value if isinstance(self.node_type, NodeType) else self.node_type
        data: dict[str, Any] = {"label": self.label, "nodeType": type_value}
        if self.description:
            data["description"] = self.description
        if self.config is not None and isinstance(self.node_type, NodeType):
            key, _ = _CONFIG_SLOTS[self.node_type]
            if isinstance(self.config, ActionConfig):
                data[key] = dump_action_config(self.config)
            else:
                data[key] = dump(self.config)
        return {"id": self.id, "type": type_value, "position": dict(self.position), "data": data}


@dataclass
class FlowEdge:
    id: str
    source: str
    target: str
    source_handle: str | None = None
    target_handle: str | None = None
    label: str | None = None


@dataclass
class FlowVariable:
    key: str
    label: str = ""
    type: str = "string"
    default_value: Any = None
    source: str | None = None
    source_field: str | None = None


@dataclass
class FlowMetrics:
    total_enrolled: int = 0
    currently_active: int = 0
    completed: int = 0
    goal_reached: int = 0
    exited_early: int = 0
    error_count: int = 0


@dataclass
class FlowDefinition:
    id: str
    name: str
    status: str = "draft"
    version: int = 1
    nodes: list[FlowNode] = field(default_factory=list)
    edges: list[FlowEdge] = field(default_factory=list)
    variables: list[FlowVariable] = field(default_factory=list)
    settings: dict[str, Any] = field(default_factory=dict)
    metrics: FlowMetrics = field(default_factory=FlowMetrics)
    description: str = ""
    org_id: str | None = None

    def find_node(self, node_id: str) -> FlowNode | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def trigger_node(self) -> FlowNode | None:
        for node in self.nodes:
            if node.node_type is NodeType.TRIGGER:
                return node
        return None

    def outgoing_edges(self, node_id: str) -> list[FlowEdge]:
        return [e for e in self.edges if e.source == node_id]

    def next_node(self, node_id: str, handle: str | None = None) -> FlowNode | None:
        """Follow the edge for ``handle`` (first edge when absent or unmatched)."""
        edges = self.outgoing_edges(node_id)
        if not edges:
            return None
        edge = edges[0]
        if handle:
            edge = next((e for e in edges if e.source_handle == handle), edges[0])
        return self.find_node(edge.target)


def parse_flow(data: dict) -> FlowDefinition:
    return FlowDefinition(
        id=data["id"],
        name=data.get("name", ""),
        status=data.get("status", "draft"),
        version=data.get("version") or 1,
        nodes=[FlowNode.from_dict(n) for n in data.get("nodes") or []],
        edges=[load(FlowEdge, e) for e in data.get("edges") or []],
        variables=[load(FlowVariable, v) for v in data.get("variables") or []],
        settings=dict(data.get("settings") or {}),
        metrics=load(FlowMetrics, data.get("metrics")),
        description=data.get("description") or "",
        org_id=data.get("orgId"),
    )


def flow_to_dict(flow: FlowDefinition) -> dict:
    return {
        "id": flow.id,
        "name": flow.name,
        "status": flow.status,
        "version": flow.version,
        "description": flow.description,
        "orgId": flow.org_id,
        "nodes": [n.to_dict() for n in flow.nodes],
        "edges": [dump(e) for e in flow.edges],
        "variables": [dump(v) for v in flow.variables],
        "settings": dict(flow.settings),
        "metrics": dump(flow.metrics),
    }


# ── Enrollment ──────────────────────────────────────────────────────────

@dataclass
class HistoryEntry:
    node_id: str
    node_name: str
    node_type: str
    action: HistoryAction = field(metadata={"parse": HistoryAction})
    timestamp: datetime = field(metadata={"parse": parse_datetime})
    details: str | None = None


@dataclass
class FlowEnrollment:
    id: str
    flow_id: str
    user_id: str
    current_node_id: str
    status: EnrollmentStatus = field(default=EnrollmentStatus.ACTIVE, metadata={"parse": EnrollmentStatus})
    org_id: str | None = None
    flow_version: int = 1
    account_id: str | None = None
    variables: dict[str, Any] = field(default_factory=dict)
    enrolled_at: datetime | None = field(default=None, metadata={"parse": parse_datetime})
    last_processed_at: datetime | None = field(default=None, metadata={"parse": parse_datetime})
    completed_at: datetime | None = field(default=None, metadata={"parse": parse_datetime})
    next_process_at: datetime | None = field(default=None, metadata={"parse": parse_datetime})
    history: list[HistoryEntry] = field(default_factory=list, metadata={"item": HistoryEntry})
    error_message: str | None = None
    error_node_id: str | None = None

    def to_dict(self) -> dict:
        return dump(self)

    @classmethod
    def from_dict(cls, data: dict) -> FlowEnrollment:
        return load(cls, data)


@dataclass
class TriggerEvent:
    """Structural event a flow trigger is matched against."""
    type: str
    user_id: str
    account_id: str | None = None
    from_state: LifecycleState | None = None
    to_state: LifecycleState | None = None
    event_name: str | None = None
    event_properties: dict[str, Any] = field(default_factory=dict)
    segment_id: str | None = None


# ── Side effects produced by action nodes ───────────────────────────────

@dataclass
class FlowAction:
    kind: ClassVar[str] = ""


@dataclass
class SendEmailAction(FlowAction):
    kind: ClassVar[str] = "send_email"
    to: str = ""
    subject: str = ""
    body: str = ""
    from_name: str | None = None
    reply_to: str | None = None
    template_id: str | None = None


@dataclass
class SendWebhookAction(FlowAction):
    kind: ClassVar[str] = "send_webhook"
    url: str = ""
    method: str = "POST"
    headers: dict[str, str] = field(default_factory=dict)
    payload: str = "{}"


@dataclass
class UpdateUserAction(FlowAction):
    kind: ClassVar[str] = "update_user"
    user_id: str = ""
    properties: dict[str, Any] = field(default_factory=dict)


@dataclass
class AddTagAction(FlowAction):
    kind: ClassVar[str] = "add_tag"
    user_id: str = ""
    tag: str = ""


@dataclass
class RemoveTagAction(FlowAction):
    kind: ClassVar[str] = "remove_tag"
    user_id: str = ""
    tag: str = ""


@dataclass
class AssignSegmentAction(FlowAction):
    kind: ClassVar[str] = "assign_segment"
    user_id: str = ""
    segment_id: str = ""


@dataclass
class CreateTaskAction(FlowAction):
    kind: ClassVar[str] = "create_task"
    title: str = ""
    assignee: str | None = None
    priority: str | None = None


@dataclass
class ApiCallAction(FlowAction):
    kind: ClassVar[str] = "api_call"
    url: str = ""
    method: str = "POST"
    headers: dict[str, str] = field(default_factory=dict)
    body: str = "{}"
    response_variable: str | None = None


@dataclass
class SendNotificationAction(FlowAction):
    kind: ClassVar[str] = "send_notification"
    user_id: str = ""
    title: str = ""
    body: str = ""
    channel: str = "in_app"


@dataclass
class SetVariableAction(FlowAction):
    kind: ClassVar[str] = "set_variable"
    key: str = ""
    value: Any = ""
