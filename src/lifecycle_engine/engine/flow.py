"""Flow execution engine.

An enrollment is advanced one node per tick. A tick reads the node at
``current_node_id``, performs its work, records history and moves the
enrollment along the matching outgoing edge. Action nodes never touch the
outside world; they return ``FlowAction`` objects for the caller to
dispatch. A tick flags ``continue_immediately`` when the next node is pure
logic (trigger, condition, filter, split) or after a goto jump;
``process_enrollment`` keeps ticking until a delay parks the enrollment, it
terminates, or the tick cap hits.

Graph and configuration problems (missing node, missing config, unknown
goto target) put the enrollment into ``error`` instead of raising.
"""
from __future__ import annotations
import logging
import math
import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from lifecycle_engine.engine.segmentation import evaluate_rules, lookup_path
from lifecycle_engine.engine.templating import resolve_template
from lifecycle_engine.errors import FlowConfigError
from lifecycle_engine.models.domain import Account, SegmentFilter, UserSnapshot
from lifecycle_engine.models.flows import (
    ActionConfig,
    AddTagAction,
    AddTagConfig,
    ApiCallAction,
    ApiCallConfig,
    AssignSegmentAction,
    AssignSegmentConfig,
    ConditionConfig,
    CreateTaskAction,
    CreateTaskConfig,
    DelayConfig,
    DelayKind,
    EnrollmentStatus,
    ExitConfig,
    FilterConfig,
    FlowAction,
    FlowDefinition,
    FlowEnrollment,
    FlowNode,
    FlowVariable,
    GotoConfig,
    HistoryAction,
    HistoryEntry,
    NodeType,
    RemoveTagAction,
    RemoveTagConfig,
    SendEmailAction,
    SendEmailConfig,
    SendNotificationAction,
    SendNotificationConfig,
    SendWebhookAction,
    SendWebhookConfig,
    SetVariableAction,
    SetVariableConfig,
    SplitConfig,
    SplitVariant,
    TriggerConfig,
    TriggerEvent,
    TriggerKind,
    UpdateUserAction,
    UpdateUserConfig,
)
from lifecycle_engine.models.serialization import parse_datetime

logger = logging.getLogger(__name__)

MAX_TICKS = 100

# node types a processor may run through without yielding
CONTINUE_TYPES = frozenset({NodeType.TRIGGER, NodeType.CONDITION, NodeType.FILTER, NodeType.SPLIT})

DEFAULT_EVENT_TIMEOUT_MINUTES = 1440
FALLBACK_DELAY = timedelta(hours=1)


@dataclass
class TickContext:
    flow: FlowDefinition
    enrollment: FlowEnrollment
    now: datetime
    user: UserSnapshot | None = None
    account: Account | None = None
    # name of the inbound event when ticking from the pipeline; wakes until_event delays
    event_name: str | None = None

    def user_record(self) -> dict[str, Any] | None:
        return self.user.to_record() if self.user is not None else None

    def account_record(self) -> dict[str, Any] | None:
        return self.account.to_record() if self.account is not None else None


@dataclass
class TickResult:
    enrollment: FlowEnrollment
    actions: list[FlowAction] = field(default_factory=list)
    continue_immediately: bool = False
    ticks: int = 1


@dataclass
class _Step:
    """What a node handler decided: follow ``handle`` or stop with ``result``."""
    handle: str | None = None
    actions: list[FlowAction] = field(default_factory=list)
    result: TickResult | None = None


# ── Variables and conditions ────────────────────────────────────────────

def build_initial_variables(
    flow_variables: list[FlowVariable],
    user: Mapping[str, Any] | None = None,
    account: Mapping[str, Any] | None = None,
    event_properties: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    sources: dict[str, Mapping[str, Any] | None] = {
        "user_property": user,
        "account_property": account,
        "event_property": event_properties,
    }
    bag: dict[str, Any] = {}
    for var in flow_variables:
        default = var.default_value if var.default_value is not None else ""
        source = sources.get(var.source or "static")
        if source is None or not var.source_field:
            bag[var.key] = default
            continue
        value = source.get(var.source_field)
        bag[var.key] = value if value is not None else default
    return bag


def resolve_condition_field(
    field_name: str,
    user: Mapping[str, Any] | None,
    account: Mapping[str, Any] | None,
    variables: Mapping[str, Any],
) -> Any:
    """``user.*``, ``account.*`` and ``var.*`` prefixes; bare names read variables."""
    for prefix, source in (("user.", user), ("account.", account), ("var.", variables)):
        if field_name.startswith(prefix):
            if source is None:
                return None
            return lookup_path(source, field_name[len(prefix):])
    return variables.get(field_name)


def evaluate_flow_condition(
    logic: str,
    rules: list[SegmentFilter],
    user: Mapping[str, Any] | None,
    account: Mapping[str, Any] | None,
    variables: Mapping[str, Any],
) -> bool:
    return evaluate_rules(
        rules, logic, lambda rule: resolve_condition_field(rule.field, user, account, variables)
    )


# ── Split bucketing ─────────────────────────────────────────────────────

def _string_hash(value: str) -> int:
    """32-bit ``31*h + c`` hash over UTF-16 code units."""
    h = 0
    units = value.encode("utf-16-le")
    for i in range(0, len(units), 2):
        h = (h * 31 + int.from_bytes(units[i:i + 2], "little")) & 0xFFFFFFFF
    return h - (1 << 32) if h >= (1 << 31) else h


def pick_split_variant(variants: list[SplitVariant], user_id: str) -> str:
    """Stable bucket 0-99 per user, mapped onto cumulative variant percentages."""
    if not variants:
        return ""
    bucket = abs(_string_hash(user_id)) % 100
    cumulative = 0.0
    for variant in variants:
        cumulative += variant.percentage
        if bucket < cumulative:
            return variant.id
    return variants[-1].id


# ── Triggers ────────────────────────────────────────────────────────────

def _wildcard(pattern: str) -> re.Pattern:
    return re.compile("^" + ".*".join(re.escape(part) for part in pattern.split("*")) + "$")


def _match_lifecycle(config: TriggerConfig, event: TriggerEvent) -> bool:
    from_state = event.from_state.value if event.from_state is not None else None
    to_state = event.to_state.value if event.to_state is not None else None
    from_ok = not config.lifecycle_from or from_state in config.lifecycle_from
    to_ok = not config.lifecycle_to or to_state in config.lifecycle_to
    return from_ok and to_ok


def _match_event(config: TriggerConfig, event: TriggerEvent) -> bool:
    if not config.event_name:
        return True
    if not _wildcard(config.event_name).match(event.event_name or ""):
        return False
    if config.event_filters:
        props = event.event_properties or {}
        return evaluate_rules(config.event_filters, "AND", lambda rule: lookup_path(props, rule.field))
    return True


_TRIGGER_MATCHERS: dict[str, Callable[[TriggerConfig, TriggerEvent], bool]] = {
    TriggerKind.LIFECYCLE_CHANGE.value: _match_lifecycle,
    TriggerKind.EVENT_RECEIVED.value: _match_event,
    TriggerKind.SEGMENT_ENTRY.value: lambda c, e: c.segment_id == e.segment_id,
    # schedule and date evaluation happen upstream of the engine
    TriggerKind.MANUAL.value: lambda c, e: True,
    TriggerKind.SCHEDULE.value: lambda c, e: True,
    TriggerKind.WEBHOOK_RECEIVED.value: lambda c, e: True,
    TriggerKind.DATE_PROPERTY.value: lambda c, e: True,
}


def matches_trigger(config: TriggerConfig, event: TriggerEvent) -> bool:
    if config.kind != event.type:
        return False
    matcher = _TRIGGER_MATCHERS.get(config.kind)
    return matcher(config, event) if matcher else False


# ── Enrollment factory ──────────────────────────────────────────────────

def _history(node: FlowNode, action: HistoryAction, now: datetime, details: str | None = None) -> HistoryEntry:
    node_type = node.node_type.value if isinstance(node.node_type, NodeType) else str(node.node_type)
    return HistoryEntry(
        node_id=node.id,
        node_name=node.label,
        node_type=node_type,
        action=action,
        timestamp=now,
        details=details,
    )


def new_enrollment_id(now: datetime) -> str:
    return f"enr_{int(now.timestamp() * 1000)}_{uuid.uuid4().hex[:6]}"


def create_enrollment(
    flow: FlowDefinition,
    user_id: str,
    now: datetime,
    account_id: str | None = None,
    user: UserSnapshot | None = None,
    account: Account | None = None,
    event_properties: Mapping[str, Any] | None = None,
) -> FlowEnrollment | None:
    """New active enrollment positioned at the trigger node; None without one."""
    trigger = flow.trigger_node()
    if trigger is None:
        return None
    variables = build_initial_variables(
        flow.variables,
        user.to_record() if user else None,
        account.to_record() if account else None,
        event_properties,
    )
    return FlowEnrollment(
        id=new_enrollment_id(now),
        flow_id=flow.id,
        user_id=user_id,
        current_node_id=trigger.id,
        status=EnrollmentStatus.ACTIVE,
        org_id=flow.org_id,
        flow_version=flow.version,
        account_id=account_id,
        variables=variables,
        enrolled_at=now,
        last_processed_at=now,
        history=[_history(trigger, HistoryAction.ENTERED, now, "Enrolled in flow")],
    )


# ── Node handlers ───────────────────────────────────────────────────────

def _require(node: FlowNode, config_type: type, label: str) -> Any:
    if not isinstance(node.config, config_type):
        raise FlowConfigError(f"Missing {label} config", node_id=node.id)
    return node.config


def _finish(enrollment: FlowEnrollment, status: EnrollmentStatus, now: datetime, actions: list | None = None) -> TickResult:
    enrollment.status = status
    enrollment.completed_at = now
    enrollment.next_process_at = None
    return TickResult(enrollment=enrollment, actions=actions or [])


def _trigger(ctx: TickContext, node: FlowNode, enrollment: FlowEnrollment) -> _Step:
    enrollment.history.append(_history(node, HistoryAction.COMPLETED, ctx.now, "Trigger activated"))
    return _Step()


def _build_action(config: ActionConfig, enrollment: FlowEnrollment, ctx: TickContext) -> FlowAction | None:
    user_record = ctx.user_record()
    account_record = ctx.account_record()

    def resolve(template: str | None) -> str:
        return resolve_template(template or "", enrollment.variables, user_record, account_record)

    if isinstance(config, SendEmailConfig):
        return SendEmailAction(
            to=ctx.user.email if ctx.user else "",
            subject=resolve(config.email_subject),
            body=resolve(config.email_body),
            from_name=config.email_from_name,
            reply_to=config.email_reply_to,
            template_id=config.email_template_id,
        )
    if isinstance(config, SendWebhookConfig):
        return SendWebhookAction(
            url=resolve(config.webhook_url),
            method=config.webhook_method or "POST",
            headers=dict(config.webhook_headers),
            payload=resolve(config.webhook_payload or "{}"),
        )
    if isinstance(config, UpdateUserConfig):
        if not config.user_properties:
            return None
        props = {k: resolve(v) if isinstance(v, str) else v for k, v in config.user_properties.items()}
        return UpdateUserAction(user_id=enrollment.user_id, properties=props)
    if isinstance(config, AddTagConfig):
        return AddTagAction(user_id=enrollment.user_id, tag=resolve(config.tag)) if config.tag else None
    if isinstance(config, RemoveTagConfig):
        return RemoveTagAction(user_id=enrollment.user_id, tag=resolve(config.tag)) if config.tag else None
    if isinstance(config, AssignSegmentConfig):
        if not config.segment_id:
            return None
        return AssignSegmentAction(user_id=enrollment.user_id, segment_id=config.segment_id)
    if isinstance(config, SetVariableConfig):
        if not config.variable_key:
            return None
        value = resolve(config.variable_value)
        enrollment.variables[config.variable_key] = value
        return SetVariableAction(key=config.variable_key, value=value)
    if isinstance(config, ApiCallConfig):
        return ApiCallAction(
            url=resolve(config.api_url),
            method=config.api_method or "POST",
            headers=dict(config.api_headers),
            body=resolve(config.api_body_template or "{}"),
            response_variable=config.api_response_variable,
        )
    if isinstance(config, CreateTaskConfig):
        return CreateTaskAction(
            title=resolve(config.task_title),
            assignee=config.task_assignee,
            priority=config.task_priority,
        )
    if isinstance(config, SendNotificationConfig):
        return SendNotificationAction(
            user_id=enrollment.user_id,
            title=resolve(config.notification_title),
            body=resolve(config.notification_body),
            channel=config.notification_channel or "in_app",
        )
    raise FlowConfigError(f"Unsupported action kind {config.kind!r}")


def _action(ctx: TickContext, node: FlowNode, enrollment: FlowEnrollment) -> _Step:
    config = _require(node, ActionConfig, "action")
    produced = _build_action(config, enrollment, ctx)
    enrollment.history.append(_history(node, HistoryAction.COMPLETED, ctx.now, f"Executed: {config.kind}"))
    return _Step(actions=[produced] if produced is not None else [])


def _condition(ctx: TickContext, node: FlowNode, enrollment: FlowEnrollment) -> _Step:
    config: ConditionConfig = _require(node, ConditionConfig, "condition")
    passed = evaluate_flow_condition(
        config.logic, config.rules, ctx.user_record(), ctx.account_record(), enrollment.variables
    )
    handle = "yes" if passed else "no"
    enrollment.history.append(_history(node, HistoryAction.COMPLETED, ctx.now, f"Condition → {handle}"))
    return _Step(handle=handle)


def _zone(name: str | None) -> ZoneInfo | timezone:
    if not name:
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {name!r}, using UTC")
        return timezone.utc


def _hour_minute(raw: str | None, default: str) -> tuple[int, int]:
    try:
        hours, _, minutes = (raw or default).partition(":")
        return int(hours), int(minutes or 0)
    except ValueError:
        hours, _, minutes = default.partition(":")
        return int(hours), int(minutes)


def _next_wall_time(now: datetime, hour: int, minute: int, tz_name: str | None) -> datetime:
    tz = _zone(tz_name)
    local_now = now.astimezone(tz)
    candidate = local_now.replace(hour=hour % 24, minute=minute % 60, second=0, microsecond=0)
    if candidate <= local_now:
        candidate += timedelta(days=1)
    return candidate.astimezone(timezone.utc)


def compute_wake_time(config: DelayConfig, ctx: TickContext, variables: Mapping[str, Any]) -> datetime:
    now = ctx.now
    kind = config.kind
    if kind == DelayKind.FIXED_DURATION.value:
        return now + timedelta(minutes=config.duration_minutes or 0)
    if kind == DelayKind.UNTIL_TIME_OF_DAY.value:
        hour, minute = _hour_minute(config.until_time, "09:00")
        return _next_wall_time(now, hour, minute, config.until_timezone)
    if kind == DelayKind.UNTIL_DATE.value:
        raw = resolve_template(config.until_date or "", variables, ctx.user_record(), ctx.account_record())
        try:
            parsed = parse_datetime(raw)
        except ValueError:
            parsed = None
        return parsed if parsed is not None else now + FALLBACK_DELAY
    if kind == DelayKind.UNTIL_EVENT.value:
        timeout = config.wait_timeout_minutes if config.wait_timeout_minutes is not None else DEFAULT_EVENT_TIMEOUT_MINUTES
        return now + timedelta(minutes=timeout)
    if kind == DelayKind.SMART_SEND_TIME.value:
        start, _ = _hour_minute(config.send_window_start, "09:00")
        end, _ = _hour_minute(config.send_window_end, "17:00")
        return _next_wall_time(now, math.floor((start + end) / 2), 0, config.until_timezone)
    return now + FALLBACK_DELAY


def _delay(ctx: TickContext, node: FlowNode, enrollment: FlowEnrollment) -> _Step:
    config: DelayConfig = _require(node, DelayConfig, "delay")

    if enrollment.next_process_at is None:
        wake = compute_wake_time(config, ctx, enrollment.variables)
        enrollment.next_process_at = wake
        enrollment.history.append(_history(node, HistoryAction.WAITING, ctx.now, f"Waiting until {wake.isoformat()}"))
        return _Step(result=TickResult(enrollment=enrollment))

    awaited_event = (
        config.kind == DelayKind.UNTIL_EVENT.value
        and config.wait_for_event
        and ctx.event_name == config.wait_for_event
    )
    if awaited_event:
        enrollment.history.append(_history(node, HistoryAction.COMPLETED, ctx.now, f"Event received: {ctx.event_name}"))
        return _Step()
    if enrollment.next_process_at <= ctx.now:
        enrollment.history.append(_history(node, HistoryAction.COMPLETED, ctx.now, "Delay elapsed"))
        return _Step()
    return _Step(result=TickResult(enrollment=enrollment))


def _split(ctx: TickContext, node: FlowNode, enrollment: FlowEnrollment) -> _Step:
    config = node.config
    if not isinstance(config, SplitConfig) or not config.variants:
        raise FlowConfigError("Missing split config", node_id=node.id)
    variant_id = pick_split_variant(config.variants, enrollment.user_id)
    enrollment.history.append(_history(node, HistoryAction.COMPLETED, ctx.now, f"Split → variant {variant_id}"))
    return _Step(handle=f"variant-{variant_id}")


def _filter(ctx: TickContext, node: FlowNode, enrollment: FlowEnrollment) -> _Step:
    config: FilterConfig = _require(node, FilterConfig, "filter")
    passed = evaluate_flow_condition(
        config.logic, config.rules, ctx.user_record(), ctx.account_record(), enrollment.variables
    )
    if not passed:
        enrollment.history.append(_history(node, HistoryAction.SKIPPED, ctx.now, "Filtered out"))
        return _Step(result=_finish(enrollment, EnrollmentStatus.EXITED, ctx.now))
    enrollment.history.append(_history(node, HistoryAction.COMPLETED, ctx.now, "Filter passed"))
    return _Step()


def _goto(ctx: TickContext, node: FlowNode, enrollment: FlowEnrollment) -> _Step:
    config = node.config
    if not isinstance(config, GotoConfig) or not config.target_node_id:
        raise FlowConfigError("Missing goto target", node_id=node.id)

    loops = sum(1 for h in enrollment.history if h.node_id == node.id and h.action is HistoryAction.COMPLETED)
    if config.max_loops and loops >= config.max_loops:
        enrollment.history.append(_history(node, HistoryAction.SKIPPED, ctx.now, f"Max loops ({config.max_loops}) reached"))
        return _Step()

    target = ctx.flow.find_node(config.target_node_id)
    if target is None:
        raise FlowConfigError(f"GoTo target {config.target_node_id} not found", node_id=node.id)
    enrollment.history.append(_history(node, HistoryAction.COMPLETED, ctx.now, f"Jump to {target.label}"))
    enrollment.current_node_id = target.id
    enrollment.next_process_at = None
    return _Step(result=TickResult(enrollment=enrollment, continue_immediately=True))


def _exit(ctx: TickContext, node: FlowNode, enrollment: FlowEnrollment) -> _Step:
    reason = "Flow completed"
    if isinstance(node.config, ExitConfig) and node.config.reason:
        reason = node.config.reason
    enrollment.history.append(_history(node, HistoryAction.COMPLETED, ctx.now, reason))
    return _Step(result=_finish(enrollment, EnrollmentStatus.COMPLETED, ctx.now))


_NODE_HANDLERS: dict[NodeType, Callable[[TickContext, FlowNode, FlowEnrollment], _Step]] = {
    NodeType.TRIGGER: _trigger,
    NodeType.ACTION: _action,
    NodeType.CONDITION: _condition,
    NodeType.DELAY: _delay,
    NodeType.SPLIT: _split,
    NodeType.FILTER: _filter,
    NodeType.GOTO: _goto,
    NodeType.EXIT: _exit,
}


# ── Tick / processor ────────────────────────────────────────────────────

def _fail(enrollment: FlowEnrollment, node: FlowNode | None, error: FlowConfigError, now: datetime) -> TickResult:
    enrollment.status = EnrollmentStatus.ERROR
    enrollment.error_message = str(error)
    enrollment.error_node_id = error.node_id or enrollment.current_node_id
    enrollment.next_process_at = None
    if node is not None:
        enrollment.history.append(_history(node, HistoryAction.FAILED, now, str(error)))
    logger.warning(f"Enrollment {enrollment.id} in flow {enrollment.flow_id} failed: {error}")
    return TickResult(enrollment=enrollment)


def tick_enrollment(ctx: TickContext) -> TickResult:
    """Advance ``ctx.enrollment`` by exactly one node.

    The input enrollment is not mutated; the result carries an updated copy.
    """
    enrollment = replace(ctx.enrollment, variables=dict(ctx.enrollment.variables), history=list(ctx.enrollment.history))
    enrollment.last_processed_at = ctx.now

    node = ctx.flow.find_node(enrollment.current_node_id)
    if node is None:
        missing = FlowConfigError(f"Node {enrollment.current_node_id} not found in flow", node_id=enrollment.current_node_id)
        return _fail(enrollment, None, missing, ctx.now)

    handler = _NODE_HANDLERS.get(node.node_type) if isinstance(node.node_type, NodeType) else None
    try:
        if handler is None:
            raise FlowConfigError(f"Unsupported node type {node.node_type!r}", node_id=node.id)
        step = handler(ctx, node, enrollment)
    except FlowConfigError as e:
        if e.node_id is None:
            e.node_id = node.id
        return _fail(enrollment, node, e, ctx.now)

    if step.result is not None:
        step.result.actions = step.actions + step.result.actions
        return step.result

    next_node = ctx.flow.next_node(node.id, step.handle)
    if next_node is None:
        return _finish(enrollment, EnrollmentStatus.COMPLETED, ctx.now, step.actions)

    enrollment.status = EnrollmentStatus.ACTIVE
    enrollment.current_node_id = next_node.id
    enrollment.next_process_at = None
    return TickResult(
        enrollment=enrollment,
        actions=step.actions,
        continue_immediately=next_node.node_type in CONTINUE_TYPES,
    )


def _should_continue(result: TickResult) -> bool:
    if result.continue_immediately:
        return True
    # only a parked delay or a terminal status yields
    enrollment = result.enrollment
    return enrollment.status is EnrollmentStatus.ACTIVE and enrollment.next_process_at is None


def process_enrollment(ctx: TickContext, max_ticks: int = MAX_TICKS) -> TickResult:
    """Tick until the enrollment waits on a delay, terminates, or hits ``max_ticks``."""
    result = tick_enrollment(ctx)
    actions = list(result.actions)
    ticks = 1
    while ticks < max_ticks and _should_continue(result):
        result = tick_enrollment(replace(ctx, enrollment=result.enrollment))
        actions.extend(result.actions)
        ticks += 1
    if ticks >= max_ticks and _should_continue(result):
        logger.warning(f"Enrollment {result.enrollment.id} hit the {max_ticks}-tick cap in flow {ctx.flow.id}")
    return TickResult(enrollment=result.enrollment, actions=actions, continue_immediately=False, ticks=ticks)
