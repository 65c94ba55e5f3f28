"""Event pipeline: everything that happens downstream of one tracked event.

Stages run in order and are isolated from each other: a stage that raises
is logged, recorded in ``PipelineResult.errors`` and the next stage still
runs. Outbound notifications are not sent while the pipeline runs; they are
collected on the result (an outbox) and handed to ``deliver_notifications``
by the caller once processing has finished.

The scheduler entry point, ``process_scheduled_enrollments``, advances
enrollments parked on delays across every tenant.
"""
from __future__ import annotations
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from prometheus_client import Counter, Histogram

from lifecycle_engine.config import Settings, get_settings
from lifecycle_engine.engine.churn import score_churn_risk
from lifecycle_engine.engine.expansion import (
    OpportunityIdGenerator,
    compute_expansion_score,
    detect_expansion_signals,
    signals_to_opportunities,
)
from lifecycle_engine.engine.flow import TickContext, TickResult, create_enrollment, matches_trigger, process_enrollment
from lifecycle_engine.engine.lifecycle import detect_state_transition
from lifecycle_engine.engine.segmentation import evaluate_segment_filters
from lifecycle_engine.errors import LifecycleEngineError
from lifecycle_engine.infrastructure.clock import Clock, SystemClock, ensure_utc
from lifecycle_engine.models.domain import Account, ActivityEntry, LifecycleState, UserSnapshot
from lifecycle_engine.models.flows import (
    EnrollmentStatus,
    FlowAction,
    FlowDefinition,
    FlowEnrollment,
    TriggerConfig,
    TriggerEvent,
    TriggerKind,
)
from lifecycle_engine.pipeline.actions import FlowActionDispatcher
from lifecycle_engine.store.base import LifecycleStore
from lifecycle_engine.validation.events import TrackedEvent
from lifecycle_engine.webhooks.dispatcher import DispatchSummary, WebhookDispatcher

logger = logging.getLogger(__name__)

PIPELINE_EVENTS = Counter('pipeline_events_total', 'Events processed by the pipeline', ['outcome'])
PIPELINE_STAGE_ERRORS = Counter('pipeline_stage_errors_total', 'Pipeline stage failures', ['stage'])
PIPELINE_LATENCY = Histogram('pipeline_event_seconds', 'Time to run one event through the pipeline')
FLOW_TICKS = Counter('flow_ticks_total', 'Flow engine ticks executed')
ENROLLMENTS_CREATED = Counter('flow_enrollments_created_total', 'Flow enrollments created')
ENROLLMENTS_FINISHED = Counter('flow_enrollments_finished_total', 'Flow enrollments that reached a terminal status', ['status'])
SCHEDULER_ENROLLMENTS = Counter('scheduler_enrollments_total', 'Enrollments handled by the scheduler sweep', ['outcome'])


@dataclass
class Notification:
    event_type: str
    data: dict[str, Any]
    org_id: str


@dataclass
class LifecycleResult:
    transitioned: bool
    from_state: str
    to_state: str
    confidence: int
    suppressed_by_cooldown: bool = False


@dataclass
class ChurnResult:
    previous_score: int
    new_score: int
    tier: str


@dataclass
class ExpansionResult:
    signals_detected: int = 0
    opportunities_created: int = 0


@dataclass
class SegmentResult:
    segments_evaluated: int = 0
    entered: list[str] = field(default_factory=list)
    exited: list[str] = field(default_factory=list)


@dataclass
class FlowResult:
    flows_checked: int = 0
    enrollments_created: int = 0
    enrollments_advanced: int = 0
    actions_dispatched: int = 0


@dataclass
class PipelineResult:
    event_id: str
    user_id: str | None
    account_id: str | None
    lifecycle: LifecycleResult | None = None
    churn: ChurnResult | None = None
    expansion: ExpansionResult | None = None
    segments: SegmentResult | None = None
    flows: FlowResult | None = None
    notifications: list[Notification] = field(default_factory=list)
    processing_time_ms: float = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class SchedulerResult:
    processed: int = 0
    completed: int = 0
    errors: int = 0
    actions_dispatched: int = 0
    notifications: list[Notification] = field(default_factory=list)


@dataclass
class _EventContext:
    org_id: str
    event: TrackedEvent
    user: UserSnapshot
    account: Account | None
    now: datetime
    result: PipelineResult
    new_enrollment_ids: set[str] = field(default_factory=set)

    def notify(self, event_type: str, data: dict[str, Any]) -> None:
        self.result.notifications.append(Notification(event_type, data, self.org_id))

    def account_ref(self) -> dict[str, str] | None:
        return {"id": self.account.id, "name": self.account.name} if self.account else None


def _made_progress(before: FlowEnrollment, after: FlowEnrollment) -> bool:
    # a loop back onto the same delay re-parks with a new wake time and fresh history
    return (
        after.current_node_id != before.current_node_id
        or after.status is not before.status
        or after.next_process_at != before.next_process_at
        or len(after.history) != len(before.history)
    )


class EventPipeline:
    def __init__(
        self,
        store: LifecycleStore,
        action_dispatcher: FlowActionDispatcher | None = None,
        webhook_dispatcher: WebhookDispatcher | None = None,
        clock: Clock | None = None,
        settings: Settings | None = None,
        id_generator: OpportunityIdGenerator | None = None,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        self.actions = action_dispatcher or FlowActionDispatcher(store, clock=self.clock, settings=self.settings)
        self.webhooks = webhook_dispatcher
        self.id_generator = id_generator or OpportunityIdGenerator()

    # ── entry points ────────────────────────────────────────────────────

    def process_event(self, event: TrackedEvent, org_id: str) -> PipelineResult:
        started = time.perf_counter()
        result = PipelineResult(event_id=event.id, user_id=event.user_id, account_id=event.account_id)
        try:
            outcome = self._process(event, org_id, result)
        finally:
            elapsed = time.perf_counter() - started
            result.processing_time_ms = round(elapsed * 1000, 2)
            PIPELINE_LATENCY.observe(elapsed)
        PIPELINE_EVENTS.labels(outcome=outcome).inc()
        if result.errors:
            logger.warning(f"Event {event.id} processed with {len(result.errors)} stage error(s): {result.errors}")
        else:
            logger.debug(f"Event {event.id} processed in {result.processing_time_ms}ms")
        return result

    def process_event_batch(self, events: list[TrackedEvent], org_id: str) -> list[PipelineResult]:
        """Run events one after another so an identify lands before the track that follows it."""
        return [self.process_event(event, org_id) for event in events]

    def process_scheduled_enrollments(self, limit: int | None = None) -> SchedulerResult:
        now = self.clock.now()
        due = self.store.list_due_enrollments(now, limit or self.settings.scheduler_batch_size)
        result = SchedulerResult()
        for enrollment in due:
            try:
                self._process_scheduled(enrollment, now, result)
            except Exception as e:
                logger.error(f"Scheduler failed on enrollment {enrollment.id} (flow {enrollment.flow_id}): {e}")
                SCHEDULER_ENROLLMENTS.labels(outcome='failed').inc()
                result.errors += 1
        if due:
            logger.info(
                f"Scheduler sweep: {len(due)} due, {result.processed} processed, "
                f"{result.completed} finished, {result.errors} errors, {result.actions_dispatched} actions"
            )
        return result

    def deliver_notifications(self, notifications: list[Notification]) -> list[DispatchSummary]:
        """Send collected notifications to webhook subscribers. Best effort."""
        if self.webhooks is None:
            logger.debug(f"No webhook dispatcher configured; dropping {len(notifications)} notification(s)")
            return []
        summaries = []
        for n in notifications:
            try:
                summaries.append(self.webhooks.dispatch(n.event_type, n.data, n.org_id))
            except (LifecycleEngineError, RuntimeError) as e:
                logger.warning(f"Notification {n.event_type} for org {n.org_id} not delivered: {e}")
        return summaries

    # ── event processing ────────────────────────────────────────────────

    def _process(self, event: TrackedEvent, org_id: str, result: PipelineResult) -> str:
        timestamp = event.timestamp.isoformat()
        if not event.user_id:
            result.notifications.append(Notification('event.tracked', {
                "event": event.event,
                "properties": dict(event.properties),
                "timestamp": timestamp,
            }, org_id))
            return 'anonymous'

        user = self.store.get_user(org_id, event.user_id)
        if user is None:
            # not identified yet, nothing to classify
            result.notifications.append(Notification('event.tracked', {
                "event": event.event,
                "userId": event.user_id,
                "accountId": event.account_id,
                "properties": dict(event.properties),
                "timestamp": timestamp,
            }, org_id))
            return 'unknown_user'

        account_id = user.account_id or event.account_id
        account = self.store.get_account(org_id, account_id) if account_id else None
        ctx = _EventContext(org_id=org_id, event=event, user=user, account=account, now=self.clock.now(), result=result)

        result.lifecycle = self._run_stage('lifecycle', result, lambda: self._stage_lifecycle(ctx))
        result.churn = self._run_stage('churn', result, lambda: self._stage_churn(ctx))
        result.expansion = self._run_stage('expansion', result, lambda: self._stage_expansion(ctx))
        result.segments = self._run_stage('segments', result, lambda: self._stage_segments(ctx))
        result.flows = self._run_stage('flows', result, lambda: self._stage_flows(ctx))
        self._run_stage('flow_advance', result, lambda: self._stage_advance_waiting(ctx))
        self._run_stage('lifecycle_notification', result, lambda: self._stage_lifecycle_notification(ctx))
        self._run_stage('event_notification', result, lambda: self._stage_event_notification(ctx))
        self._run_stage('activity_log', result, lambda: self._stage_activity(ctx))
        return 'partial' if result.errors else 'ok'

    def _run_stage(self, name: str, result: PipelineResult, fn: Callable[[], Any]) -> Any:
        try:
            return fn()
        except Exception as e:
            logger.warning(f"Pipeline stage {name} failed for event {result.event_id}: {e}")
            PIPELINE_STAGE_ERRORS.labels(stage=name).inc()
            result.errors.append(f"{name}: {e}")
            return None

    def _refresh_user(self, ctx: _EventContext, updated: UserSnapshot | None = None) -> None:
        fresh = updated or self.store.get_user(ctx.org_id, ctx.user.id)
        if fresh is not None:
            ctx.user = fresh

    def _stage_lifecycle(self, ctx: _EventContext) -> LifecycleResult:
        transition = detect_state_transition(ctx.user, ctx.now)
        if transition.transitioned:
            updated = self.store.update_user(ctx.org_id, ctx.user.id, {
                "lifecycle_state": transition.to_state,
                "previous_state": transition.from_state,
                "state_changed_at": ctx.now,
            })
            self._refresh_user(ctx, updated)
            logger.info(f"User {ctx.user.id} moved {transition.from_state.value} -> {transition.to_state.value}")
        return LifecycleResult(
            transitioned=transition.transitioned,
            from_state=transition.from_state.value,
            to_state=transition.to_state.value,
            confidence=transition.classification.confidence,
            suppressed_by_cooldown=transition.suppressed_by_cooldown,
        )

    def _stage_churn(self, ctx: _EventContext) -> ChurnResult:
        previous = ctx.user.churn_risk_score or 0
        analysis = score_churn_risk(ctx.user)
        if analysis.risk_score != previous:
            self._refresh_user(ctx, self.store.update_user(ctx.org_id, ctx.user.id, {"churn_risk_score": analysis.risk_score}))
        if abs(analysis.risk_score - previous) > self.settings.churn_notify_delta:
            ctx.notify('user.risk_score_changed', {
                "userId": ctx.user.id,
                "userName": ctx.user.name,
                "previousScore": previous,
                "newScore": analysis.risk_score,
                "tier": analysis.risk_tier.value,
                "account": ctx.account_ref(),
            })
        return ChurnResult(previous_score=previous, new_score=analysis.risk_score, tier=analysis.risk_tier.value)

    def _stage_expansion(self, ctx: _EventContext) -> ExpansionResult:
        if ctx.account is None:
            return ExpansionResult()
        signals = detect_expansion_signals(ctx.user, ctx.account)
        score = compute_expansion_score(signals)
        if score != ctx.user.expansion_score:
            self._refresh_user(ctx, self.store.update_user(ctx.org_id, ctx.user.id, {"expansion_score": score}))
        if not signals:
            return ExpansionResult()

        open_signals = {
            (o.account_id, o.signal)
            for o in self.store.list_opportunities(ctx.org_id, status="identified")
        }
        fresh = [s for s in signals if (ctx.account.id, s.signal) not in open_signals]
        created = 0
        for opp in signals_to_opportunities(fresh, ctx.account, self.id_generator, ctx.now):
            self.store.upsert_opportunity(ctx.org_id, opp)
            created += 1
            ctx.notify('account.expansion_signal', {
                "accountId": opp.account_id,
                "accountName": opp.account_name,
                "signal": opp.signal.value,
                "suggestedPlan": opp.suggested_plan,
                "upliftMrr": opp.uplift_mrr,
                "confidence": opp.confidence,
            })
        return ExpansionResult(signals_detected=len(signals), opportunities_created=created)

    def _stage_segments(self, ctx: _EventContext) -> SegmentResult:
        result = SegmentResult()
        user_record = ctx.user.to_record()
        account_record = ctx.account.to_record() if ctx.account else None
        for segment in self.store.list_segments(ctx.org_id, status="active"):
            result.segments_evaluated += 1
            if evaluate_segment_filters(segment.filters, segment.filter_logic, user_record, account_record):
                if self.store.upsert_segment_membership(ctx.org_id, segment.id, ctx.user.id):
                    result.entered.append(segment.id)
            elif self.store.remove_segment_membership(ctx.org_id, segment.id, ctx.user.id):
                result.exited.append(segment.id)
        return result

    # ── flows ───────────────────────────────────────────────────────────

    def _trigger_events(self, ctx: _EventContext) -> list[TriggerEvent]:
        lifecycle = ctx.result.lifecycle
        base: dict[str, Any] = {"user_id": ctx.user.id, "account_id": ctx.user.account_id}
        if lifecycle is not None and lifecycle.transitioned:
            events = [TriggerEvent(
                type=TriggerKind.LIFECYCLE_CHANGE.value,
                from_state=LifecycleState(lifecycle.from_state),
                to_state=LifecycleState(lifecycle.to_state),
                **base,
            )]
        else:
            events = [TriggerEvent(
                type=TriggerKind.EVENT_RECEIVED.value,
                event_name=ctx.event.event,
                event_properties=dict(ctx.event.properties),
                **base,
            )]
        entered = ctx.result.segments.entered if ctx.result.segments else []
        events.extend(
            TriggerEvent(type=TriggerKind.SEGMENT_ENTRY.value, segment_id=segment_id, **base)
            for segment_id in entered
        )
        return events

    def _may_enroll(self, config: TriggerConfig, prior: list[FlowEnrollment], now: datetime) -> bool:
        if any(e.status.is_live for e in prior):
            return False
        if not prior:
            return True
        if not config.allow_re_entry:
            return False
        if config.re_entry_cooldown_minutes:
            ended = [ensure_utc(e.completed_at or e.last_processed_at or e.enrolled_at) for e in prior]
            ended = [t for t in ended if t is not None]
            if ended and now - max(ended) < timedelta(minutes=config.re_entry_cooldown_minutes):
                return False
        return True

    def _tick(self, flow: FlowDefinition, enrollment: FlowEnrollment, now: datetime,
              user: UserSnapshot | None, account: Account | None, event_name: str | None = None) -> TickResult:
        ctx = TickContext(flow=flow, enrollment=enrollment, now=now, user=user, account=account, event_name=event_name)
        tick = process_enrollment(ctx, max_ticks=self.settings.flow_max_ticks)
        FLOW_TICKS.inc(tick.ticks)
        return tick

    def _dispatch_actions(self, actions: list[FlowAction], user: UserSnapshot, org_id: str) -> int:
        if not actions:
            return 0
        return self.actions.dispatch(actions, user, org_id)

    def _record_outcome(self, flow: FlowDefinition, enrollment: FlowEnrollment, org_id: str,
                        outbox: list[Notification]) -> None:
        """Update flow metrics for an enrollment that just reached a terminal status."""
        status = enrollment.status
        if status.is_live:
            return
        metrics = flow.metrics
        metrics.currently_active = max(0, metrics.currently_active - 1)
        ENROLLMENTS_FINISHED.labels(status=status.value).inc()
        if status is EnrollmentStatus.ERROR:
            metrics.error_count += 1
            logger.warning(
                f"Enrollment {enrollment.id} in flow {flow.id} failed at node {enrollment.error_node_id}: "
                f"{enrollment.error_message}"
            )
            return
        if status is EnrollmentStatus.COMPLETED:
            metrics.completed += 1
        else:
            metrics.exited_early += 1
        outbox.append(Notification('flow.completed', {
            "flowId": flow.id,
            "flowName": flow.name,
            "userId": enrollment.user_id,
            "enrollmentId": enrollment.id,
            "status": status.value,
        }, org_id))

    def _stage_flows(self, ctx: _EventContext) -> FlowResult:
        result = FlowResult()
        trigger_events = self._trigger_events(ctx)
        enrollments = self.store.list_user_enrollments(ctx.org_id, ctx.user.id)

        for flow in self.store.list_flows(ctx.org_id, status="active"):
            result.flows_checked += 1
            trigger = flow.trigger_node()
            if trigger is None or not isinstance(trigger.config, TriggerConfig):
                continue
            matched = next((te for te in trigger_events if matches_trigger(trigger.config, te)), None)
            if matched is None:
                continue
            if not self._may_enroll(trigger.config, [e for e in enrollments if e.flow_id == flow.id], ctx.now):
                continue

            enrollment = create_enrollment(
                flow,
                ctx.user.id,
                ctx.now,
                account_id=ctx.user.account_id,
                user=ctx.user,
                account=ctx.account,
                event_properties=matched.event_properties,
            )
            if enrollment is None:
                continue
            self.store.upsert_enrollment(ctx.org_id, enrollment)
            ctx.new_enrollment_ids.add(enrollment.id)
            result.enrollments_created += 1
            ENROLLMENTS_CREATED.inc()
            flow.metrics.total_enrolled += 1
            flow.metrics.currently_active += 1

            tick = self._tick(flow, enrollment, ctx.now, ctx.user, ctx.account, ctx.event.event)
            self.store.upsert_enrollment(ctx.org_id, tick.enrollment)
            result.actions_dispatched += self._dispatch_actions(tick.actions, ctx.user, ctx.org_id)
            ctx.notify('flow.triggered', {
                "flowId": flow.id,
                "flowName": flow.name,
                "userId": ctx.user.id,
                "userName": ctx.user.name,
                "enrollmentId": enrollment.id,
            })
            self._record_outcome(flow, tick.enrollment, ctx.org_id, ctx.result.notifications)
            self.store.upsert_flow(ctx.org_id, flow)
            logger.info(f"User {ctx.user.id} enrolled in flow {flow.id} ({tick.enrollment.status.value})")

        if result.actions_dispatched:
            self._refresh_user(ctx)
        return result

    def _stage_advance_waiting(self, ctx: _EventContext) -> int:
        advanced = 0
        dispatched = 0
        for enrollment in self.store.list_user_enrollments(ctx.org_id, ctx.user.id):
            if enrollment.id in ctx.new_enrollment_ids:
                continue
            if enrollment.status is not EnrollmentStatus.ACTIVE or enrollment.next_process_at is None:
                continue
            flow = self.store.get_flow(ctx.org_id, enrollment.flow_id)
            if flow is None or flow.status != "active":
                continue
            tick = self._tick(flow, enrollment, ctx.now, ctx.user, ctx.account, ctx.event.event)
            after = tick.enrollment
            if not _made_progress(enrollment, after):
                continue
            self.store.upsert_enrollment(ctx.org_id, after)
            dispatched += self._dispatch_actions(tick.actions, ctx.user, ctx.org_id)
            advanced += 1
            if after.status.is_terminal:
                self._record_outcome(flow, after, ctx.org_id, ctx.result.notifications)
                self.store.upsert_flow(ctx.org_id, flow)

        if ctx.result.flows is None:
            ctx.result.flows = FlowResult()
        ctx.result.flows.enrollments_advanced = advanced
        ctx.result.flows.actions_dispatched += dispatched
        return advanced

    # ── notifications and activity ──────────────────────────────────────

    def _stage_lifecycle_notification(self, ctx: _EventContext) -> None:
        lifecycle = ctx.result.lifecycle
        if lifecycle is None or not lifecycle.transitioned:
            return
        ctx.notify('user.lifecycle_changed', {
            "userId": ctx.user.id,
            "userName": ctx.user.name,
            "previousState": lifecycle.from_state,
            "newState": lifecycle.to_state,
            "account": ctx.account_ref(),
            "confidence": lifecycle.confidence,
        })

    def _stage_event_notification(self, ctx: _EventContext) -> None:
        ctx.notify('event.tracked', {
            "event": ctx.event.event,
            "userId": ctx.event.user_id,
            "accountId": ctx.event.account_id,
            "properties": dict(ctx.event.properties),
            "timestamp": ctx.event.timestamp.isoformat(),
        })

    def _stage_activity(self, ctx: _EventContext) -> None:
        result = ctx.result
        entries = []
        if result.lifecycle is not None and result.lifecycle.transitioned:
            entries.append((
                "lifecycle_change",
                "Lifecycle State Change",
                f"{ctx.user.name} moved from {result.lifecycle.from_state} → {result.lifecycle.to_state}",
            ))
        if result.flows is not None and result.flows.enrollments_created > 0:
            entries.append((
                "flow_triggered",
                "Flow Enrollment",
                f"{ctx.user.name} enrolled in {result.flows.enrollments_created} flow(s)",
            ))
        if result.expansion is not None and result.expansion.opportunities_created > 0:
            subject = ctx.account.name if ctx.account else ctx.user.name
            entries.append((
                "expansion_signal",
                "Expansion Opportunity",
                f"{result.expansion.signals_detected} expansion signal(s) detected for {subject}",
            ))
        for kind, title, description in entries:
            self.store.add_activity(ctx.org_id, ActivityEntry(
                type=kind,
                title=title,
                description=description,
                user_id=ctx.user.id,
                account_id=ctx.user.account_id,
                created_at=ctx.now,
            ))

    # ── scheduler ───────────────────────────────────────────────────────

    def _process_scheduled(self, enrollment: FlowEnrollment, now: datetime, result: SchedulerResult) -> None:
        org_id = enrollment.org_id
        flow = self.store.get_flow(org_id, enrollment.flow_id)
        if flow is None or flow.status != "active":
            enrollment.status = EnrollmentStatus.EXITED
            enrollment.completed_at = now
            enrollment.last_processed_at = now
            enrollment.next_process_at = None
            self.store.upsert_enrollment(org_id, enrollment)
            SCHEDULER_ENROLLMENTS.labels(outcome='flow_inactive').inc()
            logger.info(f"Exited enrollment {enrollment.id}: flow {enrollment.flow_id} is missing or inactive")
            return

        user = self.store.get_user(org_id, enrollment.user_id)
        account = None
        if user is not None and user.account_id:
            account = self.store.get_account(org_id, user.account_id)

        tick = self._tick(flow, enrollment, now, user, account)
        self.store.upsert_enrollment(org_id, tick.enrollment)
        if user is not None:
            result.actions_dispatched += self._dispatch_actions(tick.actions, user, org_id)
        elif tick.actions:
            logger.warning(f"Dropping {len(tick.actions)} action(s) for enrollment {enrollment.id}: user {enrollment.user_id} not found")
        result.processed += 1
        SCHEDULER_ENROLLMENTS.labels(outcome='processed').inc()

        status = tick.enrollment.status
        if status.is_terminal:
            if status is EnrollmentStatus.ERROR:
                result.errors += 1
            else:
                result.completed += 1
            self._record_outcome(flow, tick.enrollment, org_id, result.notifications)
            self.store.upsert_flow(org_id, flow)
