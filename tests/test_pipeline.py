"""End-to-end tests for the event pipeline and the scheduler sweep."""
import itertools
from datetime import timedelta
from unittest import mock

import pytest

from lifecycle_engine.models.domain import (
    ExpansionSignal,
    LifecycleState,
    SegmentDefinition,
    SegmentFilter,
)
from lifecycle_engine.models.flows import EnrollmentStatus
from lifecycle_engine.pipeline.actions import FlowActionDispatcher
from lifecycle_engine.pipeline.runner import EventPipeline, Notification
from lifecycle_engine.utils.emailing import LogEmailSender
from lifecycle_engine.validation.events import TrackedEvent

from conftest import NOW, ORG, make_account, make_flow, make_user, node

_event_ids = itertools.count(1)


def track(event="login", user_id="u_1", **properties) -> TrackedEvent:
    return TrackedEvent(id=f"evt_{next(_event_ids)}", event=event, userId=user_id, properties=properties, timestamp=NOW)


def disengaged_user(**overrides):
    fields = dict(
        last_login_days_ago=25,
        login_frequency_7d=0,
        login_frequency_30d=2,
        feature_usage_30d=[],
        session_depth_minutes=2,
        nps_score=3,
        days_until_renewal=10,
    )
    fields.update(overrides)
    return make_user(**fields)


def types(notifications: list[Notification]) -> list[str]:
    return [n.event_type for n in notifications]


@pytest.fixture
def mailer():
    return LogEmailSender()


@pytest.fixture
def pipeline(store, clock, settings, mailer):
    actions = FlowActionDispatcher(store, email_sender=mailer, clock=clock, settings=settings)
    return EventPipeline(store, action_dispatcher=actions, clock=clock, settings=settings)


@pytest.fixture
def seeded(store):
    store.add_user(ORG, make_user())
    store.add_account(ORG, make_account())
    return store


def winback_flow():
    return make_flow(
        [
            node("t", "trigger", triggerConfig={"kind": "lifecycle_change", "lifecycleTo": ["AtRisk"]}),
            node("tag", "action", actionConfig={"kind": "add_tag", "tag": "at-risk"}),
            node("wait", "delay", delayConfig={"kind": "fixed_duration", "durationMinutes": 60}),
            node("mail", "action", actionConfig={"kind": "send_email", "emailSubject": "We miss you, {{user.name}}"}),
            node("done", "exit"),
        ],
        [("t", "tag"), ("tag", "wait"), ("wait", "mail"), ("mail", "done")],
        id="flow_winback",
        name="Win-back",
    )


def tag_flow(**trigger):
    config = {"kind": "event_received", "eventName": "upgrade", **trigger}
    return make_flow(
        [node("t", "trigger", triggerConfig=config), node("a", "action", actionConfig={"kind": "add_tag", "tag": "upgraded"})],
        [("t", "a")],
        id="flow_tag",
    )


class TestUnknownUsers:
    def test_anonymous_event_only_notifies(self, pipeline, store):
        event = TrackedEvent(id="evt_anon", event="page_view", timestamp=NOW)
        result = pipeline.process_event(event, ORG)
        assert types(result.notifications) == ["event.tracked"]
        assert result.lifecycle is None
        assert result.errors == []

    def test_unidentified_user_is_not_classified(self, pipeline):
        result = pipeline.process_event(track(user_id="ghost"), ORG)
        assert types(result.notifications) == ["event.tracked"]
        assert result.notifications[0].data["userId"] == "ghost"
        assert result.churn is None


class TestStages:
    def test_healthy_user(self, pipeline, seeded):
        result = pipeline.process_event(track(), ORG)

        assert result.errors == []
        assert not result.lifecycle.transitioned
        assert result.lifecycle.to_state == "Activated"
        assert result.churn.new_score == 6
        assert seeded.get_user(ORG, "u_1").churn_risk_score == 6
        # a 6 point move stays under the notification delta
        assert types(result.notifications) == ["event.tracked"]
        assert result.processing_time_ms >= 0

    def test_transition_is_persisted_and_notified(self, pipeline, store):
        store.add_user(ORG, disengaged_user())
        store.add_account(ORG, make_account())

        result = pipeline.process_event(track(), ORG)

        assert result.lifecycle.transitioned
        assert (result.lifecycle.from_state, result.lifecycle.to_state) == ("Activated", "AtRisk")
        user = store.get_user(ORG, "u_1")
        assert user.lifecycle_state is LifecycleState.AT_RISK
        assert user.previous_state is LifecycleState.ACTIVATED
        assert user.state_changed_at == NOW
        assert result.churn.new_score == 78
        assert result.churn.tier == "High"
        assert types(result.notifications) == ["user.risk_score_changed", "user.lifecycle_changed", "event.tracked"]

        activity = store.activity_for(ORG)
        assert [a.type for a in activity] == ["lifecycle_change"]
        assert activity[0].description == "Ada Lovelace moved from Activated → AtRisk"

    def test_expansion_opportunities_are_deduplicated(self, pipeline, store):
        store.add_user(ORG, make_user())
        store.add_account(ORG, make_account(user_count=9))

        first = pipeline.process_event(track(), ORG)
        assert first.expansion.opportunities_created == 1
        assert "account.expansion_signal" in types(first.notifications)
        assert store.get_user(ORG, "u_1").expansion_score == 92
        [opp] = store.list_opportunities(ORG)
        assert opp.signal is ExpansionSignal.SEAT_CAP

        second = pipeline.process_event(track(), ORG)
        assert second.expansion.signals_detected == 1
        assert second.expansion.opportunities_created == 0
        assert len(store.list_opportunities(ORG)) == 1

    def test_no_account_skips_expansion(self, pipeline, store):
        store.add_user(ORG, make_user(account_id=None))
        result = pipeline.process_event(track(), ORG)
        assert result.expansion.signals_detected == 0
        assert result.errors == []

    def test_segment_membership_changes(self, pipeline, seeded):
        growth = SegmentDefinition(id="seg_growth", name="Growth", filters=[SegmentFilter(field="plan", operator="equals", value="Growth")])
        enterprise = SegmentDefinition(id="seg_ent", name="Enterprise", filters=[SegmentFilter(field="plan", operator="equals", value="Enterprise")])
        seeded.add_segment(ORG, growth)
        seeded.add_segment(ORG, enterprise, members={"u_1"})

        first = pipeline.process_event(track(), ORG)
        assert first.segments.segments_evaluated == 2
        assert first.segments.entered == ["seg_growth"]
        assert first.segments.exited == ["seg_ent"]

        second = pipeline.process_event(track(), ORG)
        assert second.segments.entered == []
        assert second.segments.exited == []
        assert seeded.list_segment_members(ORG, "seg_growth") == {"u_1"}

    def test_failing_stage_does_not_stop_the_rest(self, pipeline, seeded):
        with mock.patch.object(seeded, "list_segments", side_effect=RuntimeError("segments offline")):
            result = pipeline.process_event(track(), ORG)
        assert result.errors == ["segments: segments offline"]
        assert result.segments is None
        assert result.flows is not None
        assert types(result.notifications) == ["event.tracked"]


class TestFlowEnrollment:
    def test_lifecycle_change_enrolls_and_parks(self, pipeline, store):
        store.add_user(ORG, disengaged_user())
        store.add_account(ORG, make_account())
        store.upsert_flow(ORG, winback_flow())

        result = pipeline.process_event(track(), ORG)

        assert result.flows.enrollments_created == 1
        assert result.flows.actions_dispatched == 1
        assert "flow.triggered" in types(result.notifications)
        assert store.get_user(ORG, "u_1").tags == ["at-risk"]

        [enrollment] = store.list_user_enrollments(ORG, "u_1")
        assert enrollment.current_node_id == "wait"
        assert enrollment.next_process_at == NOW + timedelta(minutes=60)
        flow = store.get_flow(ORG, "flow_winback")
        assert (flow.metrics.total_enrolled, flow.metrics.currently_active) == (1, 1)
        assert [a.type for a in store.activity_for(ORG)] == ["system", "lifecycle_change", "flow_triggered"]

    def test_scheduler_resumes_parked_enrollment(self, pipeline, store, clock, mailer):
        store.add_user(ORG, disengaged_user())
        store.add_account(ORG, make_account())
        store.upsert_flow(ORG, winback_flow())
        pipeline.process_event(track(), ORG)

        assert pipeline.process_scheduled_enrollments().processed == 0

        clock.advance(minutes=61)
        sweep = pipeline.process_scheduled_enrollments()

        assert (sweep.processed, sweep.completed, sweep.errors) == (1, 1, 0)
        assert sweep.actions_dispatched == 1
        assert mailer.sent[0].subject == "We miss you, Ada Lovelace"
        assert types(sweep.notifications) == ["flow.completed"]
        assert sweep.notifications[0].data["status"] == "completed"

        [enrollment] = store.list_user_enrollments(ORG, "u_1")
        assert enrollment.status is EnrollmentStatus.COMPLETED
        metrics = store.get_flow(ORG, "flow_winback").metrics
        assert (metrics.completed, metrics.currently_active) == (1, 0)

    def test_scheduler_exits_enrollments_of_paused_flows(self, pipeline, store, clock):
        store.add_user(ORG, disengaged_user())
        store.upsert_flow(ORG, winback_flow())
        pipeline.process_event(track(), ORG)

        paused = store.get_flow(ORG, "flow_winback")
        paused.status = "paused"
        store.upsert_flow(ORG, paused)
        clock.advance(hours=2)
        sweep = pipeline.process_scheduled_enrollments()

        assert sweep.processed == 0
        [enrollment] = store.list_user_enrollments(ORG, "u_1")
        assert enrollment.status is EnrollmentStatus.EXITED
        assert enrollment.next_process_at is None

    def test_instant_flow_completes_in_one_pass(self, pipeline, seeded):
        seeded.upsert_flow(ORG, tag_flow())
        result = pipeline.process_event(track("upgrade", plan="Business"), ORG)

        assert result.flows.enrollments_created == 1
        assert types(result.notifications) == ["flow.triggered", "flow.completed", "event.tracked"]
        metrics = seeded.get_flow(ORG, "flow_tag").metrics
        assert (metrics.total_enrolled, metrics.completed, metrics.currently_active) == (1, 1, 0)

    def test_no_re_entry_by_default(self, pipeline, seeded):
        seeded.upsert_flow(ORG, tag_flow())
        pipeline.process_event(track("upgrade"), ORG)
        again = pipeline.process_event(track("upgrade"), ORG)
        assert again.flows.enrollments_created == 0

    def test_re_entry_respects_cooldown(self, pipeline, seeded, clock):
        seeded.upsert_flow(ORG, tag_flow(allowReEntry=True, reEntryCooldownMinutes=30))
        assert pipeline.process_event(track("upgrade"), ORG).flows.enrollments_created == 1
        assert pipeline.process_event(track("upgrade"), ORG).flows.enrollments_created == 0
        clock.advance(minutes=31)
        assert pipeline.process_event(track("upgrade"), ORG).flows.enrollments_created == 1

    def test_segment_entry_trigger(self, pipeline, seeded):
        seeded.add_segment(ORG, SegmentDefinition(
            id="seg_growth", name="Growth", filters=[SegmentFilter(field="plan", operator="equals", value="Growth")]
        ))
        seeded.upsert_flow(ORG, make_flow(
            [
                node("t", "trigger", triggerConfig={"kind": "segment_entry", "segmentId": "seg_growth"}),
                node("a", "action", actionConfig={"kind": "add_tag", "tag": "growth"}),
            ],
            [("t", "a")],
            id="flow_seg",
        ))

        assert pipeline.process_event(track(), ORG).flows.enrollments_created == 1
        assert seeded.get_user(ORG, "u_1").tags == ["growth"]

    def test_awaited_event_advances_waiting_enrollment(self, pipeline, seeded, clock):
        seeded.upsert_flow(ORG, make_flow(
            [
                node("t", "trigger", triggerConfig={"kind": "event_received", "eventName": "signup"}),
                node("d", "delay", delayConfig={"kind": "until_event", "waitForEvent": "upgrade", "waitTimeoutMinutes": 1440}),
                node("a", "action", actionConfig={"kind": "add_tag", "tag": "converted"}),
            ],
            [("t", "d"), ("d", "a")],
            id="flow_wait",
        ))
        pipeline.process_event(track("signup"), ORG)
        [parked] = seeded.list_user_enrollments(ORG, "u_1")
        assert parked.current_node_id == "d"

        clock.advance(minutes=5)
        unrelated = pipeline.process_event(track("login"), ORG)
        assert unrelated.flows.enrollments_advanced == 0

        result = pipeline.process_event(track("upgrade"), ORG)
        assert result.flows.enrollments_advanced == 1
        assert seeded.get_user(ORG, "u_1").tags == ["converted"]
        [done] = seeded.list_user_enrollments(ORG, "u_1")
        assert done.status is EnrollmentStatus.COMPLETED

    def test_loop_back_onto_same_delay_is_saved(self, pipeline, seeded, clock):
        seeded.upsert_flow(ORG, make_flow(
            [
                node("t", "trigger", triggerConfig={"kind": "event_received", "eventName": "signup"}),
                node("d", "delay", delayConfig={"kind": "fixed_duration", "durationMinutes": 60}),
                node("a", "action", actionConfig={"kind": "add_tag", "tag": "nudged"}),
                node("g", "goto", goToConfig={"targetNodeId": "d", "maxLoops": 3}),
            ],
            [("t", "d"), ("d", "a"), ("a", "g")],
            id="flow_nudge",
        ))
        pipeline.process_event(track("signup"), ORG)
        [parked] = seeded.list_user_enrollments(ORG, "u_1")

        clock.advance(minutes=61)
        result = pipeline.process_event(track("login"), ORG)

        assert result.flows.enrollments_advanced == 1
        assert seeded.get_user(ORG, "u_1").tags == ["nudged"]
        [looped] = seeded.list_user_enrollments(ORG, "u_1")
        assert looped.current_node_id == "d"
        assert looped.next_process_at == clock.now() + timedelta(minutes=60)
        assert len(looped.history) > len(parked.history)

        # the new wake time is in the future, so the next event leaves it alone
        again = pipeline.process_event(track("login"), ORG)
        assert again.flows.enrollments_advanced == 0


class TestDelivery:
    def test_without_dispatcher_nothing_is_sent(self, pipeline):
        assert pipeline.deliver_notifications([Notification("event.tracked", {}, ORG)]) == []

    def test_dispatch_errors_are_contained(self, store, clock, settings):
        webhooks = mock.Mock()
        webhooks.dispatch.side_effect = [RuntimeError("pool closed"), mock.sentinel.summary]
        pipeline = EventPipeline(store, webhook_dispatcher=webhooks, clock=clock, settings=settings)

        summaries = pipeline.deliver_notifications([
            Notification("event.tracked", {}, ORG),
            Notification("flow.completed", {"flowId": "f"}, ORG),
        ])

        assert summaries == [mock.sentinel.summary]
        webhooks.dispatch.assert_called_with("flow.completed", {"flowId": "f"}, ORG)

    def test_batch_runs_in_order(self, pipeline, seeded):
        first, second = track("identify"), track("feature_used")
        results = pipeline.process_event_batch([first, second], ORG)
        assert [r.event_id for r in results] == [first.id, second.id]
        assert all(r.errors == [] for r in results)
