"""Tests for the flow engine: triggers, node handlers, chaining and failure handling."""
from datetime import datetime, timedelta, timezone

import pytest

from lifecycle_engine.engine.flow import (
    TickContext,
    build_initial_variables,
    create_enrollment,
    matches_trigger,
    pick_split_variant,
    process_enrollment,
    tick_enrollment,
)
from lifecycle_engine.models.domain import LifecycleState, SegmentFilter
from lifecycle_engine.models.flows import (
    AddTagAction,
    EnrollmentStatus,
    FlowVariable,
    HistoryAction,
    SendEmailAction,
    SplitVariant,
    TriggerConfig,
    TriggerEvent,
)

from conftest import NOW, make_flow, make_user, node

TRIGGER = node("t", "trigger", triggerConfig={"kind": "event_received", "eventName": "signup"})


def tag(node_id: str, value: str) -> dict:
    return node(node_id, "action", actionConfig={"kind": "add_tag", "tag": value})


def run(flow, enrollment, now=NOW, user=None, event_name=None):
    ctx = TickContext(flow=flow, enrollment=enrollment, now=now, user=user or make_user(), event_name=event_name)
    return process_enrollment(ctx)


def enroll(flow, user=None, **kwargs):
    user = user or make_user()
    return create_enrollment(flow, user.id, NOW, user=user, **kwargs)


class TestTriggers:
    def test_event_name_wildcard(self):
        config = TriggerConfig(kind="event_received", event_name="plan_*")
        assert matches_trigger(config, TriggerEvent(type="event_received", user_id="u", event_name="plan_upgraded"))
        assert not matches_trigger(config, TriggerEvent(type="event_received", user_id="u", event_name="signup"))

    def test_event_filters_read_event_properties(self):
        config = TriggerConfig(
            kind="event_received",
            event_name="purchase",
            event_filters=[SegmentFilter(field="amount", operator="greater_than", value=100)],
        )
        big = TriggerEvent(type="event_received", user_id="u", event_name="purchase", event_properties={"amount": 250})
        small = TriggerEvent(type="event_received", user_id="u", event_name="purchase", event_properties={"amount": 20})
        assert matches_trigger(config, big)
        assert not matches_trigger(config, small)

    def test_lifecycle_lists_empty_means_any(self):
        config = TriggerConfig(kind="lifecycle_change", lifecycle_to=["AtRisk"])
        event = TriggerEvent(
            type="lifecycle_change",
            user_id="u",
            from_state=LifecycleState.ACTIVATED,
            to_state=LifecycleState.AT_RISK,
        )
        assert matches_trigger(config, event)
        config.lifecycle_from = ["Trial"]
        assert not matches_trigger(config, event)

    def test_segment_entry_matches_segment_id(self):
        config = TriggerConfig(kind="segment_entry", segment_id="seg_1")
        assert matches_trigger(config, TriggerEvent(type="segment_entry", user_id="u", segment_id="seg_1"))
        assert not matches_trigger(config, TriggerEvent(type="segment_entry", user_id="u", segment_id="seg_2"))

    def test_kind_mismatch_never_matches(self):
        config = TriggerConfig(kind="lifecycle_change")
        assert not matches_trigger(config, TriggerEvent(type="event_received", user_id="u", event_name="x"))


class TestEnrollmentFactory:
    def test_positions_at_trigger_with_entry_history(self):
        flow = make_flow([TRIGGER, tag("a", "vip")], [("t", "a")])
        enrollment = enroll(flow)
        assert enrollment.current_node_id == "t"
        assert enrollment.status is EnrollmentStatus.ACTIVE
        assert enrollment.history[0].action is HistoryAction.ENTERED
        assert enrollment.id.startswith("enr_")

    def test_flow_without_trigger_cannot_enroll(self):
        flow = make_flow([tag("a", "vip")], [])
        assert enroll(flow) is None

    def test_initial_variables_by_source(self):
        variables = [
            FlowVariable(key="plan", source="user_property", source_field="plan", default_value="none"),
            FlowVariable(key="amount", source="event_property", source_field="amount", default_value=0),
            FlowVariable(key="channel", default_value="email"),
            FlowVariable(key="missing", source="user_property", source_field="nope"),
        ]
        bag = build_initial_variables(variables, make_user().to_record(), None, {})
        assert bag == {"plan": "Growth", "amount": 0, "channel": "email", "missing": ""}


class TestProcessing:
    @pytest.fixture
    def flow(self):
        return make_flow(
            [
                TRIGGER,
                tag("a1", "vip"),
                node("d", "delay", delayConfig={"kind": "fixed_duration", "durationMinutes": 60}),
                node("a2", "action", actionConfig={"kind": "send_email", "emailSubject": "Hi {{user.name}}"}),
                node("x", "exit"),
            ],
            [("t", "a1"), ("a1", "d"), ("d", "a2"), ("a2", "x")],
        )

    def test_runs_until_delay_parks(self, flow):
        result = run(flow, enroll(flow))
        assert result.ticks == 3
        assert result.actions == [AddTagAction(user_id="u_1", tag="vip")]
        assert result.enrollment.current_node_id == "d"
        assert result.enrollment.next_process_at == NOW + timedelta(hours=1)
        assert result.enrollment.status is EnrollmentStatus.ACTIVE

    def test_waiting_delay_is_a_no_op(self, flow):
        parked = run(flow, enroll(flow)).enrollment
        result = run(flow, parked, now=NOW + timedelta(minutes=30))
        assert result.actions == []
        assert result.enrollment.current_node_id == "d"
        assert result.enrollment.next_process_at == parked.next_process_at

    def test_elapsed_delay_resumes_to_completion(self, flow):
        parked = run(flow, enroll(flow)).enrollment
        result = run(flow, parked, now=NOW + timedelta(minutes=61))
        assert result.enrollment.status is EnrollmentStatus.COMPLETED
        assert result.enrollment.completed_at == NOW + timedelta(minutes=61)
        assert result.enrollment.next_process_at is None
        assert len(result.actions) == 1
        email = result.actions[0]
        assert isinstance(email, SendEmailAction)
        assert email.to == "ada@example.com"
        assert email.subject == "Hi Ada Lovelace"

    def test_single_tick_does_not_mutate_input(self, flow):
        enrollment = enroll(flow)
        result = tick_enrollment(TickContext(flow=flow, enrollment=enrollment, now=NOW, user=make_user()))
        assert result.enrollment.current_node_id == "a1"
        assert enrollment.current_node_id == "t"
        assert len(enrollment.history) == 1

    def test_set_variable_feeds_later_templates(self):
        flow = make_flow(
            [
                TRIGGER,
                node("v", "action", actionConfig={"kind": "set_variable", "variableKey": "coupon", "variableValue": "SAVE{{user.plan}}"}),
                node("e", "action", actionConfig={"kind": "send_email", "emailSubject": "Code {{coupon}}"}),
            ],
            [("t", "v"), ("v", "e")],
        )
        result = run(flow, enroll(flow))
        assert result.enrollment.variables["coupon"] == "SAVEGrowth"
        assert result.actions[-1].subject == "Code SAVEGrowth"
        # no outgoing edge from the last node completes the enrollment
        assert result.enrollment.status is EnrollmentStatus.COMPLETED


class TestBranching:
    @pytest.fixture
    def flow(self):
        return make_flow(
            [
                TRIGGER,
                node("c", "condition", conditionConfig={
                    "logic": "AND",
                    "rules": [{"field": "user.plan", "operator": "equals", "value": "growth"}],
                }),
                tag("yes", "growth"),
                tag("no", "other"),
            ],
            [("t", "c"), ("c", "yes", "yes"), ("c", "no", "no")],
        )

    def test_condition_takes_yes_branch(self, flow):
        result = run(flow, enroll(flow))
        assert [a.tag for a in result.actions] == ["growth"]

    def test_condition_takes_no_branch(self, flow):
        user = make_user(plan="Starter")
        result = run(flow, enroll(flow, user=user), user=user)
        assert [a.tag for a in result.actions] == ["other"]

    def test_filter_exits_non_matching_users(self):
        flow = make_flow(
            [
                TRIGGER,
                node("f", "filter", filterConfig={"rules": [{"field": "user.mrr", "operator": "greater_than", "value": 500}]}),
                tag("a", "big"),
            ],
            [("t", "f"), ("f", "a")],
        )
        result = run(flow, enroll(flow))
        assert result.enrollment.status is EnrollmentStatus.EXITED
        assert result.actions == []
        assert result.enrollment.history[-1].action is HistoryAction.SKIPPED

    def test_split_bucket_is_stable(self):
        even = [SplitVariant(id="a", percentage=50), SplitVariant(id="b", percentage=50)]
        skewed = [SplitVariant(id="a", percentage=30), SplitVariant(id="b", percentage=70)]
        # "u_1" hashes into bucket 31
        assert pick_split_variant(even, "u_1") == "a"
        assert pick_split_variant(skewed, "u_1") == "b"
        assert pick_split_variant([], "u_1") == ""

    def test_split_follows_variant_handle(self):
        flow = make_flow(
            [
                TRIGGER,
                node("s", "split", splitConfig={"variants": [{"id": "a", "percentage": 50}, {"id": "b", "percentage": 50}]}),
                tag("va", "variant-a"),
                tag("vb", "variant-b"),
            ],
            [("t", "s"), ("s", "va", "variant-a"), ("s", "vb", "variant-b")],
        )
        result = run(flow, enroll(flow))
        assert [a.tag for a in result.actions] == ["variant-a"]


class TestLoops:
    def test_goto_respects_max_loops(self):
        flow = make_flow(
            [TRIGGER, tag("a", "loop"), node("g", "goto", goToConfig={"targetNodeId": "a", "maxLoops": 2}), node("x", "exit")],
            [("t", "a"), ("a", "g"), ("g", "x")],
        )
        result = run(flow, enroll(flow))
        assert len(result.actions) == 3
        assert result.ticks == 8
        assert result.enrollment.status is EnrollmentStatus.COMPLETED

    def test_unbounded_loop_stops_at_tick_cap(self):
        flow = make_flow(
            [TRIGGER, tag("a", "loop"), node("g", "goto", goToConfig={"targetNodeId": "a"})],
            [("t", "a"), ("a", "g")],
        )
        ctx = TickContext(flow=flow, enrollment=enroll(flow), now=NOW, user=make_user())
        result = process_enrollment(ctx, max_ticks=10)
        assert result.ticks == 10
        assert result.enrollment.status is EnrollmentStatus.ACTIVE


class TestFailures:
    def test_unknown_goto_target_is_enrollment_fatal(self):
        flow = make_flow(
            [TRIGGER, node("g", "goto", goToConfig={"targetNodeId": "nope"})],
            [("t", "g")],
        )
        result = run(flow, enroll(flow))
        assert result.enrollment.status is EnrollmentStatus.ERROR
        assert result.enrollment.error_node_id == "g"
        assert result.enrollment.error_message == "GoTo target nope not found"
        assert result.enrollment.history[-1].action is HistoryAction.FAILED

    def test_missing_action_config_is_enrollment_fatal(self):
        flow = make_flow([TRIGGER, node("a", "action")], [("t", "a")])
        result = run(flow, enroll(flow))
        assert result.enrollment.status is EnrollmentStatus.ERROR
        assert result.enrollment.error_message == "Missing action config"

    def test_missing_current_node(self):
        flow = make_flow([TRIGGER], [])
        enrollment = enroll(flow)
        enrollment.current_node_id = "gone"
        result = run(flow, enrollment)
        assert result.enrollment.status is EnrollmentStatus.ERROR
        assert result.enrollment.error_node_id == "gone"


class TestDelays:
    def _flow(self, delay_config):
        return make_flow(
            [TRIGGER, node("d", "delay", delayConfig=delay_config), tag("a", "after")],
            [("t", "d"), ("d", "a")],
        )

    def test_until_event_wakes_on_awaited_event(self):
        flow = self._flow({"kind": "until_event", "waitForEvent": "upgraded", "waitTimeoutMinutes": 120})
        parked = run(flow, enroll(flow)).enrollment
        assert parked.next_process_at == NOW + timedelta(minutes=120)

        other = run(flow, parked, now=NOW + timedelta(minutes=10), event_name="login")
        assert other.enrollment.current_node_id == "d"

        awaited = run(flow, parked, now=NOW + timedelta(minutes=10), event_name="upgraded")
        assert [a.tag for a in awaited.actions] == ["after"]

    def test_time_of_day_uses_timezone(self):
        flow = self._flow({"kind": "until_time_of_day", "untilTime": "09:00", "untilTimezone": "America/New_York"})
        parked = run(flow, enroll(flow)).enrollment
        # 08:00 EDT on the 10th, so 09:00 local is later the same day
        assert parked.next_process_at == datetime(2025, 3, 10, 13, 0, tzinfo=timezone.utc)

    def test_until_date_from_variable(self):
        flow = self._flow({"kind": "until_date", "untilDate": "{{renewal}}"})
        flow.variables = [FlowVariable(key="renewal", default_value="2025-04-01T00:00:00Z")]
        parked = run(flow, enroll(flow)).enrollment
        assert parked.next_process_at == datetime(2025, 4, 1, tzinfo=timezone.utc)

    def test_unparseable_date_falls_back_to_an_hour(self):
        flow = self._flow({"kind": "until_date", "untilDate": "someday"})
        parked = run(flow, enroll(flow)).enrollment
        assert parked.next_process_at == NOW + timedelta(hours=1)
