"""Tests for expansion signal detection and opportunity materialisation."""
from lifecycle_engine.engine.expansion import (
    DetectedSignal,
    OpportunityIdGenerator,
    compute_expansion_score,
    detect_expansion_signals,
    next_plan,
    signals_to_opportunities,
)
from lifecycle_engine.models.domain import ExpansionSignal

from conftest import NOW, make_account, make_user


def _signal(confidence: int, signal=ExpansionSignal.SEAT_CAP) -> DetectedSignal:
    return DetectedSignal(signal, "", confidence, "Business", 349, 200)


class TestPlanHierarchy:
    def test_next_plan_steps_up(self):
        assert next_plan("Trial") == "Starter"
        assert next_plan("Business") == "Enterprise"

    def test_top_and_unknown_plans_stay_put(self):
        assert next_plan("Enterprise") == "Enterprise"
        assert next_plan("Legacy") == "Legacy"


class TestDetectors:
    def test_comfortable_user_has_no_signals(self):
        assert detect_expansion_signals(make_user(), make_account()) == []

    def test_seat_cap(self):
        account = make_account(user_count=9, mrr=149)
        signals = detect_expansion_signals(make_user(), account)
        assert [s.signal for s in signals] == [ExpansionSignal.SEAT_CAP]
        seat = signals[0]
        assert seat.description == "Using 9 of 10 seats (90%)"
        assert seat.confidence == 92
        assert seat.suggested_plan == "Business"
        assert seat.uplift_mrr == 200

    def test_signals_without_uplift_are_dropped(self):
        account = make_account(user_count=9, mrr=400)
        assert detect_expansion_signals(make_user(), account) == []

    def test_api_pressure_raises_plan_limit_then_throttle(self):
        near = detect_expansion_signals(make_user(api_calls_30d=9000), make_account())
        assert [s.signal for s in near] == [ExpansionSignal.PLAN_LIMIT]
        assert near[0].confidence == 91

        hot = detect_expansion_signals(make_user(api_calls_30d=9700), make_account())
        assert [s.signal for s in hot] == [ExpansionSignal.PLAN_LIMIT, ExpansionSignal.API_THROTTLE]
        assert hot[1].confidence == 80

    def test_feature_outside_plan_is_gated(self):
        user = make_user(feature_usage_30d=["Dashboard", "Integrations"])
        signals = detect_expansion_signals(user, make_account())
        assert [s.signal for s in signals] == [ExpansionSignal.FEATURE_GATE]
        assert signals[0].description == "Accessed 1 feature(s) outside current plan: Integrations"
        assert signals[0].confidence == 65

    def test_top_plan_never_upsells(self):
        user = make_user(plan="Enterprise", api_calls_30d=9900)
        account = make_account(plan="Enterprise", user_count=10)
        assert detect_expansion_signals(user, account) == []


class TestScoring:
    def test_no_signals_scores_zero(self):
        assert compute_expansion_score([]) == 0

    def test_extra_signals_boost_strongest(self):
        assert compute_expansion_score([_signal(92), _signal(91)]) == 97

    def test_score_is_capped(self):
        assert compute_expansion_score([_signal(95)] * 4) == 98


class TestOpportunities:
    def test_signals_become_identified_opportunities(self):
        account = make_account(user_count=9)
        signals = detect_expansion_signals(make_user(), account)
        opportunities = signals_to_opportunities(signals, account, OpportunityIdGenerator(), NOW)

        assert len(opportunities) == 1
        opp = opportunities[0]
        assert opp.id == f"exp_auto_{int(NOW.timestamp() * 1000)}_101"
        assert opp.status == "identified"
        assert opp.identified_date == "2025-03-10"
        assert opp.account_name == "Analytical Engines Ltd"
        assert opp.current_plan == "Growth"

    def test_generator_ids_are_unique(self):
        gen = OpportunityIdGenerator()
        assert gen.next_id(NOW) != gen.next_id(NOW)
