"""Tests for lifecycle classification and cooldown-gated transitions."""
from datetime import timedelta

import pytest

from lifecycle_engine.engine.lifecycle import classify_lifecycle_state, detect_state_transition
from lifecycle_engine.models.domain import LifecycleState

from conftest import NOW, make_user


class TestClassification:
    def test_engaged_user_with_activation_date_is_activated(self):
        result = classify_lifecycle_state(make_user())
        assert result.state is LifecycleState.ACTIVATED
        assert result.confidence == 85
        assert result.signals[0] == "Activated on 2025-01-05"

    def test_silent_user_is_churned(self):
        user = make_user(last_login_days_ago=45, login_frequency_30d=0, login_frequency_7d=0, feature_usage_30d=[])
        result = classify_lifecycle_state(user)
        assert result.state is LifecycleState.CHURNED
        assert result.confidence == 95
        assert "No login for 45 days" in result.signals

    def test_returning_churned_user_is_reactivated(self):
        user = make_user(
            lifecycle_state=LifecycleState.TRIAL,
            previous_state=LifecycleState.CHURNED,
            last_login_days_ago=2,
            login_frequency_7d=2,
            login_frequency_30d=2,
        )
        result = classify_lifecycle_state(user)
        assert result.state is LifecycleState.REACTIVATED
        assert result.previous_state is LifecycleState.CHURNED

    def test_no_usage_is_lead(self):
        user = make_user(feature_usage_30d=[], login_frequency_30d=1, session_depth_minutes=0, last_login_days_ago=3)
        assert classify_lifecycle_state(user).state is LifecycleState.LEAD

    def test_at_risk_weight_sets_confidence(self):
        user = make_user(last_login_days_ago=20, login_frequency_30d=3)
        result = classify_lifecycle_state(user)
        assert result.state is LifecycleState.AT_RISK
        # 35 for inactivity + 25 for low frequency
        assert result.confidence == 60
        assert result.previous_state is LifecycleState.ACTIVATED

    def test_trial_users_are_not_penalised_for_shallow_usage(self):
        user = make_user(
            plan="Trial",
            activated_date=None,
            feature_usage_30d=["Dashboard"],
            session_depth_minutes=4,
            login_frequency_30d=6,
        )
        result = classify_lifecycle_state(user)
        assert result.state is LifecycleState.TRIAL
        assert result.confidence == 75

    def test_seat_pressure_is_expansion_ready(self):
        user = make_user(seat_count=9, seat_limit=10)
        result = classify_lifecycle_state(user)
        assert result.state is LifecycleState.EXPANSION_READY
        assert result.signals == ["Seat usage at 90%"]
        assert result.confidence == 93

    def test_heavy_engagement_is_power_user(self):
        user = make_user(
            login_frequency_30d=25,
            feature_usage_30d=["Dashboard", "Reports", "Flows", "Analytics", "Exports"],
            session_depth_minutes=35,
        )
        assert classify_lifecycle_state(user).state is LifecycleState.POWER_USER


class TestTransitions:
    @pytest.fixture
    def power_usage(self):
        return dict(
            login_frequency_30d=25,
            feature_usage_30d=["Dashboard", "Reports", "Flows", "Analytics", "Exports"],
            session_depth_minutes=35,
        )

    def test_unchanged_state_does_not_transition(self):
        result = detect_state_transition(make_user(), NOW)
        assert not result.transitioned
        assert not result.suppressed_by_cooldown
        assert result.to_state is LifecycleState.ACTIVATED

    def test_cooldown_holds_recent_state(self, power_usage):
        user = make_user(state_changed_at=NOW - timedelta(hours=2), **power_usage)
        result = detect_state_transition(user, NOW)
        assert not result.transitioned
        assert result.suppressed_by_cooldown
        assert result.to_state is LifecycleState.ACTIVATED
        assert result.classification.state is LifecycleState.ACTIVATED
        assert any(s.startswith("Cooldown active") for s in result.classification.signals)

    def test_transition_after_cooldown(self, power_usage):
        user = make_user(state_changed_at=NOW - timedelta(hours=25), **power_usage)
        result = detect_state_transition(user, NOW)
        assert result.transitioned
        assert result.from_state is LifecycleState.ACTIVATED
        assert result.to_state is LifecycleState.POWER_USER

    def test_moves_to_at_risk_bypass_cooldown(self):
        user = make_user(state_changed_at=NOW - timedelta(minutes=5), last_login_days_ago=20, login_frequency_30d=3)
        result = detect_state_transition(user, NOW)
        assert result.transitioned
        assert result.to_state is LifecycleState.AT_RISK

    def test_missing_change_timestamp_never_blocks(self, power_usage):
        result = detect_state_transition(make_user(state_changed_at=None, **power_usage), NOW)
        assert result.transitioned
