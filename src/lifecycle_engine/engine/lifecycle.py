"""Lifecycle state classification.

Maps a user snapshot to one of eight lifecycle states. States are checked in
strict priority order and the first match wins:

    Churned -> Reactivated -> Lead -> AtRisk -> ExpansionReady
    -> PowerUser -> Activated -> Trial (default)

``detect_state_transition`` wraps the classifier with per-state dwell-time
cooldowns so users do not oscillate between neighbouring states. Moves into
AtRisk or Churned always bypass the cooldown.
"""
from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta

from lifecycle_engine.models.domain import LifecycleState, PlanTier, UserSnapshot
from lifecycle_engine.utils.values import round_half_up


@dataclass(frozen=True)
class Thresholds:
    activation_min_features: int = 3
    activation_min_session_depth: float = 10
    power_user_min_logins_30d: int = 20
    power_user_min_features: int = 5
    power_user_min_session_depth: float = 30
    expansion_seat_threshold: float = 0.8
    expansion_api_threshold: float = 0.8
    expansion_min_logins_7d: int = 3
    at_risk_no_login_days: int = 14
    at_risk_low_frequency_30d: int = 5
    at_risk_trigger_weight: int = 50
    churned_no_login_days: int = 30
    reactivation_recency_days: int = 7


THRESHOLDS = Thresholds()

COOLDOWNS: dict[LifecycleState, timedelta] = {
    LifecycleState.LEAD: timedelta(0),
    LifecycleState.TRIAL: timedelta(0),
    LifecycleState.ACTIVATED: timedelta(hours=24),
    LifecycleState.POWER_USER: timedelta(hours=48),
    LifecycleState.EXPANSION_READY: timedelta(hours=24),
    LifecycleState.AT_RISK: timedelta(0),
    LifecycleState.CHURNED: timedelta(0),
    LifecycleState.REACTIVATED: timedelta(hours=72),
}

COOLDOWN_EXEMPT = frozenset({LifecycleState.AT_RISK, LifecycleState.CHURNED})


@dataclass
class LifecycleClassification:
    state: LifecycleState
    confidence: int
    signals: list[str] = field(default_factory=list)
    previous_state: LifecycleState | None = None


@dataclass
class StateTransition:
    transitioned: bool
    from_state: LifecycleState
    to_state: LifecycleState
    classification: LifecycleClassification
    suppressed_by_cooldown: bool = False


def _previous(user: UserSnapshot, state: LifecycleState) -> LifecycleState | None:
    return user.lifecycle_state if user.lifecycle_state != state else user.previous_state


def _classified(user: UserSnapshot, state: LifecycleState, confidence: int, signals: list[str]) -> LifecycleClassification:
    return LifecycleClassification(state=state, confidence=confidence, signals=signals, previous_state=_previous(user, state))


def classify_lifecycle_state(user: UserSnapshot, thresholds: Thresholds = THRESHOLDS) -> LifecycleClassification:
    t = thresholds
    features = len(user.feature_usage_30d)

    if (
        user.last_login_days_ago >= t.churned_no_login_days
        and user.login_frequency_30d == 0
        and features == 0
    ):
        return _classified(user, LifecycleState.CHURNED, 95, [
            f"No login for {user.last_login_days_ago} days",
            "Zero feature usage in 30 days",
            "Zero logins in 30 days",
        ])

    if (
        user.previous_state == LifecycleState.CHURNED
        and user.last_login_days_ago <= t.reactivation_recency_days
        and user.login_frequency_7d > 0
    ):
        return LifecycleClassification(
            state=LifecycleState.REACTIVATED,
            confidence=90,
            signals=[
                "Previously churned user returned",
                f"Last login {user.last_login_days_ago} day(s) ago",
                f"{user.login_frequency_7d} logins in last 7 days",
            ],
            previous_state=LifecycleState.CHURNED,
        )

    if features == 0 and user.login_frequency_30d <= 1 and user.session_depth_minutes == 0:
        return LifecycleClassification(
            state=LifecycleState.LEAD,
            confidence=85,
            signals=["No feature usage", "Minimal or no logins"],
        )

    at_risk_signals: list[str] = []
    weight = 0
    on_trial = user.plan == PlanTier.TRIAL.value
    if user.last_login_days_ago >= t.at_risk_no_login_days:
        weight += 35
        at_risk_signals.append(f"No login for {user.last_login_days_ago} days")
    if 0 < user.login_frequency_30d < t.at_risk_low_frequency_30d:
        weight += 25
        at_risk_signals.append(f"Only {user.login_frequency_30d} logins in 30 days")
    if features <= 1 and not on_trial:
        weight += 20
        at_risk_signals.append(f"Using only {features} feature(s)")
    if user.session_depth_minutes < 5 and not on_trial:
        weight += 10
        at_risk_signals.append(f"Session depth only {user.session_depth_minutes:g}min")
    if user.nps_score is not None and user.nps_score <= 5:
        weight += 10
        at_risk_signals.append(f"NPS score {user.nps_score} (detractor)")
    if weight >= t.at_risk_trigger_weight:
        return _classified(user, LifecycleState.AT_RISK, min(weight, 95), at_risk_signals)

    seat_usage = user.seat_count / user.seat_limit if user.seat_limit > 0 else 0
    api_usage = user.api_calls_30d / user.api_limit if user.api_limit > 0 else 0
    seat_hot = seat_usage >= t.expansion_seat_threshold
    api_hot = api_usage >= t.expansion_api_threshold
    if (seat_hot or api_hot) and user.login_frequency_7d >= t.expansion_min_logins_7d and features >= t.activation_min_features:
        expansion_signals = []
        if seat_hot:
            expansion_signals.append(f"Seat usage at {round_half_up(seat_usage * 100)}%")
        if api_hot:
            expansion_signals.append(f"API usage at {round_half_up(api_usage * 100)}%")
        confidence = min(70 + round_half_up(max(seat_usage, api_usage) * 25), 95)
        return _classified(user, LifecycleState.EXPANSION_READY, confidence, expansion_signals)

    if (
        user.login_frequency_30d >= t.power_user_min_logins_30d
        and features >= t.power_user_min_features
        and user.session_depth_minutes >= t.power_user_min_session_depth
    ):
        return _classified(user, LifecycleState.POWER_USER, 90, [
            f"{user.login_frequency_30d} logins in 30 days",
            f"{features} features used",
            f"{user.session_depth_minutes:g}min avg session depth",
        ])

    if user.activated_date or (
        features >= t.activation_min_features
        and user.session_depth_minutes >= t.activation_min_session_depth
    ):
        reason = f"Activated on {user.activated_date}" if user.activated_date else "Met activation criteria"
        return _classified(user, LifecycleState.ACTIVATED, 85, [reason, f"{features} features used"])

    signals = ["User has activity but has not met activation criteria"]
    if features > 0:
        signals.append(f"{features} feature(s) used so far")
    return _classified(user, LifecycleState.TRIAL, 75, signals)


def cooldown_elapsed(user: UserSnapshot, proposed: LifecycleState, now: datetime) -> bool:
    """True when the dwell time for the user's current state has passed."""
    if proposed in COOLDOWN_EXEMPT:
        return True
    if user.state_changed_at is None:
        return True
    required = COOLDOWNS.get(user.lifecycle_state, timedelta(0))
    return now - user.state_changed_at >= required


def detect_state_transition(user: UserSnapshot, now: datetime, thresholds: Thresholds = THRESHOLDS) -> StateTransition:
    classification = classify_lifecycle_state(user, thresholds)
    differs = classification.state != user.lifecycle_state

    if differs and not cooldown_elapsed(user, classification.state, now):
        held = replace(
            classification,
            state=user.lifecycle_state,
            signals=[
                *classification.signals,
                f'Cooldown active: dwell time in "{user.lifecycle_state.value}" has not elapsed',
            ],
        )
        return StateTransition(
            transitioned=False,
            from_state=user.lifecycle_state,
            to_state=user.lifecycle_state,
            classification=held,
            suppressed_by_cooldown=True,
        )

    return StateTransition(
        transitioned=differs,
        from_state=user.lifecycle_state,
        to_state=classification.state,
        classification=classification,
    )
