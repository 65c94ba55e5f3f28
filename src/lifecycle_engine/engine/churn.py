"""Churn risk scoring.

Eight independently scored signals, each producing a 0-100 raw sub-score,
are combined with fixed weights into a 0-100 risk score:

    login frequency 0.25, feature usage 0.20, session depth 0.12, NPS 0.12,
    lifecycle state 0.10, support escalation 0.08, contract renewal 0.08,
    seat utilization 0.05

Sub-scores above 5 also yield an explanatory factor. Recommendations are
rule based: they map factor categories and the tier to a fixed action list.
Users already in Churned short-circuit to a canned Critical/100 result.
"""
from __future__ import annotations
from dataclasses import dataclass, field

from lifecycle_engine.models.domain import LifecycleState, RiskTier, UserSnapshot
from lifecycle_engine.utils.values import round_half_up

WEIGHTS: dict[str, float] = {
    "login_frequency": 0.25,
    "feature_usage": 0.20,
    "session_depth": 0.12,
    "nps_score": 0.12,
    "lifecycle_state": 0.10,
    "support_escalation": 0.08,
    "contract_renewal": 0.08,
    "seat_utilization": 0.05,
}

LIFECYCLE_BASE_RISK: dict[LifecycleState, int] = {
    LifecycleState.CHURNED: 100,
    LifecycleState.AT_RISK: 75,
    LifecycleState.LEAD: 40,
    LifecycleState.TRIAL: 20,
    LifecycleState.REACTIVATED: 30,
    LifecycleState.ACTIVATED: 5,
    LifecycleState.POWER_USER: 0,
    LifecycleState.EXPANSION_READY: 0,
}

MATERIAL_THRESHOLD = 5


@dataclass
class RiskFactor:
    signal: str
    weight: float
    category: str
    description: str = ""


@dataclass
class Recommendation:
    action: str
    priority: str
    automatable: bool
    effort: str
    expected_impact: str


@dataclass
class ChurnAnalysis:
    risk_score: int
    risk_tier: RiskTier
    explanation: str
    factors: list[RiskFactor] = field(default_factory=list)
    recommendations: list[Recommendation] = field(default_factory=list)
    estimated_mrr_at_risk: float = 0


@dataclass
class _SignalScore:
    raw: float
    factor: RiskFactor | None = None


def get_risk_tier(score: float) -> RiskTier:
    if score >= 80:
        return RiskTier.CRITICAL
    if score >= 60:
        return RiskTier.HIGH
    if score >= 35:
        return RiskTier.MEDIUM
    return RiskTier.LOW


def _score_login_frequency(user: UserSnapshot) -> _SignalScore:
    days, l7, l30 = user.last_login_days_ago, user.login_frequency_7d, user.login_frequency_30d
    if days >= 30:
        raw = 100
    elif days >= 21:
        raw = 85
    elif days >= 14:
        raw = 65
    elif days >= 7:
        raw = 35
    else:
        raw = max(0, 10 - l7 * 2)

    if l7 == 0:
        raw = max(raw, 80)
    elif l7 < 2:
        raw = max(raw, 50)
    if l30 < 3:
        raw = max(raw, 70)
    elif l30 < 8:
        raw = max(raw, 40)
    raw = min(raw, 100)

    if raw <= MATERIAL_THRESHOLD:
        return _SignalScore(0)
    if raw >= 70:
        description = "Severe disengagement: login activity has dropped sharply."
    elif raw >= 40:
        description = "Declining login patterns, an early warning of disengagement."
    else:
        description = "Slightly below-average login frequency."
    return _SignalScore(raw, RiskFactor(
        signal=f"Login frequency drop: {days}d since last login, {l7}/7d, {l30}/30d",
        weight=WEIGHTS["login_frequency"],
        category="engagement",
        description=description,
    ))


def _score_feature_usage(user: UserSnapshot) -> _SignalScore:
    count = len(user.feature_usage_30d)
    if count == 0:
        raw = 100
    elif count == 1:
        raw = 75
    elif count <= 2:
        raw = 50
    elif count <= 3:
        raw = 25
    else:
        raw = 0
    if raw <= MATERIAL_THRESHOLD:
        return _SignalScore(0)
    description = (
        "No feature usage: user is effectively inactive."
        if count == 0
        else f"Limited to {', '.join(user.feature_usage_30d)}."
    )
    return _SignalScore(raw, RiskFactor(
        signal=f"Feature adoption: only {count} feature(s) used in 30 days",
        weight=WEIGHTS["feature_usage"],
        category="adoption",
        description=description,
    ))


def _score_session_depth(user: UserSnapshot) -> _SignalScore:
    depth = user.session_depth_minutes
    if depth == 0:
        raw = 100
    elif depth < 3:
        raw = 80
    elif depth < 5:
        raw = 55
    elif depth < 10:
        raw = 25
    else:
        raw = 0
    # trial and lead users have not built a session habit yet
    if raw <= MATERIAL_THRESHOLD or user.lifecycle_state in (LifecycleState.LEAD, LifecycleState.TRIAL):
        return _SignalScore(0)
    quality = "superficial" if raw >= 55 else "below-average"
    return _SignalScore(raw, RiskFactor(
        signal=f"Session depth: {depth:g}min average, {quality} engagement",
        weight=WEIGHTS["session_depth"],
        category="engagement",
        description=f"Average session is {depth:g} minutes. Power users average 30+ minutes.",
    ))


def _score_nps(user: UserSnapshot) -> _SignalScore:
    nps = user.nps_score
    if nps is None:
        return _SignalScore(0)
    if nps <= 3:
        raw = 100
    elif nps <= 5:
        raw = 75
    elif nps <= 6:
        raw = 40
    else:
        raw = 0
    if raw <= MATERIAL_THRESHOLD:
        return _SignalScore(0)
    return _SignalScore(raw, RiskFactor(
        signal=f"NPS score: {nps} (detractor)",
        weight=WEIGHTS["nps_score"],
        category="satisfaction",
        description=f"NPS of {nps} indicates dissatisfaction. Scores of 6 or below are detractors.",
    ))


def _score_lifecycle_state(user: UserSnapshot) -> _SignalScore:
    raw = LIFECYCLE_BASE_RISK.get(user.lifecycle_state, 0)
    if raw <= MATERIAL_THRESHOLD:
        return _SignalScore(0)
    state = user.lifecycle_state.value
    return _SignalScore(raw, RiskFactor(
        signal=f"Lifecycle state: {state}",
        weight=WEIGHTS["lifecycle_state"],
        category="lifecycle",
        description=f'Current state "{state}" carries inherent churn risk of {raw}%.',
    ))


def _score_seat_utilization(user: UserSnapshot) -> _SignalScore:
    if user.seat_limit <= 1:
        return _SignalScore(0)
    utilization = user.seat_count / user.seat_limit
    if utilization < 0.1:
        raw = 80
    elif utilization < 0.2:
        raw = 50
    elif utilization < 0.4:
        raw = 25
    else:
        raw = 0
    if raw <= MATERIAL_THRESHOLD:
        return _SignalScore(0)
    return _SignalScore(raw, RiskFactor(
        signal=f"Seat utilization: {user.seat_count}/{user.seat_limit} ({round_half_up(utilization * 100)}%)",
        weight=WEIGHTS["seat_utilization"],
        category="value_realization",
        description="Low seat utilization suggests the account may not see enough value to justify the subscription.",
    ))


def _score_support_escalation(user: UserSnapshot) -> _SignalScore:
    tickets = user.support_tickets_30d or 0
    escalations = user.support_escalations or 0
    raw = 0
    if tickets >= 5:
        raw = 70
    elif tickets >= 3:
        raw = 45
    elif tickets >= 1:
        raw = 15
    if escalations >= 3:
        raw = max(raw, 95)
    elif escalations >= 2:
        raw = max(raw, 75)
    elif escalations >= 1:
        raw = max(raw, 50)
    if raw <= MATERIAL_THRESHOLD:
        return _SignalScore(0)
    description = (
        f"{escalations} support escalation(s) indicate serious friction or unresolved problems."
        if escalations > 0
        else f"{tickets} support tickets suggest the user is struggling with the product."
    )
    return _SignalScore(raw, RiskFactor(
        signal=f"Support escalations: {escalations} escalations, {tickets} tickets in 30 days",
        weight=WEIGHTS["support_escalation"],
        category="support",
        description=description,
    ))


def _score_contract_renewal(user: UserSnapshot) -> _SignalScore:
    days = user.days_until_renewal if user.days_until_renewal is not None else 365
    if days <= 0:
        raw = 100
    elif days <= 14:
        raw = 85
    elif days <= 30:
        raw = 60
    elif days <= 60:
        raw = 35
    elif days <= 90:
        raw = 15
    else:
        raw = 0
    if raw <= MATERIAL_THRESHOLD:
        return _SignalScore(0)
    description = (
        f"Renewal in {days} days: critical window for retention action."
        if days <= 30
        else f"Renewal approaching in {days} days. Prepare retention strategy."
    )
    return _SignalScore(raw, RiskFactor(
        signal=f"Contract renewal: {days} days until renewal",
        weight=WEIGHTS["contract_renewal"],
        category="contract",
        description=description,
    ))


_SCORERS = (
    ("login_frequency", _score_login_frequency),
    ("feature_usage", _score_feature_usage),
    ("session_depth", _score_session_depth),
    ("nps_score", _score_nps),
    ("lifecycle_state", _score_lifecycle_state),
    ("support_escalation", _score_support_escalation),
    ("contract_renewal", _score_contract_renewal),
    ("seat_utilization", _score_seat_utilization),
)


def generate_recommendations(score: int, tier: RiskTier, factors: list[RiskFactor], user: UserSnapshot) -> list[Recommendation]:
    recs: list[Recommendation] = []
    categories = {f.category for f in factors}

    if tier is RiskTier.CRITICAL:
        if user.lifecycle_state is LifecycleState.CHURNED:
            recs.append(Recommendation(
                "Trigger Win-Back Campaign flow with a personalized re-engagement offer.",
                "critical", True, "Low", "High",
            ))
            recs.append(Recommendation(
                "Review exit survey and last 5 support tickets for root cause analysis.",
                "critical", False, "Medium", "High",
            ))
        else:
            recs.append(Recommendation(
                "Assign account to senior CS rep for personal outreach within 24 hours.",
                "critical", False, "Medium", "High",
            ))

    if "engagement" in categories:
        if score >= 60:
            recs.append(Recommendation(
                "Send urgent re-engagement email with personalized product updates.",
                "high", True, "Low", "Medium",
            ))
        else:
            recs.append(Recommendation(
                "Schedule a 15-minute guided walkthrough focused on underutilized features.",
                "medium", False, "Medium", "High",
            ))

    if "adoption" in categories:
        recs.append(Recommendation(
            f"Trigger Feature Adoption flow for features not in [{', '.join(user.feature_usage_30d)}].",
            "high" if score >= 60 else "medium", True, "Low", "Medium",
        ))

    if "satisfaction" in categories and user.nps_score is not None and user.nps_score <= 6:
        recs.append(Recommendation(
            "Route to NPS Follow-up flow with detractor branch. Flag for CS review.",
            "high", True, "Low", "Medium",
        ))

    if "contract" in categories or tier in (RiskTier.HIGH, RiskTier.CRITICAL):
        recs.append(Recommendation(
            "Review account health dashboard and prepare retention offer before renewal.",
            "medium", False, "High", "High",
        ))

    if not recs:
        recs.append(Recommendation(
            "Continue monitoring: no immediate intervention needed.",
            "low", False, "Low", "Low",
        ))
    return recs


def _churned_result(user: UserSnapshot) -> ChurnAnalysis:
    return ChurnAnalysis(
        risk_score=100,
        risk_tier=RiskTier.CRITICAL,
        explanation="User has already churned. Immediate win-back sequence recommended.",
        factors=[
            RiskFactor("Lifecycle state is Churned.", 0.50, "lifecycle"),
            RiskFactor(f"No login for {user.last_login_days_ago} days.", 0.30, "engagement"),
            RiskFactor("Zero feature usage in the last 30 days.", 0.20, "adoption"),
        ],
        recommendations=[
            Recommendation("Trigger Win-Back Campaign flow with a 50% discount offer.", "critical", True, "Low", "High"),
            Recommendation("Review exit survey and support ticket history for root cause.", "high", False, "Medium", "Medium"),
            Recommendation("Schedule personal outreach from CS lead within 48 hours.", "high", False, "Medium", "High"),
        ],
        estimated_mrr_at_risk=user.mrr,
    )


def score_churn_risk(user: UserSnapshot) -> ChurnAnalysis:
    if user.lifecycle_state is LifecycleState.CHURNED:
        return _churned_result(user)

    total = 0.0
    factors: list[RiskFactor] = []
    for name, scorer in _SCORERS:
        result = scorer(user)
        total += result.raw * WEIGHTS[name]
        if result.factor is not None:
            factors.append(result.factor)

    score = min(max(round_half_up(total), 0), 100)
    tier = get_risk_tier(score)
    explanation = (
        " ".join(f.signal for f in factors)
        if factors
        else "No significant risk signals detected. User appears healthy."
    )
    return ChurnAnalysis(
        risk_score=score,
        risk_tier=tier,
        explanation=explanation,
        factors=factors,
        recommendations=generate_recommendations(score, tier, factors, user),
        estimated_mrr_at_risk=user.mrr if score >= 35 else 0,
    )
