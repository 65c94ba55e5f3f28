"""Expansion signal detection.

Five detectors look for upsell pressure on a user within their account:
seat_cap, plan_limit, heavy_usage, api_throttle and feature_gate. Each one
suggests the next plan up the hierarchy and an uplift MRR estimate; signals
without positive uplift are dropped.
"""
from __future__ import annotations
import itertools
import math
import threading
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Optional

from lifecycle_engine.models.domain import (
    Account,
    ExpansionOpportunity,
    ExpansionSignal,
    PlanTier,
    UserSnapshot,
)
from lifecycle_engine.utils.values import round_half_up

PLAN_HIERARCHY: list[str] = [p.value for p in PlanTier]

PLAN_MRR: dict[str, int] = {
    "Trial": 0,
    "Starter": 49,
    "Growth": 149,
    "Business": 349,
    "Enterprise": 799,
}

_BASE_FEATURES = ["Dashboard", "Reports", "Flows", "Analytics", "Exports", "Integrations", "API Access"]

# cumulative feature set per plan
PLAN_FEATURES: dict[str, list[str]] = {
    "Trial": _BASE_FEATURES[:1],
    "Starter": _BASE_FEATURES[:3],
    "Growth": _BASE_FEATURES[:5],
    "Business": _BASE_FEATURES[:7],
    "Enterprise": _BASE_FEATURES + ["SSO", "Webhooks", "Custom Flows"],
}

MAX_EXPANSION_SCORE = 98


@dataclass
class DetectedSignal:
    signal: ExpansionSignal
    description: str
    confidence: int
    suggested_plan: str
    potential_mrr: float
    uplift_mrr: float


def next_plan(current: str) -> str:
    """Next tier up; unknown and top tiers map to themselves."""
    if current not in PLAN_HIERARCHY:
        return current
    idx = PLAN_HIERARCHY.index(current)
    if idx >= len(PLAN_HIERARCHY) - 1:
        return current
    return PLAN_HIERARCHY[idx + 1]


def _upgrade(signal: ExpansionSignal, description: str, confidence: int, current_plan: str, suggested: str) -> DetectedSignal:
    potential = PLAN_MRR[suggested]
    return DetectedSignal(
        signal=signal,
        description=description,
        confidence=confidence,
        suggested_plan=suggested,
        potential_mrr=potential,
        uplift_mrr=potential - PLAN_MRR.get(current_plan, 0),
    )


def detect_seat_cap(user: UserSnapshot, account: Account) -> DetectedSignal | None:
    if account.seat_limit <= 0:
        return None
    utilization = account.user_count / account.seat_limit
    if utilization < 0.8:
        return None
    suggested = next_plan(account.plan)
    if suggested == account.plan:
        return None
    # priced per block of ten seats
    potential = PLAN_MRR[suggested] * math.ceil(account.user_count / 10)
    return DetectedSignal(
        signal=ExpansionSignal.SEAT_CAP,
        description=f"Using {account.user_count} of {account.seat_limit} seats ({round_half_up(utilization * 100)}%)",
        confidence=min(60 + round_half_up(utilization * 35), 98),
        suggested_plan=suggested,
        potential_mrr=potential,
        uplift_mrr=potential - account.mrr,
    )


def detect_plan_limit(user: UserSnapshot) -> DetectedSignal | None:
    if user.api_limit <= 0:
        return None
    utilization = user.api_calls_30d / user.api_limit
    if utilization < 0.8:
        return None
    suggested = next_plan(user.plan)
    if suggested == user.plan:
        return None
    return _upgrade(
        ExpansionSignal.PLAN_LIMIT,
        f"API usage at {round_half_up(utilization * 100)}% ({user.api_calls_30d:,}/{user.api_limit:,})",
        min(55 + round_half_up(utilization * 40), 95),
        user.plan,
        suggested,
    )


def detect_heavy_usage(user: UserSnapshot) -> DetectedSignal | None:
    plan_features = PLAN_FEATURES.get(user.plan, [])
    if not plan_features:
        return None
    used = len(user.feature_usage_30d)
    ratio = used / len(plan_features)
    if ratio < 0.8:
        return None
    suggested = next_plan(user.plan)
    if suggested == user.plan:
        return None
    return _upgrade(
        ExpansionSignal.HEAVY_USAGE,
        f"Using {used} of {len(plan_features)} available features ({round_half_up(ratio * 100)}%)",
        min(50 + round_half_up(ratio * 40), 90),
        user.plan,
        suggested,
    )


def detect_api_throttle(user: UserSnapshot) -> DetectedSignal | None:
    if user.api_limit <= 0:
        return None
    utilization = user.api_calls_30d / user.api_limit
    if utilization < 0.95:
        return None
    suggested = next_plan(user.plan)
    if suggested == user.plan:
        return None
    return _upgrade(
        ExpansionSignal.API_THROTTLE,
        f"API rate limit hit: usage at {round_half_up(utilization * 100)}% of {user.api_limit:,} limit",
        min(70 + round_half_up((utilization - 0.95) * 500), 98),
        user.plan,
        suggested,
    )


def detect_feature_gate(user: UserSnapshot) -> DetectedSignal | None:
    plan_features = PLAN_FEATURES.get(user.plan, [])
    gated = [f for f in user.feature_usage_30d if f not in plan_features]
    if not gated:
        return None
    suggested = next_plan(user.plan)
    if suggested == user.plan:
        return None
    return _upgrade(
        ExpansionSignal.FEATURE_GATE,
        f"Accessed {len(gated)} feature(s) outside current plan: {', '.join(gated)}",
        min(55 + len(gated) * 10, 90),
        user.plan,
        suggested,
    )


def detect_expansion_signals(user: UserSnapshot, account: Account) -> list[DetectedSignal]:
    detectors: list[Callable[[], Optional[DetectedSignal]]] = [
        lambda: detect_seat_cap(user, account),
        lambda: detect_plan_limit(user),
        lambda: detect_heavy_usage(user),
        lambda: detect_api_throttle(user),
        lambda: detect_feature_gate(user),
    ]
    signals = []
    for detect in detectors:
        result = detect()
        if result is not None and result.uplift_mrr > 0:
            signals.append(result)
    return signals


def compute_expansion_score(signals: list[DetectedSignal]) -> int:
    """Strongest signal's confidence plus +5 per extra signal (max +15), capped at 98."""
    if not signals:
        return 0
    strongest = max(s.confidence for s in signals)
    boost = min((len(signals) - 1) * 5, 15)
    return min(strongest + boost, MAX_EXPANSION_SCORE)


class OpportunityIdGenerator:
    """Process-unique opportunity ids: ``exp_auto_<epoch ms>_<counter>``."""

    def __init__(self, start: int = 100):
        self._counter = itertools.count(start + 1)
        self._lock = threading.Lock()

    def next_id(self, now: datetime) -> str:
        with self._lock:
            seq = next(self._counter)
        return f"exp_auto_{int(now.timestamp() * 1000)}_{seq}"


def signals_to_opportunities(
    signals: list[DetectedSignal],
    account: Account,
    id_generator: OpportunityIdGenerator,
    now: datetime,
) -> list[ExpansionOpportunity]:
    identified: date = now.date()
    return [
        ExpansionOpportunity(
            id=id_generator.next_id(now),
            account_id=account.id,
            account_name=account.name,
            signal=s.signal,
            signal_description=s.description,
            current_plan=account.plan,
            suggested_plan=s.suggested_plan,
            current_mrr=account.mrr,
            potential_mrr=s.potential_mrr,
            uplift_mrr=s.uplift_mrr,
            confidence=s.confidence,
            status="identified",
            identified_date=identified.isoformat(),
        )
        for s in signals
    ]
