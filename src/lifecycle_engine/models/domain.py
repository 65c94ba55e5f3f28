"""Core records the engine classifies, scores and persists."""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class LifecycleState(str, Enum):
    LEAD = "Lead"
    TRIAL = "Trial"
    ACTIVATED = "Activated"
    POWER_USER = "PowerUser"
    EXPANSION_READY = "ExpansionReady"
    AT_RISK = "AtRisk"
    CHURNED = "Churned"
    REACTIVATED = "Reactivated"


class PlanTier(str, Enum):
    TRIAL = "Trial"
    STARTER = "Starter"
    GROWTH = "Growth"
    BUSINESS = "Business"
    ENTERPRISE = "Enterprise"


class RiskTier(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


class ExpansionSignal(str, Enum):
    SEAT_CAP = "seat_cap"
    PLAN_LIMIT = "plan_limit"
    HEAVY_USAGE = "heavy_usage"
    API_THROTTLE = "api_throttle"
    FEATURE_GATE = "feature_gate"


class WebhookStatus(str, Enum):
    ACTIVE = "active"
    FAILING = "failing"
    INACTIVE = "inactive"


@dataclass
class UserSnapshot:
    id: str
    name: str = ""
    email: str = ""
    lifecycle_state: LifecycleState = LifecycleState.TRIAL
    previous_state: LifecycleState | None = None
    state_changed_at: datetime | None = None
    plan: str = PlanTier.TRIAL.value
    mrr: float = 0
    last_login_days_ago: int = 0
    login_frequency_7d: int = 0
    login_frequency_30d: int = 0
    feature_usage_30d: list[str] = field(default_factory=list)
    session_depth_minutes: float = 0
    activated_date: str | None = None
    signup_date: str | None = None
    churn_risk_score: int = 0
    expansion_score: int = 0
    nps_score: int | None = None
    seat_count: int = 0
    seat_limit: int = 0
    api_calls_30d: int = 0
    api_limit: int = 0
    support_tickets_30d: int = 0
    support_escalations: int = 0
    days_until_renewal: int | None = None
    account_id: str | None = None
    tags: list[str] = field(default_factory=list)
    properties: dict[str, Any] = field(default_factory=dict)

    def to_record(self) -> dict[str, Any]:
        """Flat view used by segment rules, flow conditions and templates."""
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "plan": self.plan,
            "lifecycleState": self.lifecycle_state.value,
            "previousState": self.previous_state.value if self.previous_state else None,
            "mrr": self.mrr or 0,
            "churnRiskScore": self.churn_risk_score or 0,
            "expansionScore": self.expansion_score or 0,
            "lastLoginDaysAgo": self.last_login_days_ago,
            "loginFrequency7d": self.login_frequency_7d,
            "loginFrequency30d": self.login_frequency_30d,
            "featureUsage30d": list(self.feature_usage_30d),
            "sessionDepthMinutes": self.session_depth_minutes,
            "npsScore": self.nps_score,
            "seatCount": self.seat_count,
            "seatLimit": self.seat_limit,
            "apiCalls30d": self.api_calls_30d,
            "apiLimit": self.api_limit,
            "supportTickets30d": self.support_tickets_30d,
            "supportEscalations": self.support_escalations,
            "daysUntilRenewal": self.days_until_renewal,
            "signupDate": self.signup_date,
            "activatedDate": self.activated_date,
            "accountId": self.account_id,
            "tags": list(self.tags),
            "properties": dict(self.properties),
        }


@dataclass
class Account:
    id: str
    name: str = ""
    plan: str = PlanTier.TRIAL.value
    mrr: float = 0
    arr: float = 0
    seat_limit: int = 0
    user_count: int = 0
    health: str = "Good"
    churn_risk_score: int = 0
    expansion_score: int = 0
    domain: str | None = None
    industry: str | None = None
    tags: list[str] = field(default_factory=list)
    properties: dict[str, Any] = field(default_factory=dict)

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "domain": self.domain,
            "industry": self.industry,
            "plan": self.plan,
            "mrr": self.mrr,
            "arr": self.arr,
            "userCount": self.user_count,
            "seatLimit": self.seat_limit,
            "health": self.health,
            "churnRiskScore": self.churn_risk_score,
            "expansionScore": self.expansion_score,
            "tags": list(self.tags),
            "properties": dict(self.properties),
        }


@dataclass
class SegmentFilter:
    """One typed predicate; also the rule shape used by flow conditions."""
    field: str
    operator: str
    value: Any = None
    values: list[Any] | None = None
    field_source: str = "user"


@dataclass
class SegmentDefinition:
    id: str
    name: str
    filters: list[SegmentFilter] = field(default_factory=list)
    filter_logic: str = "AND"
    status: str = "active"


@dataclass
class ExpansionOpportunity:
    id: str
    account_id: str
    account_name: str
    signal: ExpansionSignal
    signal_description: str
    current_plan: str
    suggested_plan: str
    current_mrr: float
    potential_mrr: float
    uplift_mrr: float
    confidence: int
    status: str = "identified"
    identified_date: str | None = None


@dataclass
class ActivityEntry:
    type: str
    title: str
    description: str
    user_id: str | None = None
    account_id: str | None = None
    created_at: datetime | None = None


@dataclass
class WebhookSubscription:
    id: str
    url: str
    secret: str
    events: list[str] = field(default_factory=list)
    status: WebhookStatus = WebhookStatus.ACTIVE
    success_rate: float = 100.0
    org_id: str | None = None
    last_triggered_at: datetime | None = None


@dataclass
class WebhookDeliveryRecord:
    webhook_id: str
    event_type: str
    payload: dict[str, Any]
    success: bool
    attempt_count: int
    response_status: int | None = None


@dataclass
class EmailTemplate:
    id: str
    name: str
    subject: str
    body_html: str
    body_text: str | None = None
