from __future__ import annotations
from datetime import datetime, timezone
from sqlalchemy import String, Integer, DateTime, JSON, Float, Boolean, Text, Index
from sqlalchemy.orm import Mapped, mapped_column
from lifecycle_engine.infrastructure.db import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TrackedUser(Base):
    """Latest behavioral snapshot of an end-user, as identified by the SDK."""
    __tablename__ = "tracked_users"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    org_id: Mapped[str] = mapped_column(String(64), index=True)
    external_id: Mapped[str | None] = mapped_column(String(128), index=True, default=None)
    account_id: Mapped[str | None] = mapped_column(String(64), index=True, default=None)
    name: Mapped[str] = mapped_column(String(256), default="")
    email: Mapped[str] = mapped_column(String(256), default="")
    lifecycle_state: Mapped[str] = mapped_column(String(32), index=True, default="Trial")
    previous_state: Mapped[str | None] = mapped_column(String(32), default=None)
    state_changed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    plan: Mapped[str] = mapped_column(String(32), default="Trial")
    mrr: Mapped[float] = mapped_column(Float, default=0)
    last_login_days_ago: Mapped[int] = mapped_column(Integer, default=0)
    login_frequency_7d: Mapped[int] = mapped_column(Integer, default=0)
    login_frequency_30d: Mapped[int] = mapped_column(Integer, default=0)
    feature_usage_30d: Mapped[list] = mapped_column(JSON, default=list)
    session_depth_minutes: Mapped[float] = mapped_column(Float, default=0)
    activated_date: Mapped[str | None] = mapped_column(String(32), default=None)
    signup_date: Mapped[str | None] = mapped_column(String(32), default=None)
    churn_risk_score: Mapped[int] = mapped_column(Integer, default=0, index=True)
    expansion_score: Mapped[int] = mapped_column(Integer, default=0)
    nps_score: Mapped[int | None] = mapped_column(Integer, default=None)
    seat_count: Mapped[int] = mapped_column(Integer, default=0)
    seat_limit: Mapped[int] = mapped_column(Integer, default=0)
    api_calls_30d: Mapped[int] = mapped_column(Integer, default=0)
    api_limit: Mapped[int] = mapped_column(Integer, default=0)
    support_tickets_30d: Mapped[int] = mapped_column(Integer, default=0)
    support_escalations: Mapped[int] = mapped_column(Integer, default=0)
    days_until_renewal: Mapped[int | None] = mapped_column(Integer, default=None)
    tags: Mapped[list] = mapped_column(JSON, default=list)
    properties: Mapped[dict] = mapped_column(JSON, default=dict)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    __table_args__ = (
        Index("ix_tracked_user_org_external", "org_id", "external_id"),
    )


class TrackedAccount(Base):
    __tablename__ = "tracked_accounts"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    org_id: Mapped[str] = mapped_column(String(64), index=True)
    external_id: Mapped[str | None] = mapped_column(String(128), index=True, default=None)
    name: Mapped[str] = mapped_column(String(256), default="")
    plan: Mapped[str] = mapped_column(String(32), default="Trial")
    mrr: Mapped[float] = mapped_column(Float, default=0)
    arr: Mapped[float] = mapped_column(Float, default=0)
    seat_limit: Mapped[int] = mapped_column(Integer, default=0)
    user_count: Mapped[int] = mapped_column(Integer, default=0)
    health: Mapped[str] = mapped_column(String(16), default="Good")
    churn_risk_score: Mapped[int] = mapped_column(Integer, default=0)
    expansion_score: Mapped[int] = mapped_column(Integer, default=0)
    domain: Mapped[str | None] = mapped_column(String(256), default=None)
    industry: Mapped[str | None] = mapped_column(String(128), default=None)
    tags: Mapped[list] = mapped_column(JSON, default=list)
    properties: Mapped[dict] = mapped_column(JSON, default=dict)
    __table_args__ = (
        Index("ix_tracked_account_org_external", "org_id", "external_id"),
    )


class FlowDefinitionRow(Base):
    """Versioned flow graph as saved by the builder (nodes/edges kept as JSON)."""
    __tablename__ = "flow_definitions"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    org_id: Mapped[str] = mapped_column(String(64), index=True)
    name: Mapped[str] = mapped_column(String(256), default="")
    description: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(String(16), index=True, default="draft")
    version: Mapped[int] = mapped_column(Integer, default=1)
    nodes: Mapped[list] = mapped_column(JSON, default=list)
    edges: Mapped[list] = mapped_column(JSON, default=list)
    variables: Mapped[list] = mapped_column(JSON, default=list)
    settings: Mapped[dict] = mapped_column(JSON, default=dict)
    metrics: Mapped[dict] = mapped_column(JSON, default=dict)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    __table_args__ = (
        Index("ix_flow_org_status", "org_id", "status"),
    )


class FlowEnrollmentRow(Base):
    __tablename__ = "flow_enrollments"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    org_id: Mapped[str] = mapped_column(String(64), index=True)
    flow_id: Mapped[str] = mapped_column(String(64), index=True)
    flow_version: Mapped[int] = mapped_column(Integer, default=1)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    account_id: Mapped[str | None] = mapped_column(String(64), default=None)
    status: Mapped[str] = mapped_column(String(16), index=True, default="active")
    current_node_id: Mapped[str] = mapped_column(String(128))
    variables: Mapped[dict] = mapped_column(JSON, default=dict)
    history: Mapped[list] = mapped_column(JSON, default=list)
    enrolled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    last_processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    next_process_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    error_message: Mapped[str | None] = mapped_column(Text, default=None)
    error_node_id: Mapped[str | None] = mapped_column(String(128), default=None)
    __table_args__ = (
        Index("ix_enrollment_due", "status", "next_process_at"),
        Index("ix_enrollment_org_user", "org_id", "user_id"),
    )


class ExpansionOpportunityRow(Base):
    __tablename__ = "expansion_opportunities"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    org_id: Mapped[str] = mapped_column(String(64), index=True)
    account_id: Mapped[str] = mapped_column(String(64), index=True)
    account_name: Mapped[str] = mapped_column(String(256), default="")
    signal: Mapped[str] = mapped_column(String(32), index=True)
    signal_description: Mapped[str] = mapped_column(Text, default="")
    current_plan: Mapped[str] = mapped_column(String(32))
    suggested_plan: Mapped[str] = mapped_column(String(32))
    current_mrr: Mapped[float] = mapped_column(Float, default=0)
    potential_mrr: Mapped[float] = mapped_column(Float, default=0)
    uplift_mrr: Mapped[float] = mapped_column(Float, default=0)
    confidence: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(16), index=True, default="identified")
    identified_date: Mapped[str | None] = mapped_column(String(16), default=None)


class SegmentDefinitionRow(Base):
    """Audience segment: typed filter rules combined with AND/OR."""
    __tablename__ = "segment_definitions"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    org_id: Mapped[str] = mapped_column(String(64), index=True)
    name: Mapped[str] = mapped_column(String(256))
    filters: Mapped[list] = mapped_column(JSON, default=list)
    filter_logic: Mapped[str] = mapped_column(String(8), default="AND")
    status: Mapped[str] = mapped_column(String(16), index=True, default="active")


class SegmentMembershipRow(Base):
    """Materialized segment membership."""
    __tablename__ = "segment_memberships"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_id: Mapped[str] = mapped_column(String(64), index=True)
    segment_id: Mapped[str] = mapped_column(String(64), index=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    entered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    __table_args__ = (
        Index("ux_segment_member", "segment_id", "user_id", unique=True),
    )


class ActivityLogRow(Base):
    __tablename__ = "activity_log"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_id: Mapped[str] = mapped_column(String(64), index=True)
    type: Mapped[str] = mapped_column(String(32), index=True)
    title: Mapped[str] = mapped_column(String(256))
    description: Mapped[str] = mapped_column(Text, default="")
    user_id: Mapped[str | None] = mapped_column(String(64), index=True, default=None)
    account_id: Mapped[str | None] = mapped_column(String(64), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, index=True)


class WebhookSubscriptionRow(Base):
    __tablename__ = "webhook_subscriptions"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    org_id: Mapped[str] = mapped_column(String(64), index=True)
    url: Mapped[str] = mapped_column(String(1024))
    secret: Mapped[str] = mapped_column(String(256))
    events: Mapped[list] = mapped_column(JSON, default=list)
    status: Mapped[str] = mapped_column(String(16), default="active")
    success_rate: Mapped[float] = mapped_column(Float, default=100.0)
    last_triggered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)


class WebhookDeliveryRow(Base):
    """Audit trail of delivery outcomes (one row per delivery, not per attempt)."""
    __tablename__ = "webhook_deliveries"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    webhook_id: Mapped[str] = mapped_column(String(64), index=True)
    event_type: Mapped[str] = mapped_column(String(64), index=True)
    payload: Mapped[dict] = mapped_column(JSON, default=dict)
    success: Mapped[bool] = mapped_column(Boolean, default=False)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0)
    response_status: Mapped[int | None] = mapped_column(Integer, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, index=True)


class EmailTemplateRow(Base):
    __tablename__ = "email_templates"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    org_id: Mapped[str] = mapped_column(String(64), index=True)
    name: Mapped[str] = mapped_column(String(256))
    subject: Mapped[str] = mapped_column(String(512))
    body_html: Mapped[str] = mapped_column(Text)
    body_text: Mapped[str | None] = mapped_column(Text, default=None)
