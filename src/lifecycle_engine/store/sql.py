"""SQLAlchemy-backed store.

Rows live in ``models.tables``; this module maps them to and from the
engine's dataclasses. Every call runs in its own short session, and
driver errors surface as ``StoreError`` so callers only handle one type.
"""
from __future__ import annotations
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from lifecycle_engine.errors import StoreError
from lifecycle_engine.infrastructure import db
from lifecycle_engine.infrastructure.clock import ensure_utc
from lifecycle_engine.models.domain import (
    Account,
    ActivityEntry,
    EmailTemplate,
    ExpansionOpportunity,
    ExpansionSignal,
    LifecycleState,
    SegmentDefinition,
    SegmentFilter,
    UserSnapshot,
    WebhookDeliveryRecord,
    WebhookStatus,
    WebhookSubscription,
)
from lifecycle_engine.models.flows import (
    EnrollmentStatus,
    FlowDefinition,
    FlowEnrollment,
    HistoryEntry,
    flow_to_dict,
    parse_flow,
)
from lifecycle_engine.models.serialization import dump, load
from lifecycle_engine.models.tables import (
    ActivityLogRow,
    EmailTemplateRow,
    ExpansionOpportunityRow,
    FlowDefinitionRow,
    FlowEnrollmentRow,
    SegmentDefinitionRow,
    SegmentMembershipRow,
    TrackedAccount,
    TrackedUser,
    WebhookDeliveryRow,
    WebhookSubscriptionRow,
)
from lifecycle_engine.store.base import LifecycleStore, filter_user_changes

logger = logging.getLogger(__name__)


def _user_from_row(row: TrackedUser) -> UserSnapshot:
    return UserSnapshot(
        id=row.id,
        name=row.name or "",
        email=row.email or "",
        lifecycle_state=LifecycleState(row.lifecycle_state),
        previous_state=LifecycleState(row.previous_state) if row.previous_state else None,
        state_changed_at=ensure_utc(row.state_changed_at),
        plan=row.plan,
        mrr=row.mrr or 0,
        last_login_days_ago=row.last_login_days_ago or 0,
        login_frequency_7d=row.login_frequency_7d or 0,
        login_frequency_30d=row.login_frequency_30d or 0,
        feature_usage_30d=list(row.feature_usage_30d or []),
        session_depth_minutes=row.session_depth_minutes or 0,
        activated_date=row.activated_date,
        signup_date=row.signup_date,
        churn_risk_score=row.churn_risk_score or 0,
        expansion_score=row.expansion_score or 0,
        nps_score=row.nps_score,
        seat_count=row.seat_count or 0,
        seat_limit=row.seat_limit or 0,
        api_calls_30d=row.api_calls_30d or 0,
        api_limit=row.api_limit or 0,
        support_tickets_30d=row.support_tickets_30d or 0,
        support_escalations=row.support_escalations or 0,
        days_until_renewal=row.days_until_renewal,
        account_id=row.account_id,
        tags=list(row.tags or []),
        properties=dict(row.properties or {}),
    )


def _column_value(value: Any) -> Any:
    return value.value if isinstance(value, (LifecycleState, ExpansionSignal, EnrollmentStatus, WebhookStatus)) else value


def _account_from_row(row: TrackedAccount) -> Account:
    return Account(
        id=row.id,
        name=row.name or "",
        plan=row.plan,
        mrr=row.mrr or 0,
        arr=row.arr or 0,
        seat_limit=row.seat_limit or 0,
        user_count=row.user_count or 0,
        health=row.health,
        churn_risk_score=row.churn_risk_score or 0,
        expansion_score=row.expansion_score or 0,
        domain=row.domain,
        industry=row.industry,
        tags=list(row.tags or []),
        properties=dict(row.properties or {}),
    )


def _flow_from_row(row: FlowDefinitionRow) -> FlowDefinition:
    return parse_flow({
        "id": row.id,
        "name": row.name,
        "status": row.status,
        "version": row.version,
        "description": row.description,
        "orgId": row.org_id,
        "nodes": row.nodes,
        "edges": row.edges,
        "variables": row.variables,
        "settings": row.settings,
        "metrics": row.metrics,
    })


_ENROLLMENT_SCALARS = (
    "flow_id", "flow_version", "user_id", "account_id", "current_node_id",
    "enrolled_at", "last_processed_at", "completed_at", "next_process_at",
    "error_message", "error_node_id",
)


def _enrollment_from_row(row: FlowEnrollmentRow) -> FlowEnrollment:
    return FlowEnrollment(
        id=row.id,
        flow_id=row.flow_id,
        user_id=row.user_id,
        current_node_id=row.current_node_id,
        status=EnrollmentStatus(row.status),
        org_id=row.org_id,
        flow_version=row.flow_version or 1,
        account_id=row.account_id,
        variables=dict(row.variables or {}),
        enrolled_at=ensure_utc(row.enrolled_at),
        last_processed_at=ensure_utc(row.last_processed_at),
        completed_at=ensure_utc(row.completed_at),
        next_process_at=ensure_utc(row.next_process_at),
        history=[load(HistoryEntry, h) for h in row.history or []],
        error_message=row.error_message,
        error_node_id=row.error_node_id,
    )


def _opportunity_from_row(row: ExpansionOpportunityRow) -> ExpansionOpportunity:
    return ExpansionOpportunity(
        id=row.id,
        account_id=row.account_id,
        account_name=row.account_name,
        signal=ExpansionSignal(row.signal),
        signal_description=row.signal_description,
        current_plan=row.current_plan,
        suggested_plan=row.suggested_plan,
        current_mrr=row.current_mrr,
        potential_mrr=row.potential_mrr,
        uplift_mrr=row.uplift_mrr,
        confidence=row.confidence,
        status=row.status,
        identified_date=row.identified_date,
    )


def _webhook_from_row(row: WebhookSubscriptionRow) -> WebhookSubscription:
    return WebhookSubscription(
        id=row.id,
        url=row.url,
        secret=row.secret,
        events=list(row.events or []),
        status=WebhookStatus(row.status),
        success_rate=row.success_rate if row.success_rate is not None else 100.0,
        org_id=row.org_id,
        last_triggered_at=ensure_utc(row.last_triggered_at),
    )


class SqlStore(LifecycleStore):
    def __init__(self, session_factory: sessionmaker | None = None):
        self._session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        factory = self._session_factory or db.SessionLocal
        session = factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Store operation failed: {e}")
            raise StoreError(str(e)) from e
        finally:
            session.close()

    # seeding (SDK identify / admin writes)
    def save_user(self, org_id: str, user: UserSnapshot, external_id: str | None = None) -> UserSnapshot:
        with self._session() as s:
            row = s.get(TrackedUser, user.id) or TrackedUser(id=user.id, org_id=org_id)
            row.org_id = org_id
            if external_id is not None:
                row.external_id = external_id
            for name in (
                "name", "email", "plan", "mrr", "last_login_days_ago", "login_frequency_7d",
                "login_frequency_30d", "session_depth_minutes", "activated_date", "signup_date",
                "churn_risk_score", "expansion_score", "nps_score", "seat_count", "seat_limit",
                "api_calls_30d", "api_limit", "support_tickets_30d", "support_escalations",
                "days_until_renewal", "account_id", "state_changed_at",
            ):
                setattr(row, name, getattr(user, name))
            row.lifecycle_state = user.lifecycle_state.value
            row.previous_state = user.previous_state.value if user.previous_state else None
            row.feature_usage_30d = list(user.feature_usage_30d)
            row.tags = list(user.tags)
            row.properties = dict(user.properties)
            s.add(row)
        return user

    def save_account(self, org_id: str, account: Account) -> Account:
        with self._session() as s:
            row = s.get(TrackedAccount, account.id) or TrackedAccount(id=account.id, org_id=org_id)
            row.org_id = org_id
            for name in (
                "name", "plan", "mrr", "arr", "seat_limit", "user_count", "health",
                "churn_risk_score", "expansion_score", "domain", "industry",
            ):
                setattr(row, name, getattr(account, name))
            row.tags = list(account.tags)
            row.properties = dict(account.properties)
            s.add(row)
        return account

    def save_segment(self, org_id: str, segment: SegmentDefinition) -> SegmentDefinition:
        with self._session() as s:
            row = s.get(SegmentDefinitionRow, segment.id) or SegmentDefinitionRow(id=segment.id, org_id=org_id)
            row.name = segment.name
            row.filters = [dump(f) for f in segment.filters]
            row.filter_logic = segment.filter_logic
            row.status = segment.status
            s.add(row)
        return segment

    def save_webhook(self, org_id: str, webhook: WebhookSubscription) -> WebhookSubscription:
        with self._session() as s:
            row = s.get(WebhookSubscriptionRow, webhook.id) or WebhookSubscriptionRow(id=webhook.id, org_id=org_id)
            row.url = webhook.url
            row.secret = webhook.secret
            row.events = list(webhook.events)
            row.status = webhook.status.value
            row.success_rate = webhook.success_rate
            row.last_triggered_at = webhook.last_triggered_at
            s.add(row)
        return webhook

    def save_email_template(self, org_id: str, template: EmailTemplate) -> EmailTemplate:
        with self._session() as s:
            row = s.get(EmailTemplateRow, template.id) or EmailTemplateRow(id=template.id, org_id=org_id)
            row.name = template.name
            row.subject = template.subject
            row.body_html = template.body_html
            row.body_text = template.body_text
            s.add(row)
        return template

    # users / accounts
    @staticmethod
    def _user_row(s: Session, org_id: str, user_id: str) -> TrackedUser | None:
        return (
            s.query(TrackedUser)
            .filter(TrackedUser.org_id == org_id)
            .filter(or_(TrackedUser.id == user_id, TrackedUser.external_id == user_id))
            .first()
        )

    def get_user(self, org_id: str, user_id: str) -> UserSnapshot | None:
        with self._session() as s:
            row = self._user_row(s, org_id, user_id)
            return _user_from_row(row) if row else None

    def update_user(self, org_id: str, user_id: str, changes: dict[str, Any]) -> UserSnapshot | None:
        with self._session() as s:
            row = self._user_row(s, org_id, user_id)
            if row is None:
                return None
            for name, value in filter_user_changes(changes).items():
                if isinstance(value, list):
                    value = list(value)
                elif isinstance(value, dict):
                    value = dict(value)
                setattr(row, name, _column_value(value))
            s.flush()
            return _user_from_row(row)

    def get_account(self, org_id: str, account_id: str) -> Account | None:
        with self._session() as s:
            row = (
                s.query(TrackedAccount)
                .filter(TrackedAccount.org_id == org_id)
                .filter(or_(TrackedAccount.id == account_id, TrackedAccount.external_id == account_id))
                .first()
            )
            return _account_from_row(row) if row else None

    # flows
    def list_flows(self, org_id: str, status: str | None = None) -> list[FlowDefinition]:
        with self._session() as s:
            q = s.query(FlowDefinitionRow).filter(FlowDefinitionRow.org_id == org_id)
            if status is not None:
                q = q.filter(FlowDefinitionRow.status == status)
            return [_flow_from_row(r) for r in q.order_by(FlowDefinitionRow.id).all()]

    def get_flow(self, org_id: str, flow_id: str) -> FlowDefinition | None:
        with self._session() as s:
            row = s.get(FlowDefinitionRow, flow_id)
            if row is None or row.org_id != org_id:
                return None
            return _flow_from_row(row)

    def upsert_flow(self, org_id: str, flow: FlowDefinition) -> FlowDefinition:
        data = flow_to_dict(flow)
        with self._session() as s:
            row = s.get(FlowDefinitionRow, flow.id) or FlowDefinitionRow(id=flow.id, org_id=org_id)
            row.org_id = org_id
            row.name = flow.name
            row.description = flow.description
            row.status = flow.status
            row.version = flow.version
            row.nodes = data["nodes"]
            row.edges = data["edges"]
            row.variables = data["variables"]
            row.settings = data["settings"]
            row.metrics = data["metrics"]
            s.add(row)
            s.flush()
            return _flow_from_row(row)

    # enrollments
    def list_user_enrollments(self, org_id: str, user_id: str) -> list[FlowEnrollment]:
        with self._session() as s:
            rows = (
                s.query(FlowEnrollmentRow)
                .filter(FlowEnrollmentRow.org_id == org_id, FlowEnrollmentRow.user_id == user_id)
                .order_by(FlowEnrollmentRow.enrolled_at)
                .all()
            )
            return [_enrollment_from_row(r) for r in rows]

    def upsert_enrollment(self, org_id: str, enrollment: FlowEnrollment) -> FlowEnrollment:
        with self._session() as s:
            row = s.get(FlowEnrollmentRow, enrollment.id) or FlowEnrollmentRow(id=enrollment.id)
            row.org_id = org_id
            for name in _ENROLLMENT_SCALARS:
                setattr(row, name, getattr(enrollment, name))
            row.status = enrollment.status.value
            row.variables = dump(enrollment.variables)
            row.history = [dump(h) for h in enrollment.history]
            s.add(row)
            s.flush()
            return _enrollment_from_row(row)

    def list_due_enrollments(self, now: datetime, limit: int = 500) -> list[FlowEnrollment]:
        with self._session() as s:
            rows = (
                s.query(FlowEnrollmentRow)
                .filter(FlowEnrollmentRow.status == EnrollmentStatus.ACTIVE.value)
                .filter(FlowEnrollmentRow.next_process_at.is_not(None))
                .filter(FlowEnrollmentRow.next_process_at <= ensure_utc(now))
                .order_by(FlowEnrollmentRow.next_process_at)
                .limit(limit)
                .all()
            )
            return [_enrollment_from_row(r) for r in rows]

    # expansion
    def list_opportunities(self, org_id: str, status: str | None = None) -> list[ExpansionOpportunity]:
        with self._session() as s:
            q = s.query(ExpansionOpportunityRow).filter(ExpansionOpportunityRow.org_id == org_id)
            if status is not None:
                q = q.filter(ExpansionOpportunityRow.status == status)
            return [_opportunity_from_row(r) for r in q.all()]

    def upsert_opportunity(self, org_id: str, opportunity: ExpansionOpportunity) -> ExpansionOpportunity:
        with self._session() as s:
            row = s.get(ExpansionOpportunityRow, opportunity.id) or ExpansionOpportunityRow(id=opportunity.id)
            row.org_id = org_id
            for name in (
                "account_id", "account_name", "signal_description", "current_plan", "suggested_plan",
                "current_mrr", "potential_mrr", "uplift_mrr", "confidence", "status", "identified_date",
            ):
                setattr(row, name, getattr(opportunity, name))
            row.signal = opportunity.signal.value
            s.add(row)
        return opportunity

    # segments
    def list_segments(self, org_id: str, status: str | None = "active") -> list[SegmentDefinition]:
        with self._session() as s:
            q = s.query(SegmentDefinitionRow).filter(SegmentDefinitionRow.org_id == org_id)
            if status is not None:
                q = q.filter(SegmentDefinitionRow.status == status)
            return [
                SegmentDefinition(
                    id=r.id,
                    name=r.name,
                    filters=[load(SegmentFilter, f) for f in r.filters or []],
                    filter_logic=r.filter_logic,
                    status=r.status,
                )
                for r in q.order_by(SegmentDefinitionRow.id).all()
            ]

    def list_segment_members(self, org_id: str, segment_id: str) -> set[str]:
        with self._session() as s:
            rows = (
                s.query(SegmentMembershipRow.user_id)
                .filter(SegmentMembershipRow.org_id == org_id, SegmentMembershipRow.segment_id == segment_id)
                .all()
            )
            return {r[0] for r in rows}

    def upsert_segment_membership(self, org_id: str, segment_id: str, user_id: str) -> bool:
        with self._session() as s:
            exists = (
                s.query(SegmentMembershipRow.id)
                .filter(SegmentMembershipRow.segment_id == segment_id, SegmentMembershipRow.user_id == user_id)
                .first()
            )
            if exists:
                return False
            s.add(SegmentMembershipRow(org_id=org_id, segment_id=segment_id, user_id=user_id))
            return True

    def remove_segment_membership(self, org_id: str, segment_id: str, user_id: str) -> bool:
        with self._session() as s:
            deleted = (
                s.query(SegmentMembershipRow)
                .filter(
                    SegmentMembershipRow.org_id == org_id,
                    SegmentMembershipRow.segment_id == segment_id,
                    SegmentMembershipRow.user_id == user_id,
                )
                .delete()
            )
            return deleted > 0

    # activity
    def add_activity(self, org_id: str, entry: ActivityEntry) -> None:
        with self._session() as s:
            row = ActivityLogRow(
                org_id=org_id,
                type=entry.type,
                title=entry.title,
                description=entry.description,
                user_id=entry.user_id,
                account_id=entry.account_id,
            )
            if entry.created_at is not None:
                row.created_at = entry.created_at
            s.add(row)

    def list_activity(self, org_id: str, limit: int = 100) -> list[ActivityEntry]:
        with self._session() as s:
            rows = (
                s.query(ActivityLogRow)
                .filter(ActivityLogRow.org_id == org_id)
                .order_by(ActivityLogRow.id)
                .limit(limit)
                .all()
            )
            return [
                ActivityEntry(
                    type=r.type,
                    title=r.title,
                    description=r.description,
                    user_id=r.user_id,
                    account_id=r.account_id,
                    created_at=ensure_utc(r.created_at),
                )
                for r in rows
            ]

    # webhooks
    def list_webhooks(self, org_id: str) -> list[WebhookSubscription]:
        with self._session() as s:
            rows = s.query(WebhookSubscriptionRow).filter(WebhookSubscriptionRow.org_id == org_id).all()
            return [_webhook_from_row(r) for r in rows]

    def get_webhook(self, webhook_id: str) -> WebhookSubscription | None:
        with self._session() as s:
            row = s.get(WebhookSubscriptionRow, webhook_id)
            return _webhook_from_row(row) if row else None

    def update_webhook_status(
        self,
        webhook_id: str,
        status: WebhookStatus | None = None,
        success_rate: float | None = None,
        last_triggered_at: datetime | None = None,
    ) -> None:
        with self._session() as s:
            row = s.get(WebhookSubscriptionRow, webhook_id)
            if row is None:
                logger.warning(f"Status update for unknown webhook {webhook_id}")
                return
            if status is not None:
                row.status = status.value
            if success_rate is not None:
                row.success_rate = success_rate
            if last_triggered_at is not None:
                row.last_triggered_at = last_triggered_at

    def record_webhook_delivery(self, record: WebhookDeliveryRecord) -> None:
        with self._session() as s:
            s.add(WebhookDeliveryRow(
                webhook_id=record.webhook_id,
                event_type=record.event_type,
                payload=dump(record.payload),
                success=record.success,
                attempt_count=record.attempt_count,
                response_status=record.response_status,
            ))

    # email
    def get_email_template(self, org_id: str, template_id: str) -> EmailTemplate | None:
        with self._session() as s:
            row = s.get(EmailTemplateRow, template_id)
            if row is None or row.org_id != org_id:
                return None
            return EmailTemplate(
                id=row.id,
                name=row.name,
                subject=row.subject,
                body_html=row.body_html,
                body_text=row.body_text,
            )
