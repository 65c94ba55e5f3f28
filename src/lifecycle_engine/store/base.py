"""Persistence contract used by the pipeline, scheduler and webhook dispatcher.

Every read and write is scoped by organization id except the two global
lookups the scheduler and DLQ replay need (``list_due_enrollments`` and
``get_webhook``). Implementations return fresh copies: callers may mutate
what they get back without affecting stored state until they write it.
"""
from __future__ import annotations
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from lifecycle_engine.models.domain import (
    Account,
    ActivityEntry,
    EmailTemplate,
    ExpansionOpportunity,
    SegmentDefinition,
    UserSnapshot,
    WebhookDeliveryRecord,
    WebhookStatus,
    WebhookSubscription,
)
from lifecycle_engine.models.flows import FlowDefinition, FlowEnrollment

# user fields flows and the pipeline may write through ``update_user``
USER_UPDATE_FIELDS = frozenset({
    "lifecycle_state",
    "previous_state",
    "state_changed_at",
    "churn_risk_score",
    "expansion_score",
    "plan",
    "tags",
    "properties",
})


class LifecycleStore(ABC):
    # users / accounts
    @abstractmethod
    def get_user(self, org_id: str, user_id: str) -> UserSnapshot | None:
        """Load by internal id or external (SDK) id."""

    @abstractmethod
    def update_user(self, org_id: str, user_id: str, changes: dict[str, Any]) -> UserSnapshot | None:
        """Partial update limited to ``USER_UPDATE_FIELDS``; returns the updated user."""

    @abstractmethod
    def get_account(self, org_id: str, account_id: str) -> Account | None:
        ...

    # flows
    @abstractmethod
    def list_flows(self, org_id: str, status: str | None = None) -> list[FlowDefinition]:
        ...

    @abstractmethod
    def get_flow(self, org_id: str, flow_id: str) -> FlowDefinition | None:
        ...

    @abstractmethod
    def upsert_flow(self, org_id: str, flow: FlowDefinition) -> FlowDefinition:
        ...

    # enrollments
    @abstractmethod
    def list_user_enrollments(self, org_id: str, user_id: str) -> list[FlowEnrollment]:
        ...

    @abstractmethod
    def upsert_enrollment(self, org_id: str, enrollment: FlowEnrollment) -> FlowEnrollment:
        ...

    @abstractmethod
    def list_due_enrollments(self, now: datetime, limit: int = 500) -> list[FlowEnrollment]:
        """Active enrollments whose ``next_process_at`` has passed, across all tenants."""

    # expansion
    @abstractmethod
    def list_opportunities(self, org_id: str, status: str | None = None) -> list[ExpansionOpportunity]:
        ...

    @abstractmethod
    def upsert_opportunity(self, org_id: str, opportunity: ExpansionOpportunity) -> ExpansionOpportunity:
        ...

    # segments
    @abstractmethod
    def list_segments(self, org_id: str, status: str | None = "active") -> list[SegmentDefinition]:
        ...

    @abstractmethod
    def list_segment_members(self, org_id: str, segment_id: str) -> set[str]:
        ...

    @abstractmethod
    def upsert_segment_membership(self, org_id: str, segment_id: str, user_id: str) -> bool:
        """Add membership; True when the user was not already a member."""

    @abstractmethod
    def remove_segment_membership(self, org_id: str, segment_id: str, user_id: str) -> bool:
        """Drop membership; True when the user was a member."""

    # activity
    @abstractmethod
    def add_activity(self, org_id: str, entry: ActivityEntry) -> None:
        ...

    # webhooks
    @abstractmethod
    def list_webhooks(self, org_id: str) -> list[WebhookSubscription]:
        ...

    @abstractmethod
    def get_webhook(self, webhook_id: str) -> WebhookSubscription | None:
        ...

    @abstractmethod
    def update_webhook_status(
        self,
        webhook_id: str,
        status: WebhookStatus | None = None,
        success_rate: float | None = None,
        last_triggered_at: datetime | None = None,
    ) -> None:
        ...

    @abstractmethod
    def record_webhook_delivery(self, record: WebhookDeliveryRecord) -> None:
        ...

    # email
    @abstractmethod
    def get_email_template(self, org_id: str, template_id: str) -> EmailTemplate | None:
        ...


def filter_user_changes(changes: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in changes.items() if k in USER_UPDATE_FIELDS}
