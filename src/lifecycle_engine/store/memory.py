"""Process-local store used by tests, local runs and single-node deployments."""
from __future__ import annotations
import copy
import logging
import threading
from dataclasses import replace
from datetime import datetime
from typing import Any

from lifecycle_engine.infrastructure.clock import ensure_utc
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
from lifecycle_engine.models.flows import EnrollmentStatus, FlowDefinition, FlowEnrollment
from lifecycle_engine.store.base import LifecycleStore, filter_user_changes

logger = logging.getLogger(__name__)


class InMemoryStore(LifecycleStore):
    def __init__(self):
        self._lock = threading.RLock()
        self._users: dict[str, dict[str, UserSnapshot]] = {}
        self._external_ids: dict[tuple[str, str], str] = {}
        self._accounts: dict[str, dict[str, Account]] = {}
        self._flows: dict[str, dict[str, FlowDefinition]] = {}
        self._enrollments: dict[str, FlowEnrollment] = {}
        self._enrollment_orgs: dict[str, str] = {}
        self._opportunities: dict[str, dict[str, ExpansionOpportunity]] = {}
        self._segments: dict[str, dict[str, SegmentDefinition]] = {}
        self._members: dict[tuple[str, str], set[str]] = {}
        self._webhooks: dict[str, WebhookSubscription] = {}
        self._templates: dict[str, dict[str, EmailTemplate]] = {}
        self.activities: dict[str, list[ActivityEntry]] = {}
        self.deliveries: list[WebhookDeliveryRecord] = []

    # seeding
    def add_user(self, org_id: str, user: UserSnapshot, external_id: str | None = None) -> UserSnapshot:
        with self._lock:
            self._users.setdefault(org_id, {})[user.id] = copy.deepcopy(user)
            if external_id:
                self._external_ids[(org_id, external_id)] = user.id
        return user

    def add_account(self, org_id: str, account: Account) -> Account:
        with self._lock:
            self._accounts.setdefault(org_id, {})[account.id] = copy.deepcopy(account)
        return account

    def add_segment(self, org_id: str, segment: SegmentDefinition, members: set[str] | None = None) -> SegmentDefinition:
        with self._lock:
            self._segments.setdefault(org_id, {})[segment.id] = copy.deepcopy(segment)
            if members:
                self._members.setdefault((org_id, segment.id), set()).update(members)
        return segment

    def add_webhook(self, org_id: str, webhook: WebhookSubscription) -> WebhookSubscription:
        with self._lock:
            self._webhooks[webhook.id] = replace(copy.deepcopy(webhook), org_id=org_id)
        return webhook

    def add_email_template(self, org_id: str, template: EmailTemplate) -> EmailTemplate:
        with self._lock:
            self._templates.setdefault(org_id, {})[template.id] = copy.deepcopy(template)
        return template

    def activity_for(self, org_id: str) -> list[ActivityEntry]:
        with self._lock:
            return copy.deepcopy(self.activities.get(org_id, []))

    # users / accounts
    def _resolve_user_id(self, org_id: str, user_id: str) -> str | None:
        users = self._users.get(org_id, {})
        if user_id in users:
            return user_id
        return self._external_ids.get((org_id, user_id))

    def get_user(self, org_id: str, user_id: str) -> UserSnapshot | None:
        with self._lock:
            resolved = self._resolve_user_id(org_id, user_id)
            if resolved is None:
                return None
            return copy.deepcopy(self._users[org_id][resolved])

    def update_user(self, org_id: str, user_id: str, changes: dict[str, Any]) -> UserSnapshot | None:
        with self._lock:
            resolved = self._resolve_user_id(org_id, user_id)
            if resolved is None:
                return None
            current = self._users[org_id][resolved]
            updated = replace(current, **copy.deepcopy(filter_user_changes(changes)))
            self._users[org_id][resolved] = updated
            return copy.deepcopy(updated)

    def get_account(self, org_id: str, account_id: str) -> Account | None:
        with self._lock:
            account = self._accounts.get(org_id, {}).get(account_id)
            return copy.deepcopy(account)

    # flows
    def list_flows(self, org_id: str, status: str | None = None) -> list[FlowDefinition]:
        with self._lock:
            flows = self._flows.get(org_id, {}).values()
            return [copy.deepcopy(f) for f in flows if status is None or f.status == status]

    def get_flow(self, org_id: str, flow_id: str) -> FlowDefinition | None:
        with self._lock:
            return copy.deepcopy(self._flows.get(org_id, {}).get(flow_id))

    def upsert_flow(self, org_id: str, flow: FlowDefinition) -> FlowDefinition:
        stored = replace(copy.deepcopy(flow), org_id=org_id)
        with self._lock:
            self._flows.setdefault(org_id, {})[flow.id] = stored
        return copy.deepcopy(stored)

    # enrollments
    def list_user_enrollments(self, org_id: str, user_id: str) -> list[FlowEnrollment]:
        with self._lock:
            return [
                copy.deepcopy(e) for eid, e in self._enrollments.items()
                if self._enrollment_orgs.get(eid) == org_id and e.user_id == user_id
            ]

    def upsert_enrollment(self, org_id: str, enrollment: FlowEnrollment) -> FlowEnrollment:
        stored = replace(copy.deepcopy(enrollment), org_id=org_id)
        with self._lock:
            self._enrollments[stored.id] = stored
            self._enrollment_orgs[stored.id] = org_id
        return copy.deepcopy(stored)

    def list_due_enrollments(self, now: datetime, limit: int = 500) -> list[FlowEnrollment]:
        now = ensure_utc(now)
        with self._lock:
            due = [
                e for e in self._enrollments.values()
                if e.status is EnrollmentStatus.ACTIVE
                and e.next_process_at is not None
                and ensure_utc(e.next_process_at) <= now
            ]
            due.sort(key=lambda e: ensure_utc(e.next_process_at))
            return [copy.deepcopy(e) for e in due[:limit]]

    # expansion
    def list_opportunities(self, org_id: str, status: str | None = None) -> list[ExpansionOpportunity]:
        with self._lock:
            opps = self._opportunities.get(org_id, {}).values()
            return [copy.deepcopy(o) for o in opps if status is None or o.status == status]

    def upsert_opportunity(self, org_id: str, opportunity: ExpansionOpportunity) -> ExpansionOpportunity:
        with self._lock:
            self._opportunities.setdefault(org_id, {})[opportunity.id] = copy.deepcopy(opportunity)
        return opportunity

    # segments
    def list_segments(self, org_id: str, status: str | None = "active") -> list[SegmentDefinition]:
        with self._lock:
            segments = self._segments.get(org_id, {}).values()
            return [copy.deepcopy(s) for s in segments if status is None or s.status == status]

    def list_segment_members(self, org_id: str, segment_id: str) -> set[str]:
        with self._lock:
            return set(self._members.get((org_id, segment_id), set()))

    def upsert_segment_membership(self, org_id: str, segment_id: str, user_id: str) -> bool:
        with self._lock:
            members = self._members.setdefault((org_id, segment_id), set())
            if user_id in members:
                return False
            members.add(user_id)
            return True

    def remove_segment_membership(self, org_id: str, segment_id: str, user_id: str) -> bool:
        with self._lock:
            members = self._members.get((org_id, segment_id))
            if not members or user_id not in members:
                return False
            members.discard(user_id)
            return True

    # activity
    def add_activity(self, org_id: str, entry: ActivityEntry) -> None:
        with self._lock:
            self.activities.setdefault(org_id, []).append(copy.deepcopy(entry))

    # webhooks
    def list_webhooks(self, org_id: str) -> list[WebhookSubscription]:
        with self._lock:
            return [copy.deepcopy(w) for w in self._webhooks.values() if w.org_id == org_id]

    def get_webhook(self, webhook_id: str) -> WebhookSubscription | None:
        with self._lock:
            return copy.deepcopy(self._webhooks.get(webhook_id))

    def update_webhook_status(
        self,
        webhook_id: str,
        status: WebhookStatus | None = None,
        success_rate: float | None = None,
        last_triggered_at: datetime | None = None,
    ) -> None:
        with self._lock:
            webhook = self._webhooks.get(webhook_id)
            if webhook is None:
                logger.warning(f"Status update for unknown webhook {webhook_id}")
                return
            if status is not None:
                webhook.status = status
            if success_rate is not None:
                webhook.success_rate = success_rate
            if last_triggered_at is not None:
                webhook.last_triggered_at = last_triggered_at

    def record_webhook_delivery(self, record: WebhookDeliveryRecord) -> None:
        with self._lock:
            self.deliveries.append(copy.deepcopy(record))

    # email
    def get_email_template(self, org_id: str, template_id: str) -> EmailTemplate | None:
        with self._lock:
            return copy.deepcopy(self._templates.get(org_id, {}).get(template_id))
