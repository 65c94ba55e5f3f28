"""Executes the side-effect actions flow ticks produce.

Each action is handled independently: a failure is logged and counted and
the remaining actions still run. ``dispatch`` returns how many actions
completed.
"""
from __future__ import annotations
import logging
from typing import Any, Callable

import requests
from prometheus_client import Counter

from lifecycle_engine.config import Settings, get_settings
from lifecycle_engine.engine.templating import resolve_template
from lifecycle_engine.errors import LifecycleEngineError, StoreError
from lifecycle_engine.infrastructure.clock import Clock, SystemClock
from lifecycle_engine.models.domain import ActivityEntry, LifecycleState, UserSnapshot
from lifecycle_engine.models.flows import (
    AddTagAction,
    ApiCallAction,
    AssignSegmentAction,
    CreateTaskAction,
    FlowAction,
    RemoveTagAction,
    SendEmailAction,
    SendNotificationAction,
    SendWebhookAction,
    SetVariableAction,
    UpdateUserAction,
)
from lifecycle_engine.store.base import LifecycleStore
from lifecycle_engine.utils.emailing import EmailPayload, EmailSender, build_email_sender

logger = logging.getLogger(__name__)

FLOW_ACTIONS = Counter('flow_actions_total', 'Flow side-effect actions executed', ['kind', 'result'])


class ActionFailed(LifecycleEngineError):
    pass


class FlowActionDispatcher:
    def __init__(
        self,
        store: LifecycleStore,
        email_sender: EmailSender | None = None,
        session: requests.Session | None = None,
        clock: Clock | None = None,
        settings: Settings | None = None,
    ):
        s = settings or get_settings()
        self.store = store
        self.email_sender = email_sender or build_email_sender(s)
        self.session = session or requests.Session()
        self.clock = clock or SystemClock()
        self.timeout = s.flow_action_timeout_seconds
        self._handlers: dict[str, Callable[[Any, UserSnapshot, str], None]] = {
            SendEmailAction.kind: self._send_email,
            SendWebhookAction.kind: self._send_webhook,
            ApiCallAction.kind: self._api_call,
            UpdateUserAction.kind: self._update_user,
            AddTagAction.kind: self._add_tag,
            RemoveTagAction.kind: self._remove_tag,
            AssignSegmentAction.kind: self._assign_segment,
            CreateTaskAction.kind: self._create_task,
            SendNotificationAction.kind: self._send_notification,
            SetVariableAction.kind: lambda action, user, org_id: None,  # applied during the tick
        }

    def dispatch(self, actions: list[FlowAction], user: UserSnapshot, org_id: str) -> int:
        dispatched = 0
        for action in actions:
            handler = self._handlers.get(action.kind)
            if handler is None:
                logger.warning(f"No handler for flow action {action.kind!r}")
                FLOW_ACTIONS.labels(kind=action.kind or 'unknown', result='unsupported').inc()
                continue
            try:
                handler(action, user, org_id)
            except (requests.RequestException, LifecycleEngineError, ValueError, TypeError) as e:
                logger.error(f"Failed to dispatch action {action.kind} for user {user.id}: {e}")
                FLOW_ACTIONS.labels(kind=action.kind, result='error').inc()
                continue
            FLOW_ACTIONS.labels(kind=action.kind, result='ok').inc()
            dispatched += 1
        return dispatched

    def _activity(self, org_id: str, title: str, description: str, user_id: str | None = None) -> None:
        self.store.add_activity(org_id, ActivityEntry(
            type="system",
            title=title,
            description=description,
            user_id=user_id,
            created_at=self.clock.now(),
        ))

    # messaging
    def _send_email(self, action: SendEmailAction, user: UserSnapshot, org_id: str) -> None:
        subject, html = action.subject, action.body
        if action.template_id:
            try:
                template = self.store.get_email_template(org_id, action.template_id)
            except StoreError as e:
                logger.warning(f"Email template {action.template_id} unavailable, using inline content: {e}")
                template = None
            if template is not None:
                record = user.to_record()
                subject = subject or resolve_template(template.subject, {}, record)
                html = resolve_template(template.body_html, {}, record)
        result = self.email_sender.send(EmailPayload(
            to=action.to or user.email,
            subject=subject,
            html=html,
            from_name=action.from_name,
            reply_to=action.reply_to,
        ))
        if not result.success:
            raise ActionFailed(f"{result.provider} send failed: {result.error}")

    def _http(self, method: str, url: str, headers: dict[str, str], body: str) -> requests.Response:
        if not url:
            raise ActionFailed("Missing URL")
        resp = self.session.request(
            (method or "POST").upper(),
            url,
            headers={"Content-Type": "application/json", **(headers or {})},
            data=body.encode("utf-8") if body else None,
            timeout=self.timeout,
        )
        resp.raise_for_status()
        return resp

    def _send_webhook(self, action: SendWebhookAction, user: UserSnapshot, org_id: str) -> None:
        self._http(action.method, action.url, action.headers, action.payload)

    def _api_call(self, action: ApiCallAction, user: UserSnapshot, org_id: str) -> None:
        resp = self._http(action.method, action.url, action.headers, action.body)
        logger.debug(f"API call {action.method} {action.url} -> {resp.status_code}")

    # user mutations
    def _update_user(self, action: UpdateUserAction, user: UserSnapshot, org_id: str) -> None:
        props = action.properties or {}
        changes: dict[str, Any] = {}
        if props.get("lifecycleState"):
            changes["lifecycle_state"] = LifecycleState(props["lifecycleState"])
        if props.get("churnRiskScore") is not None:
            changes["churn_risk_score"] = int(props["churnRiskScore"])
        if props.get("expansionScore") is not None:
            changes["expansion_score"] = int(props["expansionScore"])
        if props.get("plan"):
            changes["plan"] = str(props["plan"])
        if props.get("tags"):
            changes["tags"] = [str(t) for t in props["tags"]]
        if changes:
            self.store.update_user(org_id, action.user_id or user.id, changes)

    def _retag(self, org_id: str, user_id: str, tag: str, add: bool) -> None:
        current = self.store.get_user(org_id, user_id)
        if current is None:
            raise ActionFailed(f"User {user_id} not found")
        if add:
            tags = current.tags if tag in current.tags else [*current.tags, tag]
        else:
            tags = [t for t in current.tags if t != tag]
        if tags != current.tags:
            self.store.update_user(org_id, current.id, {"tags": tags})

    def _add_tag(self, action: AddTagAction, user: UserSnapshot, org_id: str) -> None:
        user_id = action.user_id or user.id
        self._retag(org_id, user_id, action.tag, add=True)
        self._activity(org_id, f"Tag added: {action.tag}", f'Tag "{action.tag}" added to user {user_id}', user_id)

    def _remove_tag(self, action: RemoveTagAction, user: UserSnapshot, org_id: str) -> None:
        user_id = action.user_id or user.id
        self._retag(org_id, user_id, action.tag, add=False)
        self._activity(org_id, f"Tag removed: {action.tag}", f'Tag "{action.tag}" removed from user {user_id}', user_id)

    def _assign_segment(self, action: AssignSegmentAction, user: UserSnapshot, org_id: str) -> None:
        if not action.segment_id:
            raise ActionFailed("Missing segment id")
        self.store.upsert_segment_membership(org_id, action.segment_id, action.user_id or user.id)

    # internal notifications
    def _create_task(self, action: CreateTaskAction, user: UserSnapshot, org_id: str) -> None:
        self._activity(
            org_id,
            f"Task: {action.title}",
            f"Assigned to {action.assignee or 'unassigned'} ({action.priority or 'normal'})",
            user.id,
        )

    def _send_notification(self, action: SendNotificationAction, user: UserSnapshot, org_id: str) -> None:
        self._activity(org_id, action.title, action.body, action.user_id or user.id)
