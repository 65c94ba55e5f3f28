"""Email campaign preparation: recipient filtering, personalization, metrics."""
from __future__ import annotations
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Mapping

from lifecycle_engine.engine.personalization import (
    PersonalizableTemplate,
    VariableMapping,
    personalize_email,
)
from lifecycle_engine.engine.segmentation import evaluate_segment_filters
from lifecycle_engine.models.domain import SegmentFilter

logger = logging.getLogger(__name__)


@dataclass
class CampaignRecipient:
    user_id: str
    email: str
    user: dict[str, Any]
    account: dict[str, Any] | None = None


@dataclass
class PreparedEmail:
    user_id: str
    email: str
    subject: str
    body_html: str
    body_text: str
    resolved_variables: dict[str, str] = field(default_factory=dict)


@dataclass
class CampaignExecutionResult:
    campaign_id: str
    total_recipients: int
    prepared: list[PreparedEmail] = field(default_factory=list)
    skipped: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)


@dataclass
class CampaignMetrics:
    total_sent: int
    total_delivered: int
    total_opened: int
    total_clicked: int
    total_bounced: int
    total_unsubscribed: int
    delivery_rate: float
    open_rate: float
    click_rate: float
    bounce_rate: float
    unsubscribe_rate: float


def _pct(part: int, whole: int) -> float:
    return part / whole * 100 if whole > 0 else 0.0


def compute_campaign_metrics(stats: Mapping[str, int]) -> CampaignMetrics:
    """Funnel metrics from per-status send counts.

    A send is counted in every earlier stage it passed through: a click is
    also an open, a delivery and a send.
    """
    clicked = stats.get("clicked", 0)
    opened = stats.get("opened", 0) + clicked
    delivered = stats.get("delivered", 0) + opened
    sent = stats.get("sent", 0) + delivered
    bounced = stats.get("bounced", 0)
    unsubscribed = stats.get("unsubscribed", 0)
    return CampaignMetrics(
        total_sent=sent,
        total_delivered=delivered,
        total_opened=opened,
        total_clicked=clicked,
        total_bounced=bounced,
        total_unsubscribed=unsubscribed,
        delivery_rate=_pct(delivered, sent),
        open_rate=_pct(opened, delivered),
        click_rate=_pct(clicked, opened),
        bounce_rate=_pct(bounced, sent),
        unsubscribe_rate=_pct(unsubscribed, delivered),
    )


def filter_recipients(
    recipients: list[CampaignRecipient],
    filters: list[SegmentFilter | Mapping[str, Any]],
    filter_logic: Any,
) -> list[CampaignRecipient]:
    if not filters:
        return list(recipients)
    return [r for r in recipients if evaluate_segment_filters(filters, filter_logic, r.user, r.account)]


def prepare_campaign_emails(
    campaign_id: str,
    template: PersonalizableTemplate,
    mappings: list[VariableMapping],
    recipients: list[CampaignRecipient],
    subject_override: str | None = None,
    custom_vars: Mapping[str, str] | None = None,
    now: datetime | None = None,
    app_name: str | None = None,
) -> CampaignExecutionResult:
    result = CampaignExecutionResult(campaign_id=campaign_id, total_recipients=len(recipients))
    effective = replace(template, subject=subject_override) if subject_override is not None else template
    for recipient in recipients:
        if not recipient.email:
            result.skipped += 1
            continue
        try:
            email = personalize_email(effective, mappings, recipient.user, recipient.account, custom_vars, now, app_name)
        except Exception as e:
            logger.warning(f"Campaign {campaign_id}: personalization failed for {recipient.user_id}: {e}")
            result.errors.append({"user_id": recipient.user_id, "error": str(e)})
            continue
        result.prepared.append(PreparedEmail(
            user_id=recipient.user_id,
            email=recipient.email,
            subject=email.subject,
            body_html=email.body_html,
            body_text=email.body_text,
            resolved_variables=email.resolved_variables,
        ))
    logger.info(
        f"Campaign {campaign_id}: prepared {len(result.prepared)} of {result.total_recipients} "
        f"({result.skipped} skipped, {len(result.errors)} errors)"
    )
    return result
