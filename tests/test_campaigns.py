"""Tests for campaign recipient filtering, preparation and funnel metrics."""
from unittest import mock

import pytest

from lifecycle_engine.engine.campaigns import (
    CampaignRecipient,
    compute_campaign_metrics,
    filter_recipients,
    prepare_campaign_emails,
)
from lifecycle_engine.engine.personalization import PersonalizableTemplate, VariableMapping

from conftest import make_user


def recipient(**overrides) -> CampaignRecipient:
    user = make_user(**overrides)
    return CampaignRecipient(user_id=user.id, email=user.email, user=user.to_record())


@pytest.fixture
def template():
    return PersonalizableTemplate(subject="Hello {{user.name}}", body_html="<p>{{first}}, you are on {{user.plan}}</p>")


class TestMetrics:
    def test_funnel_counts_roll_up(self):
        metrics = compute_campaign_metrics({
            "sent": 2, "delivered": 3, "opened": 3, "clicked": 2, "bounced": 1, "unsubscribed": 1,
        })
        assert (metrics.total_sent, metrics.total_delivered, metrics.total_opened, metrics.total_clicked) == (10, 8, 5, 2)
        assert metrics.delivery_rate == 80
        assert metrics.open_rate == 62.5
        assert metrics.click_rate == 40
        assert metrics.bounce_rate == 10
        assert metrics.unsubscribe_rate == 12.5

    def test_empty_campaign(self):
        metrics = compute_campaign_metrics({})
        assert metrics.total_sent == 0
        assert metrics.open_rate == 0.0


class TestRecipients:
    def test_filters_by_rules(self):
        people = [recipient(id="u_1"), recipient(id="u_2", plan="Starter")]
        chosen = filter_recipients(people, [{"field": "plan", "operator": "equals", "value": "Growth"}], "AND")
        assert [r.user_id for r in chosen] == ["u_1"]

    def test_no_filters_keeps_everyone(self):
        people = [recipient(id="u_1"), recipient(id="u_2")]
        assert filter_recipients(people, [], "AND") == people


class TestPreparation:
    def test_personalizes_each_recipient(self, template):
        mappings = [VariableMapping("first", "user", "name")]
        result = prepare_campaign_emails(
            "cmp_1", template, mappings,
            [recipient(id="u_1"), recipient(id="u_2", name="Grace Hopper", email="grace@example.com", plan="Business")],
        )
        assert result.total_recipients == 2
        assert [e.subject for e in result.prepared] == ["Hello Ada Lovelace", "Hello Grace Hopper"]
        assert result.prepared[1].body_html == "<p>Grace Hopper, you are on Business</p>"
        assert result.prepared[1].email == "grace@example.com"

    def test_missing_address_is_skipped(self, template):
        result = prepare_campaign_emails("cmp_1", template, [], [recipient(email="")])
        assert result.skipped == 1
        assert result.prepared == []

    def test_subject_override(self, template):
        result = prepare_campaign_emails("cmp_1", template, [], [recipient()], subject_override="Last call, {{user.name}}")
        assert result.prepared[0].subject == "Last call, Ada Lovelace"

    def test_personalization_failure_is_recorded(self, template):
        with mock.patch("lifecycle_engine.engine.campaigns.personalize_email", side_effect=ValueError("bad template")):
            result = prepare_campaign_emails("cmp_1", template, [], [recipient()])
        assert result.prepared == []
        assert result.errors == [{"user_id": "u_1", "error": "bad template"}]
