"""Tests for the Celery task bodies, run eagerly against an in-memory runtime."""
from unittest import mock

import pytest
import requests

from lifecycle_engine.errors import StoreError
from lifecycle_engine.pipeline.actions import FlowActionDispatcher
from lifecycle_engine.pipeline.runner import EventPipeline
from lifecycle_engine.tasks import pipeline as tasks
from lifecycle_engine.utils.emailing import LogEmailSender
from lifecycle_engine.webhooks.dispatcher import WebhookDispatcher, WebhookPolicy

from conftest import ORG, make_account, make_user

EVENT = {"id": "evt_1", "event": "login", "userId": "u_1", "timestamp": "2025-03-10T12:00:00Z"}


@pytest.fixture
def runtime(store, clock, settings):
    store.add_user(ORG, make_user())
    store.add_account(ORG, make_account())
    session = mock.Mock(spec=requests.Session)
    webhooks = WebhookDispatcher(store, WebhookPolicy(max_workers=1), clock=clock, session=session)
    pipeline = EventPipeline(
        store,
        action_dispatcher=FlowActionDispatcher(store, email_sender=LogEmailSender(), clock=clock, settings=settings),
        webhook_dispatcher=webhooks,
        clock=clock,
        settings=settings,
    )
    rt = tasks.Runtime(store=store, webhooks=webhooks, pipeline=pipeline)
    with mock.patch.object(tasks, "get_runtime", return_value=rt):
        yield rt
    webhooks.shutdown()


class TestProcessEvents:
    def test_valid_events_run_and_invalid_are_rejected(self, runtime):
        out = tasks.process_events_task(ORG, [
            EVENT,
            {"id": "evt_2", "userId": "u_1", "timestamp": "2025-03-10T12:00:00Z"},
        ])
        assert out["status"] == "ok"
        assert out["processed"] == 1
        assert out["stage_errors"] == 0
        assert out["rejected"][0]["id"] == "evt_2"
        assert out["rejected"][0]["reason"].startswith("validation_error:event")
        assert runtime.store.get_user(ORG, "u_1").churn_risk_score == 6

    def test_store_failure_is_reported(self, runtime):
        with mock.patch.object(runtime.pipeline, "process_event", side_effect=StoreError("db down")):
            out = tasks.process_events_task(ORG, [EVENT])
        assert out == {"status": "error", "error": "db down", "processed": 0, "rejected": []}

    def test_failure_still_delivers_earlier_notifications(self, runtime):
        real = runtime.pipeline.process_event

        def fail_second(event, org_id):
            if event.id == "evt_2":
                raise StoreError("db down")
            return real(event, org_id)

        with mock.patch.object(runtime.pipeline, "process_event", side_effect=fail_second), \
                mock.patch.object(runtime.pipeline, "deliver_notifications") as deliver:
            out = tasks.process_events_task(ORG, [EVENT, dict(EVENT, id="evt_2")])

        assert out["status"] == "error"
        assert out["processed"] == 1
        deliver.assert_called_once()
        [notifications] = deliver.call_args[0]
        assert [n.event_type for n in notifications] == ["event.tracked"]


class TestScheduler:
    def test_empty_sweep(self, runtime):
        out = tasks.process_scheduled_enrollments_task()
        assert out == {"status": "ok", "processed": 0, "completed": 0, "errors": 0, "actions_dispatched": 0}


class TestReplay:
    def test_unknown_entry_is_skipped(self, runtime):
        assert tasks.replay_dead_letter_task("dlq_missing") == {"status": "skipped", "reason": "not_found"}
