"""Celery entry points for the event pipeline, the enrollment scheduler and DLQ replay.

Each worker process builds one runtime (SQL store, webhook dispatcher,
pipeline) on first use. The webhook DLQ lives in that runtime, so a replay
only sees entries recorded by the same worker process.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from functools import lru_cache

from celery import shared_task
from prometheus_client import Counter

from lifecycle_engine.config import get_settings
from lifecycle_engine.errors import LifecycleEngineError
from lifecycle_engine.infrastructure.clock import SystemClock
from lifecycle_engine.pipeline.actions import FlowActionDispatcher
from lifecycle_engine.pipeline.runner import EventPipeline
from lifecycle_engine.store.sql import SqlStore
from lifecycle_engine.validation.events import validate_event
from lifecycle_engine.webhooks.dispatcher import WebhookDispatcher, WebhookPolicy

logger = logging.getLogger(__name__)

VALIDATION_FAILURES = Counter('event_validation_failures_total', 'Inbound events rejected by validation', ['reason'])


@dataclass
class Runtime:
    store: SqlStore
    webhooks: WebhookDispatcher
    pipeline: EventPipeline


@lru_cache
def get_runtime() -> Runtime:
    settings = get_settings()
    clock = SystemClock()
    store = SqlStore()
    webhooks = WebhookDispatcher(store, WebhookPolicy.from_settings(settings), clock=clock)
    pipeline = EventPipeline(
        store,
        action_dispatcher=FlowActionDispatcher(store, clock=clock, settings=settings),
        webhook_dispatcher=webhooks,
        clock=clock,
        settings=settings,
    )
    return Runtime(store=store, webhooks=webhooks, pipeline=pipeline)


@shared_task
def process_events_task(org_id: str, events: list[dict]):
    """Validate then run a batch of raw events through the pipeline, in order."""
    runtime = get_runtime()
    valid = []
    rejected = []
    for raw in events:
        event, reason = validate_event(raw)
        if event is None:
            VALIDATION_FAILURES.labels(reason=reason.split(":", 1)[0]).inc()
            rejected.append({"id": raw.get("id"), "reason": reason})
            continue
        valid.append(event)
    if rejected:
        logger.warning(f"Rejected {len(rejected)} of {len(events)} event(s) for org {org_id}")
    results = []
    for event in valid:
        try:
            result = runtime.pipeline.process_event(event, org_id)
        except LifecycleEngineError as e:
            logger.error(f"Event batch for org {org_id} failed at event {event.id} after {len(results)} processed: {e}")
            return {"status": "error", "error": str(e), "processed": len(results), "rejected": rejected}
        # each event's notifications go out before the next event runs
        runtime.pipeline.deliver_notifications(result.notifications)
        results.append(result)
    return {
        "status": "ok",
        "processed": len(results),
        "rejected": rejected,
        "stage_errors": sum(len(r.errors) for r in results),
    }


@shared_task
def process_scheduled_enrollments_task(limit: int | None = None):
    runtime = get_runtime()
    try:
        result = runtime.pipeline.process_scheduled_enrollments(limit)
    except LifecycleEngineError as e:
        logger.error(f"Scheduled enrollment sweep failed: {e}")
        return {"status": "error", "error": str(e)}
    runtime.pipeline.deliver_notifications(result.notifications)
    return {
        "status": "ok",
        "processed": result.processed,
        "completed": result.completed,
        "errors": result.errors,
        "actions_dispatched": result.actions_dispatched,
    }


@shared_task
def replay_dead_letter_task(entry_id: str):
    runtime = get_runtime()
    result = runtime.webhooks.replay_dlq_entry(entry_id)
    if result is None:
        return {"status": "skipped", "reason": "not_found"}
    if not result.delivered:
        return {"status": "error", "error": result.error or "delivery failed"}
    return {"status": "ok", "attempts": result.attempts}
