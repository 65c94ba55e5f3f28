"""Outbound webhook delivery.

``WebhookDispatcher`` fans one notification out to every active
subscription of an organization whose event list matches. Each delivery:

1. is skipped when the subscription's circuit is open
2. is rejected when the serialized payload exceeds the size limit
3. is POSTed with an HMAC signature and an idempotency key equal to the
   delivery id, up to ``max_retries`` times with exponential backoff and
   jitter between attempts; 4xx responses other than 429 are not retried

Failed deliveries land in a bounded dead-letter queue for replay. Every
attempt is appended to a bounded in-memory delivery log.

The dispatcher owns its thread pool and HTTP session; call ``shutdown()``
(or use it as a context manager) when done.
"""
from __future__ import annotations
import json
import logging
import random
import threading
import time
import uuid
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import requests
from prometheus_client import Counter, Gauge, Histogram

from lifecycle_engine.config import Settings, get_settings
from lifecycle_engine.errors import PayloadTooLargeError, WebhookDeliveryError
from lifecycle_engine.infrastructure.clock import Clock, SystemClock
from lifecycle_engine.models.domain import WebhookDeliveryRecord, WebhookStatus, WebhookSubscription
from lifecycle_engine.store.base import LifecycleStore
from lifecycle_engine.utils.values import round_half_up
from lifecycle_engine.webhooks.circuit import CircuitRegistry, CircuitState
from lifecycle_engine.webhooks.signing import (
    DELIVERY_HEADER,
    EVENT_HEADER,
    IDEMPOTENCY_HEADER,
    SIGNATURE_HEADER,
    compute_signature,
)

logger = logging.getLogger(__name__)

WEBHOOK_ATTEMPTS = Counter('webhook_delivery_attempts_total', 'Webhook HTTP attempts', ['result'])
WEBHOOK_DELIVERIES = Counter('webhook_deliveries_total', 'Webhook deliveries by outcome', ['outcome'])
WEBHOOK_ATTEMPT_LATENCY = Histogram('webhook_attempt_seconds', 'Webhook attempt latency')
WEBHOOK_DLQ_SIZE = Gauge('webhook_dlq_size', 'Entries in the webhook dead-letter queue')

# subscription event name -> notification types it also receives
LEGACY_EVENT_MAP: dict[str, list[str]] = {
    "lifecycle_change": ["user.lifecycle_changed"],
    "risk_alert": ["user.risk_score_changed"],
    "expansion_signal": ["account.expansion_signal"],
    "account_event": ["account.updated"],
    "flow_triggered": ["flow.triggered", "flow.completed"],
}

HEALTH_WINDOW = 20
FAILING_AFTER = 5


@dataclass
class WebhookPolicy:
    max_retries: int = 5
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 32.0
    timeout_seconds: float = 10.0
    max_payload_bytes: int = 256 * 1024
    delivery_log_cap: int = 2000
    dlq_cap: int = 500
    circuit_threshold: int = 8
    circuit_reset_seconds: float = 300.0
    max_workers: int = 8
    user_agent: str = "LifecycleEngine-Webhook/1.0"

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> WebhookPolicy:
        s = settings or get_settings()
        return cls(
            max_retries=s.webhook_max_retries,
            base_delay_seconds=s.webhook_retry_base_delay_seconds,
            max_delay_seconds=s.webhook_retry_max_delay_seconds,
            timeout_seconds=s.webhook_timeout_seconds,
            max_payload_bytes=s.webhook_max_payload_bytes,
            delivery_log_cap=s.webhook_delivery_log_cap,
            dlq_cap=s.webhook_dlq_cap,
            circuit_threshold=s.webhook_circuit_threshold,
            circuit_reset_seconds=s.webhook_circuit_reset_seconds,
            max_workers=s.webhook_max_workers,
            user_agent=s.webhook_user_agent,
        )


@dataclass
class DeliveryAttempt:
    webhook_id: str
    delivery_id: str
    url: str
    event: str
    status_code: int | None
    success: bool
    attempt_number: int
    timestamp: datetime
    response_time_ms: float
    error: str | None = None


@dataclass
class DLQEntry:
    id: str
    webhook_id: str
    webhook_url: str
    event: str
    payload: dict[str, Any]
    failed_at: datetime
    attempts: int
    last_error: str
    status_code: int | None = None


@dataclass
class DeliveryResult:
    webhook_id: str
    delivered: bool
    attempts: int
    status_code: int | None = None
    error: str | None = None
    circuit_open: bool = False


@dataclass
class DispatchSummary:
    dispatched: int = 0
    delivered: int = 0
    failed: int = 0
    circuit_open: int = 0
    results: list[DeliveryResult] = field(default_factory=list)


def subscription_matches(webhook: WebhookSubscription, event_type: str) -> bool:
    if webhook.status is WebhookStatus.INACTIVE:
        return False
    return any(ev == event_type or event_type in LEGACY_EVENT_MAP.get(ev, ()) for ev in webhook.events)


def serialize_payload(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":"), default=str).encode("utf-8")


class WebhookDispatcher:
    def __init__(
        self,
        store: LifecycleStore,
        policy: WebhookPolicy | None = None,
        clock: Clock | None = None,
        session: requests.Session | None = None,
        rng: random.Random | None = None,
    ):
        self.store = store
        self.policy = policy or WebhookPolicy.from_settings()
        self.clock = clock or SystemClock()
        self.rng = rng or random.Random()
        self._owns_session = session is None
        self.session = session or requests.Session()
        self.circuits = CircuitRegistry(
            self.clock,
            threshold=self.policy.circuit_threshold,
            reset_after=timedelta(seconds=self.policy.circuit_reset_seconds),
        )
        self._log: deque[DeliveryAttempt] = deque(maxlen=self.policy.delivery_log_cap)
        self._dlq: deque[DLQEntry] = deque(maxlen=self.policy.dlq_cap)
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=self.policy.max_workers, thread_name_prefix="webhook")
        self._closed = False

    # lifecycle
    def shutdown(self, wait: bool = True) -> None:
        if self._closed:
            return
        self._closed = True
        self._executor.shutdown(wait=wait)
        if self._owns_session:
            self.session.close()

    def __enter__(self) -> WebhookDispatcher:
        return self

    def __exit__(self, *exc) -> None:
        self.shutdown()

    # dispatch
    def build_payload(self, event_type: str, data: dict[str, Any]) -> dict[str, Any]:
        return {
            "id": f"dlv_{uuid.uuid4().hex[:16]}",
            "event": event_type,
            "timestamp": self.clock.now().isoformat(),
            "data": data,
        }

    def dispatch(self, event_type: str, data: dict[str, Any], org_id: str | None) -> DispatchSummary:
        """Deliver ``data`` to every matching subscription of ``org_id``, concurrently."""
        if not org_id:
            return DispatchSummary()
        webhooks = [w for w in self.store.list_webhooks(org_id) if subscription_matches(w, event_type)]
        if not webhooks:
            return DispatchSummary()

        payload = self.build_payload(event_type, data)
        futures = [self._executor.submit(self._deliver_and_record, w, payload) for w in webhooks]
        results = [f.result() for f in futures]

        summary = DispatchSummary(
            dispatched=len(webhooks),
            delivered=sum(1 for r in results if r.delivered),
            failed=sum(1 for r in results if not r.delivered and not r.circuit_open),
            circuit_open=sum(1 for r in results if r.circuit_open),
            results=results,
        )
        logger.info(
            f"Dispatched {event_type} to {summary.dispatched} webhook(s): "
            f"{summary.delivered} delivered, {summary.failed} failed, {summary.circuit_open} skipped"
        )
        return summary

    def deliver(self, webhook: WebhookSubscription, payload: dict[str, Any]) -> DeliveryResult:
        """One delivery with retries. Never raises."""
        if self.circuits.is_open(webhook.id):
            WEBHOOK_DELIVERIES.labels(outcome='circuit_open').inc()
            return DeliveryResult(webhook.id, delivered=False, attempts=0, error="Circuit breaker open", circuit_open=True)

        try:
            body = serialize_payload(payload)
            if len(body) > self.policy.max_payload_bytes:
                raise PayloadTooLargeError(len(body), self.policy.max_payload_bytes)
        except PayloadTooLargeError as e:
            WEBHOOK_DELIVERIES.labels(outcome='rejected').inc()
            return DeliveryResult(webhook.id, delivered=False, attempts=0, error=str(e))

        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: compute_signature(body, webhook.secret),
            EVENT_HEADER: str(payload.get("event", "")),
            DELIVERY_HEADER: str(payload.get("id", "")),
            IDEMPOTENCY_HEADER: str(payload.get("id", "")),
            "User-Agent": self.policy.user_agent,
        }

        last_error = "Unknown error"
        last_status: int | None = None
        for attempt in range(1, self.policy.max_retries + 1):
            try:
                status = self._attempt(webhook, payload, body, headers, attempt)
            except WebhookDeliveryError as e:
                last_error = str(e)
                last_status = e.status_code
                if not e.retryable:
                    self.circuits.record_failure(webhook.id)
                    WEBHOOK_DELIVERIES.labels(outcome='failed').inc()
                    return DeliveryResult(webhook.id, delivered=False, attempts=attempt, status_code=e.status_code, error=last_error)
            else:
                self.circuits.record_success(webhook.id)
                WEBHOOK_DELIVERIES.labels(outcome='delivered').inc()
                return DeliveryResult(webhook.id, delivered=True, attempts=attempt, status_code=status)

            if attempt < self.policy.max_retries:
                self.clock.sleep(self.backoff_delay(attempt))

        self.circuits.record_failure(webhook.id)
        WEBHOOK_DELIVERIES.labels(outcome='failed').inc()
        return DeliveryResult(
            webhook.id,
            delivered=False,
            attempts=self.policy.max_retries,
            status_code=last_status,
            error=f"All retries exhausted: {last_error}",
        )

    def backoff_delay(self, attempt: int) -> float:
        base = self.policy.base_delay_seconds * (2 ** (attempt - 1))
        jitter = self.rng.random() * self.policy.base_delay_seconds
        return min(base + jitter, self.policy.max_delay_seconds)

    def _attempt(self, webhook: WebhookSubscription, payload: dict, body: bytes, headers: dict, attempt: int) -> int:
        started = time.perf_counter()
        try:
            response = self.session.post(
                webhook.url,
                data=body,
                headers=headers,
                timeout=self.policy.timeout_seconds,
                allow_redirects=False,
            )
        except requests.RequestException as e:
            elapsed = (time.perf_counter() - started) * 1000
            self._log_attempt(webhook, payload, None, False, attempt, elapsed, str(e))
            WEBHOOK_ATTEMPTS.labels(result='transport_error').inc()
            raise WebhookDeliveryError(str(e) or e.__class__.__name__) from e
        finally:
            WEBHOOK_ATTEMPT_LATENCY.observe(time.perf_counter() - started)

        elapsed = (time.perf_counter() - started) * 1000
        status = response.status_code
        ok = 200 <= status < 300
        self._log_attempt(webhook, payload, status, ok, attempt, elapsed, None if ok else f"HTTP {status}")
        if ok:
            WEBHOOK_ATTEMPTS.labels(result='success').inc()
            return status
        WEBHOOK_ATTEMPTS.labels(result='http_error').inc()
        if 400 <= status < 500 and status != 429:
            raise WebhookDeliveryError(f"HTTP {status} (non-retryable)", status_code=status, retryable=False)
        raise WebhookDeliveryError(f"HTTP {status}", status_code=status)

    def _deliver_and_record(self, webhook: WebhookSubscription, payload: dict[str, Any]) -> DeliveryResult:
        result = self.deliver(webhook, payload)
        now = self.clock.now()

        if result.delivered:
            restored = WebhookStatus.ACTIVE if webhook.status is WebhookStatus.FAILING else None
            self._update_status(webhook.id, status=restored, last_triggered_at=now)
        elif result.circuit_open:
            self._update_status(webhook.id, status=WebhookStatus.FAILING, last_triggered_at=now)
        else:
            self._add_to_dlq(webhook, payload, result)
            circuit = self.circuits.get(webhook.id)
            failing = circuit is not None and (circuit.tripped or circuit.consecutive_failures >= FAILING_AFTER)
            self._update_status(
                webhook.id,
                status=WebhookStatus.FAILING if failing else None,
                success_rate=self.success_rate(webhook.id),
                last_triggered_at=now,
            )

        try:
            self.store.record_webhook_delivery(WebhookDeliveryRecord(
                webhook_id=webhook.id,
                event_type=str(payload.get("event", "")),
                payload=payload.get("data") or {},
                success=result.delivered,
                attempt_count=result.attempts,
                response_status=result.status_code,
            ))
        except Exception as e:
            logger.warning(f"Could not record delivery for webhook {webhook.id}: {e}")
        return result

    def _update_status(self, webhook_id: str, **changes) -> None:
        try:
            self.store.update_webhook_status(webhook_id, **changes)
        except Exception as e:
            logger.warning(f"Could not update status of webhook {webhook_id}: {e}")

    # delivery log / DLQ
    def _log_attempt(self, webhook, payload, status_code, success, attempt, elapsed_ms, error=None) -> None:
        entry = DeliveryAttempt(
            webhook_id=webhook.id,
            delivery_id=str(payload.get("id", "")),
            url=webhook.url,
            event=str(payload.get("event", "")),
            status_code=status_code,
            success=success,
            attempt_number=attempt,
            timestamp=self.clock.now(),
            response_time_ms=round(elapsed_ms, 2),
            error=error,
        )
        with self._lock:
            self._log.append(entry)

    def _add_to_dlq(self, webhook: WebhookSubscription, payload: dict[str, Any], result: DeliveryResult) -> DLQEntry:
        entry = DLQEntry(
            id=f"dlq_{uuid.uuid4().hex[:12]}",
            webhook_id=webhook.id,
            webhook_url=webhook.url,
            event=str(payload.get("event", "")),
            payload=payload,
            failed_at=self.clock.now(),
            attempts=result.attempts,
            last_error=result.error or "Unknown error",
            status_code=result.status_code,
        )
        with self._lock:
            self._dlq.append(entry)
            WEBHOOK_DLQ_SIZE.set(len(self._dlq))
        logger.warning(f"Webhook {webhook.id} delivery {entry.payload.get('id')} dead-lettered: {entry.last_error}")
        return entry

    def success_rate(self, webhook_id: str) -> int:
        recent = self.get_delivery_log(webhook_id, HEALTH_WINDOW)
        if not recent:
            return 0
        return round_half_up(sum(1 for a in recent if a.success) / len(recent) * 100)

    def get_delivery_log(self, webhook_id: str | None = None, limit: int = 50) -> list[DeliveryAttempt]:
        with self._lock:
            entries = [a for a in self._log if webhook_id is None or a.webhook_id == webhook_id]
        return entries[-limit:] if limit else []

    def get_dlq(self, webhook_id: str | None = None, limit: int = 50) -> list[DLQEntry]:
        with self._lock:
            entries = [e for e in self._dlq if webhook_id is None or e.webhook_id == webhook_id]
        return entries[-limit:] if limit else []

    def remove_dlq_entry(self, entry_id: str) -> bool:
        with self._lock:
            for entry in self._dlq:
                if entry.id == entry_id:
                    self._dlq.remove(entry)
                    WEBHOOK_DLQ_SIZE.set(len(self._dlq))
                    return True
        return False

    def replay_dlq_entry(self, entry_id: str) -> DeliveryResult | None:
        """Re-deliver a dead-lettered payload; the entry is removed on success.

        Returns None when no such entry exists.
        """
        with self._lock:
            entry = next((e for e in self._dlq if e.id == entry_id), None)
        if entry is None:
            return None
        webhook = self.store.get_webhook(entry.webhook_id)
        if webhook is None:
            return DeliveryResult(entry.webhook_id, delivered=False, attempts=0, error="Webhook not found")

        result = self.deliver(webhook, entry.payload)
        if result.delivered:
            self.remove_dlq_entry(entry.id)
            logger.info(f"Replayed DLQ entry {entry.id} to webhook {webhook.id}")
        else:
            with self._lock:
                entry.attempts += result.attempts
                entry.last_error = result.error or entry.last_error
                entry.status_code = result.status_code
                entry.failed_at = self.clock.now()
        return result

    # circuits
    def reset_circuit(self, webhook_id: str) -> None:
        self.circuits.reset(webhook_id)

    def get_circuit_state(self, webhook_id: str) -> CircuitState | None:
        return self.circuits.get(webhook_id)
