"""Per-subscription circuit breakers for webhook delivery.

A subscription's circuit trips after ``threshold`` consecutive failed
deliveries. While tripped, deliveries are skipped without any attempt. Once
``reset_after`` has passed since the last failure the circuit closes again
and the next delivery proceeds normally. Any success closes it immediately.

State is in-process runtime state owned by a ``WebhookDispatcher``; it is not
persisted.
"""
from __future__ import annotations
import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from prometheus_client import Counter, Gauge

from lifecycle_engine.infrastructure.clock import Clock

logger = logging.getLogger(__name__)

WEBHOOK_CIRCUIT_TRIPS = Counter('webhook_circuit_trips_total', 'Webhook circuits tripped')
WEBHOOK_CIRCUIT_REJECTIONS = Counter('webhook_circuit_rejections_total', 'Deliveries skipped on an open circuit')
WEBHOOK_OPEN_CIRCUITS = Gauge('webhook_open_circuits', 'Webhook circuits currently tripped')


@dataclass
class CircuitState:
    consecutive_failures: int = 0
    last_failure: datetime | None = None
    tripped: bool = False


class CircuitRegistry:
    def __init__(self, clock: Clock, threshold: int = 8, reset_after: timedelta = timedelta(minutes=5)):
        self.clock = clock
        self.threshold = threshold
        self.reset_after = reset_after
        self._circuits: dict[str, CircuitState] = {}
        self._lock = threading.RLock()

    def is_open(self, webhook_id: str) -> bool:
        """True while tripped; closes (and returns False) once the cool-down passed."""
        with self._lock:
            state = self._circuits.get(webhook_id)
            if state is None or not state.tripped:
                return False
            if state.last_failure is None or self.clock.now() - state.last_failure >= self.reset_after:
                state.tripped = False
                state.consecutive_failures = 0
                self._update_gauge()
                logger.info(f"Circuit for webhook {webhook_id} reset after cool-down")
                return False
            WEBHOOK_CIRCUIT_REJECTIONS.inc()
            return True

    def record_success(self, webhook_id: str) -> None:
        with self._lock:
            state = self._circuits.get(webhook_id)
            if state is not None:
                state.consecutive_failures = 0
                state.tripped = False
                self._update_gauge()

    def record_failure(self, webhook_id: str) -> CircuitState:
        with self._lock:
            state = self._circuits.setdefault(webhook_id, CircuitState())
            state.consecutive_failures += 1
            state.last_failure = self.clock.now()
            if state.consecutive_failures >= self.threshold and not state.tripped:
                state.tripped = True
                WEBHOOK_CIRCUIT_TRIPS.inc()
                self._update_gauge()
                logger.warning(
                    f"Circuit tripped for webhook {webhook_id} after {state.consecutive_failures} consecutive failures"
                )
            return replace(state)

    def reset(self, webhook_id: str) -> None:
        with self._lock:
            self._circuits.pop(webhook_id, None)
            self._update_gauge()

    def get(self, webhook_id: str) -> CircuitState | None:
        with self._lock:
            state = self._circuits.get(webhook_id)
            return replace(state) if state is not None else None

    def _update_gauge(self) -> None:
        WEBHOOK_OPEN_CIRCUITS.set(sum(1 for s in self._circuits.values() if s.tripped))
