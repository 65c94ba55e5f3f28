"""Exception hierarchy shared across the engine."""
from __future__ import annotations


class LifecycleEngineError(Exception):
    pass


class FlowConfigError(LifecycleEngineError):
    """A flow graph or node config problem that is fatal for one enrollment."""

    def __init__(self, message: str, node_id: str | None = None):
        super().__init__(message)
        self.node_id = node_id


class WebhookDeliveryError(LifecycleEngineError):
    def __init__(self, message: str, status_code: int | None = None, retryable: bool = True):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class PayloadTooLargeError(WebhookDeliveryError):
    def __init__(self, size: int, limit: int):
        super().__init__(f"Payload exceeds {limit} bytes ({size})", retryable=False)
        self.size = size
        self.limit = limit


class StoreError(LifecycleEngineError):
    pass
