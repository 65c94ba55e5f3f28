"""HMAC-SHA256 webhook signatures.

Receivers recompute ``sha256=<hex>`` over the raw request body with their
subscription secret and compare in constant time::

    from lifecycle_engine.webhooks.signing import verify_signature
    ok = verify_signature(request_body, request.headers["X-Lifecycle-Signature"], secret)
"""
from __future__ import annotations
import hashlib
import hmac

SIGNATURE_HEADER = "X-Lifecycle-Signature"
EVENT_HEADER = "X-Lifecycle-Event"
DELIVERY_HEADER = "X-Lifecycle-Delivery"
IDEMPOTENCY_HEADER = "X-Idempotency-Key"
SIGNATURE_PREFIX = "sha256="


def _as_bytes(value: str | bytes) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


def compute_signature(body: str | bytes, secret: str) -> str:
    digest = hmac.new(_as_bytes(secret), _as_bytes(body), hashlib.sha256).hexdigest()
    return SIGNATURE_PREFIX + digest


def verify_signature(body: str | bytes, header_value: str | None, secret: str) -> bool:
    if not header_value:
        return False
    expected = compute_signature(body, secret)
    return hmac.compare_digest(expected.encode("utf-8"), header_value.strip().encode("utf-8"))
