"""Signed webhook delivery with bounded retries and delivery history."""

from .delivery import DeliveryRecorder, WebhookWorker, build_headers
from .signing import compute_signature, verify_signature

__all__ = [
    "DeliveryRecorder",
    "WebhookWorker",
    "build_headers",
    "compute_signature",
    "verify_signature",
]
