"""HMAC-SHA256 signatures for outbound webhook bodies."""

from __future__ import annotations

import hashlib
import hmac

SIGNATURE_PREFIX = "sha256="


def compute_signature(secret: str, body: bytes | str) -> str:
    """Return ``sha256=<hex>`` for *body* keyed by *secret*."""
    if isinstance(body, str):
        body = body.encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return SIGNATURE_PREFIX + digest


def verify_signature(secret: str, body: bytes | str, signature: str) -> bool:
    """Constant-time check of a received ``X-Flux-Signature`` header."""
    return hmac.compare_digest(compute_signature(secret, body), signature or "")
