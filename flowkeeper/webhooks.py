"""Inbound webhook signature verification (HMAC SHA-256)."""

from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any, Mapping, Optional

SIGNATURE_HEADERS = ("x-webhook-signature", "x-signature")
SIGNATURE_PREFIX = "sha256="


def canonical_body(payload: Any) -> bytes:
    """Stable JSON encoding used when the raw request body is not available."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode()


def sign(secret: str, body: bytes) -> str:
    """Return the hex HMAC SHA-256 digest of ``body``."""
    return hmac.new(secret.encode(), msg=body, digestmod=hashlib.sha256).hexdigest()


def signature_from_headers(headers: Mapping[str, str]) -> Optional[str]:
    lowered = {key.lower(): value for key, value in headers.items()}
    for name in SIGNATURE_HEADERS:
        if lowered.get(name):
            return lowered[name]
    return None


def verify_signature(secret: str, body: bytes, signature: Optional[str]) -> bool:
    """Check ``signature`` (optionally prefixed with ``sha256=``) against ``body``."""
    if not signature:
        return False
    if signature.startswith(SIGNATURE_PREFIX):
        signature = signature[len(SIGNATURE_PREFIX):]
    return hmac.compare_digest(sign(secret, body), signature.strip().lower())
