"""HMAC-SHA256 signing of webhook bodies.

Receivers recompute the digest over the raw request body with the shared
secret and compare it with the ``X-Webhook-Signature`` header.
"""

import hashlib
import hmac
import json
from typing import Any, Mapping

SIGNATURE_HEADER = "X-Webhook-Signature"
SIGNATURE_PREFIX = "sha256="


def canonical_body(payload: Mapping[str, Any]) -> bytes:
    """Serialise a payload exactly as it is sent on the wire."""
    return json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str).encode("utf-8")


def sign_payload(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(secret: str, body: bytes, signature: str) -> bool:
    return hmac.compare_digest(sign_payload(secret, body), signature or "")
