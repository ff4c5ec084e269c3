"""Shopify webhook signatures: base64 HMAC-SHA256 of the raw request body."""

import base64
import hashlib
import hmac

from jerkyrank.errors import SignatureError


def compute_signature(body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(body: bytes, signature: str | None, secret: str) -> bool:
    """Constant-time check. An unset secret rejects everything."""
    if not secret or not signature:
        return False
    expected = compute_signature(body, secret)
    return hmac.compare_digest(expected.encode("ascii"), signature.strip().encode("utf-8", "replace"))


def require_valid_signature(body: bytes, signature: str | None, secret: str) -> None:
    """Raise :class:`SignatureError` unless the signature matches."""
    if not secret:
        raise SignatureError("Webhook secret is not configured")
    if not signature:
        raise SignatureError("Missing webhook signature")
    if not verify_signature(body, signature, secret):
        raise SignatureError("Webhook signature mismatch")
