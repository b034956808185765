"""Webhook signature verification (HMAC-SHA512 over the raw body)."""

import hashlib
import hmac


def compute_signature(secret: str, raw_body: bytes) -> str:
    """Hex HMAC-SHA512 of the raw request body."""
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


def verify_signature(secret: str, raw_body: bytes, signature: str | None) -> bool:
    """
    Check a webhook signature against the raw, undecoded body.

    Returns:
        False when the signature or the secret is missing, or on mismatch
    """
    if not signature or not secret:
        return False
    expected = compute_signature(secret, raw_body)
    return hmac.compare_digest(expected, signature.strip().lower())
