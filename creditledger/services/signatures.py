"""
HMAC signatures for provider callbacks that are not signed by the Stripe SDK.
"""
import hmac
import hashlib


def generate_webhook_signature(payload: bytes, secret: str) -> str:
    """Generate HMAC-SHA256 signature for webhook payload."""
    return hmac.new(
        secret.encode(),
        payload,
        hashlib.sha256
    ).hexdigest()


def verify_webhook_signature(payload: bytes, signature: str | None, secret: str | None) -> bool:
    """Constant-time check of a hex HMAC-SHA256 signature over the raw body."""
    if not secret or not signature:
        return False
    expected = generate_webhook_signature(payload, secret)
    return hmac.compare_digest(expected, signature.strip().lower())
