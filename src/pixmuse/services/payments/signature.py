"""HMAC signature validation for payment webhooks.

The payment processor signs the raw request body with HMAC-SHA256 using the
shared webhook secret and sends the hex digest in X-Payment-Signature.

Security Note:
    validate_payment_signature MUST be called before the payload is parsed.
    Return 401 Unauthorized immediately if validation fails.
"""

import hashlib
import hmac


def compute_payment_signature(raw_body: bytes, signing_key: str) -> str:
    """Hex-encoded HMAC-SHA256 of raw_body under signing_key."""
    return hmac.new(
        key=signing_key.encode("utf-8"), msg=raw_body, digestmod=hashlib.sha256
    ).hexdigest()


def validate_payment_signature(raw_body: bytes, signature: str, signing_key: str) -> bool:
    """Validate a payment webhook signature using HMAC-SHA256.

    Args:
        raw_body: Raw request body bytes (NOT parsed JSON). Must be the exact
            bytes received, before any parsing or transformation.
        signature: Hex digest from the X-Payment-Signature header.
        signing_key: Shared webhook secret (PAYMENT_WEBHOOK_SECRET).

    Returns:
        True if the signature is valid, False otherwise. An empty signing key
        never validates.

    Security:
        - Uses hmac.compare_digest() for constant-time comparison. Never use
          == for signature comparison.

    Example:
        >>> raw_body = b'{"event_id":"evt_1","account_id":"...","credits":50}'
        >>> is_valid = validate_payment_signature(raw_body, signature, "whsec_test")
        >>> if not is_valid:
        ...     raise HTTPException(status_code=401, detail="Invalid signature")
    """
    if not signing_key:
        return False

    expected = compute_payment_signature(raw_body, signing_key)

    # hexdigest() is lowercase; accept uppercase input
    return hmac.compare_digest(expected, signature.strip().lower())
