"""HMAC-SHA256 trust checks for checkout callbacks and webhook deliveries.

Both checks run over the exact bytes the gateway signed: `"{order}|{payment}"`
for checkout callbacks and the untouched request body for webhooks.
"""

import hashlib
import hmac


def _hex_hmac(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def _constant_time_equal(expected: str, supplied) -> bool:
    if not isinstance(supplied, str):
        return False
    try:
        return hmac.compare_digest(expected.encode("ascii"), supplied.encode("ascii"))
    except UnicodeEncodeError:
        return False


def verify_payment_signature(gateway_order_id: str, gateway_payment_id: str, signature, secret: str) -> bool:
    """Check a checkout callback signature; never raises on malformed input."""

    message = f"{gateway_order_id}|{gateway_payment_id}".encode("utf-8")
    return _constant_time_equal(_hex_hmac(secret, message), signature)


def verify_webhook_signature(raw_body: bytes, signature, secret: str) -> bool:
    """Check `X-Razorpay-Signature` against the raw request body."""

    try:
        return _constant_time_equal(_hex_hmac(secret, raw_body), signature)
    except Exception:
        return False


def sign_payment(gateway_order_id: str, gateway_payment_id: str, secret: str) -> str:
    """Signature the gateway hands the client after checkout."""

    return _hex_hmac(secret, f"{gateway_order_id}|{gateway_payment_id}".encode("utf-8"))


def sign_webhook(raw_body: bytes, secret: str) -> str:
    return _hex_hmac(secret, raw_body)
