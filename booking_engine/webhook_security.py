"""
Webhook Security Module

Signature verification for the payment provider webhook (Stripe format):
- Header 'Stripe-Signature: t=<unix timestamp>,v1=<hex signature>[,v1=...]'
- Signature is HMAC-SHA256 over "<timestamp>.<raw body>"
- Constant-time comparison and a 5 minute replay window
"""

import hashlib
import hmac
import logging
import time
from typing import Callable, Optional

from fastapi import HTTPException, Request

from .exceptions import WebhookSignatureError

logger = logging.getLogger(__name__)

# Maximum age of webhook in seconds (5 minutes)
MAX_WEBHOOK_AGE_SECONDS = 300


def constant_time_compare(a: str, b: str) -> bool:
    """Compare two strings in constant time"""
    if not a or not b:
        return False
    return hmac.compare_digest(a, b)


def compute_hmac_sha256(secret: str, payload: bytes) -> str:
    """Compute HMAC-SHA256 signature of payload"""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_timestamp(
    timestamp: Optional[str],
    max_age: int = MAX_WEBHOOK_AGE_SECONDS,
    now: Optional[Callable[[], float]] = None,
) -> bool:
    """
    Verify webhook timestamp is within acceptable range.

    Args:
        timestamp: Unix timestamp as string
        max_age: Maximum age in seconds

    Returns:
        True if timestamp is valid, False otherwise
    """
    if not timestamp:
        return False

    try:
        webhook_time = int(timestamp)
        current_time = int((now or time.time)())
        age = abs(current_time - webhook_time)

        if age > max_age:
            logger.warning(f"🚫 Webhook timestamp too old: {age}s (max: {max_age}s)")
            return False

        return True
    except (ValueError, TypeError):
        logger.warning(f"🚫 Invalid webhook timestamp format: {timestamp}")
        return False


def parse_signature_header(signature_header: str) -> tuple[Optional[str], list[str]]:
    """Split a Stripe-Signature header into (timestamp, [v1 signatures])"""
    timestamp = None
    signatures = []
    for item in signature_header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    return timestamp, signatures


def verify_payment_signature(
    raw_body: bytes,
    signature_header: Optional[str],
    secret: str,
    max_age: int = MAX_WEBHOOK_AGE_SECONDS,
    now: Optional[Callable[[], float]] = None,
) -> None:
    """
    Raises:
        WebhookSignatureError: header missing, malformed, expired or not matching
    """
    if not signature_header:
        raise WebhookSignatureError("Missing webhook signature")

    timestamp, signatures = parse_signature_header(signature_header)
    if not timestamp or not signatures:
        raise WebhookSignatureError("Invalid signature format")

    if not verify_timestamp(timestamp, max_age=max_age, now=now):
        raise WebhookSignatureError("Webhook timestamp expired")

    signed_payload = f"{timestamp}.".encode() + raw_body
    expected_signature = compute_hmac_sha256(secret, signed_payload)

    if not any(constant_time_compare(expected_signature, sig) for sig in signatures):
        raise WebhookSignatureError("Invalid webhook signature")


async def verify_stripe_webhook(request: Request, secret: str) -> bytes:
    """
    Verify the Stripe-Signature header of an incoming request.

    Returns:
        The raw request body, for parsing after verification
    """
    raw_body = await request.body()
    logger.debug("📥 Payment webhook received")

    try:
        verify_payment_signature(raw_body, request.headers.get("Stripe-Signature"), secret)
    except WebhookSignatureError as e:
        logger.warning(f"🚫 Payment webhook rejected: {e.message}")
        raise HTTPException(status_code=401, detail=e.message)

    logger.debug("✅ Payment webhook signature verified")
    return raw_body


def create_webhook_signature(secret: str, payload: bytes, timestamp: Optional[int] = None) -> str:
    """Create a Stripe-format signature header (used by tests and local tooling)"""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed_payload = f"{timestamp}.".encode() + payload
    sig = compute_hmac_sha256(secret, signed_payload)
    return f"t={timestamp},v1={sig}"
