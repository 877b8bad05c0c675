"""
Webhook Security Module

Signature verification for inbound webhooks (Stripe payment events, Twilio
partner SMS) and the shared-key guard for admin endpoints.
- Constant-time signature comparison
- Timestamp validation against replays
"""

import base64
import hashlib
import hmac
import logging
import time
from typing import Optional

from fastapi import Header, HTTPException, Request

from . import config

logger = logging.getLogger(__name__)

# Maximum age of webhook in seconds (5 minutes)
MAX_WEBHOOK_AGE_SECONDS = 300


def constant_time_compare(a: str, b: str) -> bool:
    """
    Compare two strings in constant time to prevent timing attacks.
    Uses hmac.compare_digest which is designed for this purpose.
    """
    if not a or not b:
        return False
    return hmac.compare_digest(a, b)


def compute_hmac_sha256(secret: str, payload: bytes) -> str:
    """Compute HMAC-SHA256 signature of payload"""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_timestamp(timestamp: Optional[str], max_age: int = MAX_WEBHOOK_AGE_SECONDS) -> bool:
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
        age = abs(int(time.time()) - int(timestamp))
    except (ValueError, TypeError):
        logger.warning(f"🚫 Invalid webhook timestamp format: {timestamp}")
        return False

    if age > max_age:
        logger.warning(f"🚫 Webhook timestamp too old: {age}s (max: {max_age}s)")
        return False
    return True


async def verify_stripe_webhook(
    request: Request, secret: str, raise_on_failure: bool = True
) -> tuple[bool, bytes]:
    """
    Verify Stripe webhook signature.

    Stripe uses:
    - Header: 'Stripe-Signature' (format: "t=<timestamp>,v1=<signature>")

    Returns:
        Tuple of (is_valid, raw_body)
    """
    raw_body = await request.body()
    signature_header = request.headers.get("Stripe-Signature", "")

    def fail(detail: str) -> tuple[bool, bytes]:
        logger.warning(f"🚫 Stripe webhook rejected: {detail}")
        if raise_on_failure:
            raise HTTPException(status_code=401, detail=detail)
        return False, raw_body

    if not signature_header:
        return fail("Missing webhook signature")

    elements = dict(item.split("=", 1) for item in signature_header.split(",") if "=" in item)
    timestamp = elements.get("t")
    signature = elements.get("v1")

    if not timestamp or not signature:
        return fail("Invalid signature format")

    if not verify_timestamp(timestamp):
        return fail("Webhook timestamp expired")

    # Stripe signs "timestamp.payload"
    signed_payload = timestamp.encode() + b"." + raw_body
    expected_signature = compute_hmac_sha256(secret, signed_payload)

    if not constant_time_compare(expected_signature, signature):
        return fail("Invalid webhook signature")

    logger.debug("✅ Stripe webhook signature verified")
    return True, raw_body


def compute_twilio_signature(auth_token: str, url: str, params: dict) -> str:
    """Twilio signs the full URL followed by every POST param (sorted) as key+value"""
    payload = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(auth_token.encode("utf-8"), payload.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("utf-8")


def verify_twilio_request(request: Request, params: dict, auth_token: Optional[str]) -> None:
    """
    Verify X-Twilio-Signature on an inbound SMS webhook.

    Verification is skipped when no auth token is configured (local development).

    Raises:
        HTTPException(401): signature missing or wrong
    """
    if not auth_token:
        logger.debug("Twilio auth token not configured - skipping signature check")
        return

    signature = request.headers.get("X-Twilio-Signature", "")
    url = config.TWILIO_WEBHOOK_URL or str(request.url)
    expected = compute_twilio_signature(auth_token, url, params)

    if not constant_time_compare(expected, signature):
        logger.warning("🚫 Twilio webhook signature mismatch")
        raise HTTPException(status_code=401, detail="Invalid webhook signature")


def create_webhook_signature(secret: str, payload: bytes, provider: str = "stripe") -> str:
    """
    Create a webhook signature for testing.

    Args:
        secret: Signing secret
        payload: Request body bytes
        provider: Provider format ('generic', 'stripe')
    """
    if provider == "stripe":
        timestamp = int(time.time())
        sig = compute_hmac_sha256(secret, f"{timestamp}.".encode() + payload)
        return f"t={timestamp},v1={sig}"
    return compute_hmac_sha256(secret, payload)


async def require_admin_key(x_admin_key: Optional[str] = Header(None)) -> None:
    """FastAPI dependency guarding admin endpoints"""
    if not config.ADMIN_API_KEY:
        logger.error("❌ ADMIN_API_KEY not configured - admin endpoints disabled")
        raise HTTPException(status_code=503, detail="Admin access not configured")
    if not constant_time_compare(x_admin_key or "", config.ADMIN_API_KEY):
        logger.warning("🚫 Admin request with invalid key")
        raise HTTPException(status_code=401, detail="Invalid admin key")
