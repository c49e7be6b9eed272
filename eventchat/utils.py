"""
Utility functions shared by the service and the chat client.
"""

import hmac
import hashlib
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)

TEMP_ID_PREFIX = "temp-"


def verify_hmac_signature(body: bytes, signature: str, secret: str) -> bool:
    """
    Verify HMAC-SHA256 signature.

    Args:
        body: Raw request body bytes
        signature: Hex-encoded signature from X-Signature header
        secret: WEBHOOK_SECRET

    Returns:
        True if signature is valid, False otherwise
    """
    logger.debug(f"Verifying HMAC signature, body length: {len(body)} bytes")

    expected_signature = hmac.new(
        secret.encode("utf-8"),
        body,
        hashlib.sha256
    ).hexdigest()

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected_signature, signature)
    logger.debug(f"HMAC signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    """Current UTC time as ISO-8601 with microseconds and a Z suffix."""
    return utc_now().strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def to_iso(value: datetime) -> str:
    """Format an aware datetime the same way utc_now_iso does."""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def new_temp_id() -> str:
    """Locally generated id for an optimistic entry; never sent to the store."""
    return f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}"


def sse_format(data: str, event: Optional[str] = None, event_id: Optional[str] = None) -> str:
    """Format a string as an SSE event block (id/event/data lines, blank terminator)."""
    s = ""
    if event_id is not None:
        s += f"id: {event_id}\n"
    if event is not None:
        s += f"event: {event}\n"
    for line in data.splitlines() or [""]:
        s += f"data: {line}\n"
    s += "\n"
    return s
