"""
Utility functions shared by the API and the sync client.
"""

import hmac
import logging
import time
import uuid
from typing import Optional

logger = logging.getLogger(__name__)

NANOS_PER_SECOND = 1_000_000_000


def now_ns() -> int:
    """Wall clock in nanoseconds. Tests replace this to move time forward."""
    return time.time_ns()


def seconds_to_ns(seconds: float) -> int:
    return int(seconds * NANOS_PER_SECOND)


def generate_message_nonce() -> str:
    """Random token that makes a send idempotent across retries."""
    return uuid.uuid4().hex


def is_admin(token: Optional[str], admin_token: str) -> bool:
    """
    Authorization check for admin-only operations.

    Args:
        token: Value of the X-Admin-Token header (may be missing)
        admin_token: Configured ADMIN_TOKEN; empty disables admin access

    Returns:
        True if the caller presented the configured token, False otherwise
    """
    if not admin_token or not token:
        logger.info("Admin check failed: token missing or admin access disabled")
        return False

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(token.encode("utf-8"), admin_token.encode("utf-8"))
    logger.info(f"Admin check: {'granted' if is_valid else 'denied'}")

    return is_valid


def has_permission(token: Optional[str], admin_token: str, permission: str) -> bool:
    """Every admin permission currently maps to the single admin token."""
    logger.debug(f"Permission check: {permission}")
    return is_admin(token, admin_token)


def media_placeholder(content: str, video: Optional[str] = None, audio: Optional[str] = None) -> str:
    """Text shown for a media-only message; any real text is kept as is."""
    if content.strip():
        return content
    if video:
        return "🎬 Video"
    if audio:
        return "🎵 Audio"
    return "📷 Image"
