"""
Utility functions for the SMS booking service.
"""

import hashlib
import hmac
import logging
import time
from typing import Optional

logger = logging.getLogger(__name__)


def verify_hmac_signature(body: bytes, signature: Optional[str], secret: str, timestamp: Optional[str] = None) -> bool:
    """
    Verify a gateway webhook HMAC-SHA256 signature.

    Args:
        body: Raw request body bytes
        signature: Hex signature from X-Signature / X-Webhook-Signature,
            optionally prefixed with "sha256="
        secret: WEBHOOK_SECRET
        timestamp: Optional X-Timestamp header; when present the signed
            payload is "<timestamp>.<body>"

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature:
        return False

    received = signature.strip()
    if received.startswith("sha256="):
        received = received[len("sha256="):]

    payload = f"{timestamp}.".encode("utf-8") + body if timestamp else body
    expected = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()

    # constant-time comparison
    is_valid = hmac.compare_digest(expected, received.lower())
    logger.debug(f"HMAC signature verification: {'valid' if is_valid else 'invalid'}")
    return is_valid


class WebhookRateLimiter:
    """
    Fixed-window request counter keyed by client address.

    State lives in process memory, so every worker counts on its own. A limit
    of 0 lets everything through.
    """

    def __init__(self, limit: int, window_seconds: int):
        self.limit = limit
        self.window_seconds = window_seconds
        self._windows: dict[str, tuple[float, int]] = {}

    def allow(self, key: str, now: Optional[float] = None) -> bool:
        """Count one request for key; False once the window is used up."""
        if self.limit <= 0:
            return True
        now = time.monotonic() if now is None else now

        started, count = self._windows.get(key, (now, 0))
        if now - started >= self.window_seconds:
            started, count = now, 0
        if count >= self.limit:
            return False

        self._windows[key] = (started, count + 1)
        if len(self._windows) > 10_000:
            self._prune(now)
        return True

    def _prune(self, now: float) -> None:
        expired = [k for k, (started, _) in self._windows.items() if now - started >= self.window_seconds]
        for k in expired:
            del self._windows[k]
