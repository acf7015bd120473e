"""
Utility functions for the relay service.
"""

import hashlib
import hmac
import logging
import time

logger = logging.getLogger(__name__)


def unix_now() -> int:
    """Wall clock in whole seconds, the resolution the channel uses."""
    return int(time.time())


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
    logger.debug(f"Body length: {len(body)} bytes, signature: {signature[:8]}...")

    expected_signature = hmac.new(
        secret.encode("utf-8"),
        body,
        hashlib.sha256
    ).hexdigest()

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected_signature, signature)
    logger.info(f"HMAC signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid


def verify_handshake_signature(token: str, timestamp: str, nonce: str, signature: str) -> bool:
    """
    Verify the channel's server-address handshake.

    The channel signs the lexicographically sorted (token, timestamp, nonce)
    triple with SHA-1 and sends the hex digest as ``signature``.
    """
    joined = "".join(sorted([token, timestamp, nonce]))
    expected = hashlib.sha1(joined.encode("utf-8")).hexdigest()
    return hmac.compare_digest(expected, signature)
