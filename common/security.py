import hashlib
import hmac
import logging
from typing import Optional

logger = logging.getLogger(__name__)

DIGEST = hashlib.sha512

def compute_signature(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA512 of the raw request body, as the gateway signs it."""
    return hmac.new(secret.encode("utf-8"), body, DIGEST).hexdigest()

def verify_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """Check a header-supplied signature against the exact bytes received.

    The body must not be re-serialized before calling this: key order and
    whitespace are part of what the gateway signed.
    """
    if not secret:
        logger.error("Payment secret key is not configured; rejecting webhook")
        return False
    if not signature:
        return False
    expected = compute_signature(body, secret)
    # hex digests are ASCII; compare as bytes so non-ASCII input can't raise
    return hmac.compare_digest(expected.encode("ascii"), signature.strip().lower().encode("utf-8"))
