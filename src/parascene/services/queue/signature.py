"""QStash delivery signature verification.

QStash signs every delivery with a JWT (HS256) in the ``Upstash-Signature``
header. The token is signed with the current signing key, or the next one
during key rotation, and carries:

- iss: "Upstash"
- sub: destination URL
- body: base64url(SHA-256(raw body)), padding optional
- exp / nbf: validity window

Security Note:
    verify_qstash_signature never raises. Any decoding or validation problem
    rejects the request.
"""

import base64
import hashlib
import hmac

import jwt
import structlog

logger = structlog.get_logger()

QSTASH_ISSUER = "Upstash"


def body_digest(raw_body: bytes) -> str:
    """base64url SHA-256 digest of the body without padding."""
    return base64.urlsafe_b64encode(hashlib.sha256(raw_body).digest()).decode("ascii").rstrip("=")


def _verify_with_key(
    signature: str,
    raw_body: bytes,
    signing_key: str,
    url: str | None,
    clock_tolerance: int,
) -> bool:
    try:
        claims = jwt.decode(
            signature,
            signing_key,
            algorithms=["HS256"],
            issuer=QSTASH_ISSUER,
            leeway=clock_tolerance,
            options={"require": ["iss", "sub", "exp", "nbf", "body"]},
        )
    except jwt.PyJWTError as e:
        logger.debug("qstash.signature_rejected", reason=type(e).__name__)
        return False

    if url is not None and claims.get("sub") != url:
        logger.debug("qstash.signature_rejected", reason="subject_mismatch")
        return False

    provided = claims.get("body")
    if not isinstance(provided, str):
        return False

    return hmac.compare_digest(body_digest(raw_body), provided.rstrip("="))


def verify_qstash_signature(
    raw_body: bytes,
    signature: str | None,
    signing_keys: list[str],
    url: str | None = None,
    clock_tolerance: int = 0,
) -> bool:
    """Validate a QStash delivery signature.

    Args:
        raw_body: Raw request body bytes exactly as received
        signature: Value of the Upstash-Signature header
        signing_keys: Current and next signing keys (empty entries ignored)
        url: Expected destination URL; the ``sub`` claim must match when given
        clock_tolerance: Seconds of leeway for exp/nbf checks

    Returns:
        True if any configured key validates the signature, False otherwise
    """
    if not signature:
        return False

    keys = [key for key in signing_keys if key]
    if not keys:
        return False

    for key in keys:
        try:
            if _verify_with_key(signature, raw_body, key, url, clock_tolerance):
                return True
        except (TypeError, ValueError) as e:
            logger.warning("qstash.signature_error", error=str(e), error_type=type(e).__name__)

    return False
