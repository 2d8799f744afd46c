"""Webhook signature checks for Lenco callbacks."""

import hmac, hashlib, binascii, logging


logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-lenco-signature"


class AuthError(Exception):
    pass


def verify_signature(raw_body: bytes, signature_header: str, secret: str) -> bool:
    """Return True when ``signature_header`` is the hex HMAC-SHA256 of ``raw_body``.

    The digest is keyed by ``secret``. Anything malformed (empty header,
    non-hex characters, wrong length, missing secret) is simply "not
    verified"; this never raises.
    """
    if not signature_header or not secret:
        return False
    if isinstance(raw_body, str):
        raw_body = raw_body.encode("utf-8")
    try:
        received = binascii.unhexlify(signature_header.strip())
    except (binascii.Error, ValueError, TypeError, AttributeError):
        return False
    expected = hmac.new(secret.encode("utf-8"), raw_body or b"", hashlib.sha256).digest()
    return hmac.compare_digest(expected, received)


def require_valid_signature(raw_body: bytes, signature_header: str, secret: str) -> None:
    if not signature_header:
        logger.warning("Lenco webhook rejected: missing %s header", SIGNATURE_HEADER)
        raise AuthError("Missing signature")
    if not verify_signature(raw_body, signature_header, secret):
        logger.warning("Lenco webhook rejected: invalid signature")
        raise AuthError("Invalid signature")
