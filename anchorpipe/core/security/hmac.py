"""
HMAC-SHA256 request signing helpers.
"""

import hashlib
import hmac as _hmac
import re
from typing import Mapping, Optional, Union

SIGNATURE_HEADER = "x-fr-sig"

_BEARER_RE = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE)


def compute_hmac(secret: str, payload: Union[str, bytes]) -> str:
    """
    Compute the hex HMAC-SHA256 of a payload.

    Args:
        secret: Plaintext secret
        payload: Request body

    Returns:
        Hex-encoded signature
    """
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return _hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_hmac(secret: str, payload: Union[str, bytes], signature: str) -> bool:
    """Verify a hex signature in constant time."""
    if not signature:
        return False
    expected = compute_hmac(secret, payload)
    return _hmac.compare_digest(
        expected.encode("ascii"), signature.strip().lower().encode("utf-8")
    )


def extract_hmac_signature(headers: Mapping[str, str]) -> Optional[str]:
    """Return the X-FR-Sig header value, if any."""
    return headers.get(SIGNATURE_HEADER) or None


def extract_bearer_token(headers: Mapping[str, str]) -> Optional[str]:
    """Return the token from ``Authorization: Bearer <token>``, if any."""
    auth_header = headers.get("authorization")
    if not auth_header:
        return None
    match = _BEARER_RE.match(auth_header.strip())
    return match.group(1).strip() if match else None


def hash_secret(secret: str) -> str:
    """SHA-256 hex digest used to index stored secrets."""
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()
