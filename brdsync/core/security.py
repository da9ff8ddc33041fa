"""
Security utilities for the application.
"""

import hashlib
import hmac
from typing import Any, Dict, Optional

import jwt
from jwt.exceptions import InvalidTokenError

from brdsync.core.config import get_settings

SIGNATURE_PREFIX = "sha256="


def decode_access_token(token: str) -> Optional[Dict[str, Any]]:
    """
    Decode a bearer JWT issued by the platform's identity service.

    Args:
        token: JWT token to decode

    Returns:
        Decoded token data or None if invalid
    """
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.security.secret_key,
            algorithms=[settings.security.algorithm],
        )
        return dict(payload)
    except (InvalidTokenError, ValueError):
        return None


def compute_signature(body: bytes, secret: str) -> str:
    """HMAC-SHA256 of a raw request body, in ``sha256=<hex>`` form."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """
    Constant-time check of a webhook signature header.

    Args:
        body: Raw request body, exactly as received
        signature: Value of the signature header
        secret: Shared secret for the connection

    Returns:
        True if the signature matches
    """
    if not signature or not secret:
        return False
    expected = compute_signature(body, secret)
    return hmac.compare_digest(expected.encode("utf-8"), signature.strip().encode("utf-8"))
