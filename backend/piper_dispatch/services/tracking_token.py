"""
Tracking token codec.

A token packs ``message_id|recipient_id|campaign_id|link_id`` into URL-safe
base64 so it can be embedded in pixel and redirect URLs. Tokens are reversible
and carry no authentication of their own; ``sign``/``verify`` provide an
opt-in keyed signature that travels alongside the token as ``?sig=``.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
from typing import NamedTuple, Optional

from piper_dispatch.core.config import settings
from piper_dispatch.core.exceptions import MalformedTokenError

DELIMITER = "|"
MIN_FIELDS = 3


class TrackingToken(NamedTuple):
    message_id: str
    recipient_id: str
    campaign_id: str
    link_id: str = ""


def encode(message_id: str, recipient_id: str, campaign_id: str, link_id: str = "") -> str:
    """Encode identifiers into a URL-path-safe token.

    Raises
    ------
    ValueError
        If any identifier contains the field delimiter.
    """
    fields = [str(message_id), str(recipient_id), str(campaign_id), str(link_id or "")]
    for value in fields:
        if DELIMITER in value:
            raise ValueError(f"Tracking identifiers must not contain {DELIMITER!r}: {value!r}")
    raw = DELIMITER.join(fields).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode(token: str) -> TrackingToken:
    """Decode a token produced by :func:`encode`.

    Both the URL-safe and the standard base64 alphabets are accepted, and
    stripped padding is restored.

    Raises
    ------
    MalformedTokenError
        If the token is not base64, not UTF-8, or has fewer than three fields.
    """
    if not token:
        raise MalformedTokenError("Empty tracking token")

    normalized = token.strip().replace("+", "-").replace("/", "_").rstrip("=")
    padding = "=" * (-len(normalized) % 4)
    try:
        raw = base64.b64decode(normalized + padding, altchars=b"-_", validate=True)
        text = raw.decode("utf-8")
    except (binascii.Error, ValueError) as exc:
        # UnicodeDecodeError is a ValueError
        raise MalformedTokenError(f"Undecodable tracking token: {exc}") from exc

    parts = text.split(DELIMITER)
    if len(parts) < MIN_FIELDS:
        raise MalformedTokenError(
            f"Tracking token has {len(parts)} fields, expected at least {MIN_FIELDS}"
        )

    link_id = parts[3] if len(parts) > 3 else ""
    return TrackingToken(parts[0], parts[1], parts[2], link_id)


def sign(token: str, secret: Optional[str] = None) -> str:
    """Truncated HMAC-SHA256 signature of a token."""
    key = secret if secret is not None else settings.tracking_token_secret
    return hmac.new(key.encode(), token.encode(), hashlib.sha256).hexdigest()[:16]


def verify(token: str, signature: Optional[str], secret: Optional[str] = None) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(sign(token, secret), signature)


def signature_query(token: str) -> str:
    """``?sig=...`` suffix for tracking URLs, empty when signing is off."""
    if not settings.tracking_token_secret:
        return ""
    return f"?sig={sign(token)}"


def decode_verified(token: str, signature: Optional[str] = None) -> TrackingToken:
    """Decode a token presented by a client, enforcing the signature if required."""
    if settings.tracking_require_signature and not verify(token, signature):
        raise MalformedTokenError("Missing or invalid tracking token signature")
    return decode(token)
