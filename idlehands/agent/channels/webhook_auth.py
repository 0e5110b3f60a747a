"""
Webhook Auth — Credential checks for webhook-mode channels.

A webhook channel with a blank secret would accept any caller, so these
channels refuse to start instead.
"""

import base64
import hashlib
import hmac
from typing import Any, Mapping, Optional, Union


class ChannelSecurityError(Exception):
    """A channel refused to start because a credential is missing or blank."""


def require_webhook_credentials(label: str, credentials: Mapping[str, Optional[str]]) -> None:
    """
    Raise ChannelSecurityError naming the first blank credential.

    ``credentials`` maps a human-readable credential name to its value, e.g.
    ``{"channel secret": cfg.channel_secret}``.
    """
    for name, value in credentials.items():
        if value is None or not str(value).strip():
            raise ChannelSecurityError(f"{label} webhook mode requires a non-empty {name}.")


def sign_body(secret: str, body: Union[bytes, str]) -> str:
    """Base64 HMAC-SHA256 of ``body`` keyed by ``secret``."""
    raw = body.encode("utf-8") if isinstance(body, str) else body
    digest = hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_hmac_signature(secret: str, body: Union[bytes, str], signature: Optional[str]) -> bool:
    if not secret or not signature:
        return False
    return hmac.compare_digest(sign_body(secret, body), signature.strip())


def verify_token(expected: str, provided: Any) -> bool:
    """Constant-time token comparison; a blank expected token never matches."""
    if not expected or not isinstance(provided, str) or not provided:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))
