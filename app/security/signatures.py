"""
Twilio webhook signature helpers.

Twilio signs each webhook with HMAC-SHA1 over the full request URL followed
by every POST parameter, sorted by name, appended as name+value. The digest
is base64-encoded into the X-Twilio-Signature header.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
from collections.abc import Mapping

from app.config import settings

TWILIO_SIGNATURE_HEADER = "x-twilio-signature"

__all__ = [
    "TWILIO_SIGNATURE_HEADER",
    "SignatureError",
    "compute_twilio_signature",
    "verify_twilio_signature",
]


class SignatureError(RuntimeError):
    """Raised when signature prerequisites are not satisfied."""


def _auth_token_bytes(auth_token: str | None) -> bytes:
    token = auth_token if auth_token is not None else settings.TWILIO_AUTH_TOKEN
    if not token:
        raise SignatureError("TWILIO_AUTH_TOKEN is not configured")
    return token.encode("utf-8")


def compute_twilio_signature(
    url: str, params: Mapping[str, str], *, auth_token: str | None = None
) -> str:
    """
    Compute the base64 HMAC-SHA1 Twilio would send for ``url`` and ``params``.

    Args:
        url: Full public URL including query string.
        params: Form fields of the POST body.
        auth_token: Override for settings.TWILIO_AUTH_TOKEN.
    """
    payload = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(_auth_token_bytes(auth_token), payload.encode("utf-8"), hashlib.sha1)
    return base64.b64encode(digest.digest()).decode("ascii")


def verify_twilio_signature(
    signature: str | None,
    url: str,
    params: Mapping[str, str],
    *,
    auth_token: str | None = None,
) -> bool:
    """Constant-time comparison of ``signature`` against the expected digest."""
    if not signature:
        return False
    expected = compute_twilio_signature(url, params, auth_token=auth_token)
    return hmac.compare_digest(expected, signature)
