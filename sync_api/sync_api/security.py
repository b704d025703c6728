"""HMAC-SHA256 bearer tokens.

Tokens are issued by the account service; this module only needs to verify
them.  :func:`sign_token` exists for local tooling and tests.

Wire format::

    <urlsafe-b64(payload JSON)>.<hex HMAC-SHA256(payload JSON)>

The payload must carry ``tenant_id`` and ``exp`` (epoch seconds); ``sub``
is optional.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Any


class TokenError(Exception):
    """Raised when a token is malformed, forged or expired."""


@dataclass(frozen=True)
class TokenClaims:
    tenant_id: str
    sub: str
    exp: float


def _signature(secret: str, payload_json: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), payload_json, hashlib.sha256).hexdigest()


def sign_token(
    secret: str,
    tenant_id: str,
    sub: str = "anonymous",
    ttl_seconds: int = 3600,
    **extra: Any,
) -> str:
    """Return a signed token for *tenant_id* valid for *ttl_seconds*."""
    now = time.time()
    payload: dict[str, Any] = {"tenant_id": tenant_id, "sub": sub, "iat": now, "exp": now + ttl_seconds, **extra}
    payload_json = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    encoded = base64.urlsafe_b64encode(payload_json).decode("ascii")
    return f"{encoded}.{_signature(secret, payload_json)}"


def verify_token(secret: str, token: str, *, now: float | None = None) -> TokenClaims:
    """Validate *token* and return its claims.

    Raises
    ------
    TokenError
        If the token cannot be decoded, the signature does not match, a
        required claim is missing, or the token has expired.
    """
    encoded, sep, signature = token.rpartition(".")
    if not sep or not encoded or not signature:
        raise TokenError("Malformed token")

    try:
        payload_json = base64.urlsafe_b64decode(encoded.encode("ascii"))
    except (binascii.Error, UnicodeEncodeError, ValueError) as exc:
        raise TokenError("Malformed token") from exc

    if not hmac.compare_digest(_signature(secret, payload_json), signature):
        raise TokenError("Invalid token signature")

    try:
        payload = json.loads(payload_json)
    except ValueError as exc:
        raise TokenError("Malformed token payload") from exc
    if not isinstance(payload, dict):
        raise TokenError("Malformed token payload")

    tenant_id = payload.get("tenant_id")
    exp = payload.get("exp")
    if not isinstance(tenant_id, str) or not tenant_id:
        raise TokenError("Token is missing tenant_id")
    if not isinstance(exp, int | float):
        raise TokenError("Token is missing exp")

    current = time.time() if now is None else now
    if exp <= current:
        raise TokenError("Token has expired")

    return TokenClaims(tenant_id=tenant_id, sub=str(payload.get("sub") or "anonymous"), exp=float(exp))
