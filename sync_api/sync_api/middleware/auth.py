"""Authentication middleware that validates signed bearer tokens.

Extracts ``Authorization: Bearer <token>`` from every request, verifies it
via :func:`sync_api.security.verify_token`, and populates ``request.state``
with ``tenant_id`` and ``sub`` (user identity).

Endpoints explicitly listed in ``_PUBLIC_PATHS`` bypass authentication.
"""

from __future__ import annotations

import logging
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from sync_core.state.database import is_valid_tenant_id

from sync_api.security import TokenError, verify_token

logger = logging.getLogger(__name__)

# Paths that do not require authentication.
_PUBLIC_PATHS: frozenset[str] = frozenset(
    {
        "/api/v1/health",
        "/ready",
        "/docs",
        "/openapi.json",
        "/redoc",
        "/favicon.ico",
    }
)

# Prefixes that skip auth (e.g. static docs assets).
_PUBLIC_PREFIXES: tuple[str, ...] = (
    "/docs",
    "/redoc",
)


def _is_public_path(path: str) -> bool:
    """Return ``True`` if the path should bypass authentication."""
    if path in _PUBLIC_PATHS:
        return True
    return any(path.startswith(prefix) for prefix in _PUBLIC_PREFIXES)


def _unauthorized(detail: str) -> JSONResponse:
    return JSONResponse(
        status_code=401,
        content={"detail": detail},
        headers={"WWW-Authenticate": "Bearer"},
    )


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """Starlette middleware that enforces Bearer token authentication.

    On each request the middleware:

    1. Checks whether the path is public (health, docs) and skips auth.
    2. Extracts the ``Authorization: Bearer <token>`` header.
    3. Verifies the token signature and expiry against *secret*.
    4. Stores ``tenant_id`` and ``sub`` on ``request.state``.
    5. Returns a 401 JSON response on failure.
    """

    def __init__(self, app: Any, secret: str) -> None:
        super().__init__(app)
        self._secret = secret

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.method == "OPTIONS" or _is_public_path(request.url.path):
            return await call_next(request)

        auth_header = request.headers.get("authorization", "")
        scheme, _, token = auth_header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return _unauthorized("Missing or invalid Authorization header")

        try:
            claims = verify_token(self._secret, token.strip())
        except TokenError as exc:
            logger.info("Rejected token for %s %s: %s", request.method, request.url.path, exc)
            return _unauthorized(str(exc))

        if not is_valid_tenant_id(claims.tenant_id):
            return _unauthorized("Invalid tenant_id claim")

        request.state.tenant_id = claims.tenant_id
        request.state.sub = claims.sub
        return await call_next(request)
