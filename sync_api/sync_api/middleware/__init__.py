"""Middleware components for the sync API."""

from __future__ import annotations

from sync_api.middleware.auth import AuthenticationMiddleware
from sync_api.middleware.json_formatter import JSONFormatter
from sync_api.middleware.logging import RequestLoggingMiddleware

__all__ = [
    "AuthenticationMiddleware",
    "JSONFormatter",
    "RequestLoggingMiddleware",
]
