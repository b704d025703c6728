"""API router modules for the GST invoice sync service."""

from __future__ import annotations

from sync_api.routers import health, invoices, sync, usage

__all__ = [
    "health",
    "invoices",
    "sync",
    "usage",
]
