"""JSON log formatter for log aggregation.

Emits each log record as a single-line JSON object so that aggregators can
index fields without regex parsing.

Activate by setting ``SYNC_STRUCTURED_LOGGING=true``.  When enabled the
application replaces the root handlers with a ``StreamHandler`` using this
formatter.

Output schema per line::

    {
        "timestamp": "2025-05-15T12:34:56.789012+00:00",
        "level": "INFO",
        "logger": "sync_api.access",
        "message": "request completed",
        "request": { ... },        // present when emitted by RequestLoggingMiddleware
        "event": { ... },          // present when emitted by the event bus audit handler
        "exc_info": "Traceback ..."  // present only on exceptions
    }
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any

# Structured ``extra=`` keys copied verbatim into the output.
_STRUCTURED_FIELDS: tuple[str, ...] = ("request", "event", "tenant_id")


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field in _STRUCTURED_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)
