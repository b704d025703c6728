"""Tests for the JSON log formatter."""

from __future__ import annotations

import json
import logging
import sys

import pytest
from sync_api.middleware.json_formatter import JSONFormatter


@pytest.fixture
def formatter() -> JSONFormatter:
    return JSONFormatter()


def _record(name: str = "test", level: int = logging.INFO, msg: str = "msg", exc_info=None) -> logging.LogRecord:
    return logging.LogRecord(
        name=name,
        level=level,
        pathname="test.py",
        lineno=1,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )


class TestJSONFormatter:
    """Verify structured JSON output from the formatter."""

    def test_basic_format(self, formatter: JSONFormatter) -> None:
        data = json.loads(formatter.format(_record(name="test.logger", msg="test message")))

        assert data["level"] == "INFO"
        assert data["logger"] == "test.logger"
        assert data["message"] == "test message"
        assert "+00:00" in data["timestamp"]

    def test_single_line_output(self, formatter: JSONFormatter) -> None:
        output = formatter.format(_record(level=logging.WARNING))
        assert "\n" not in output

    def test_request_context_included(self, formatter: JSONFormatter) -> None:
        record = _record(name="sync_api.access", msg="request completed")
        record.request = {  # type: ignore[attr-defined]
            "method": "POST",
            "path": "/api/v1/sync/batch",
            "status_code": 200,
            "tenant_id": "acme",
        }
        data = json.loads(formatter.format(record))

        assert data["request"]["path"] == "/api/v1/sync/batch"
        assert data["request"]["tenant_id"] == "acme"

    def test_event_context_included(self, formatter: JSONFormatter) -> None:
        record = _record(msg="AUDIT: invoice.issued")
        record.event = {"type": "invoice.issued", "tenant_id": "acme", "data": {"invoiceId": "inv-1"}}  # type: ignore[attr-defined]
        data = json.loads(formatter.format(record))

        assert data["event"]["type"] == "invoice.issued"
        assert data["event"]["data"]["invoiceId"] == "inv-1"

    def test_absent_context_omitted(self, formatter: JSONFormatter) -> None:
        data = json.loads(formatter.format(_record()))
        assert "request" not in data
        assert "event" not in data
        assert "exc_info" not in data

    def test_exception_info_included(self, formatter: JSONFormatter) -> None:
        try:
            raise ValueError("test error")
        except ValueError:
            exc_info = sys.exc_info()

        data = json.loads(formatter.format(_record(level=logging.ERROR, exc_info=exc_info)))

        assert "ValueError: test error" in data["exc_info"]
        assert "Traceback" in data["exc_info"]

    def test_non_serialisable_values_stringified(self, formatter: JSONFormatter) -> None:
        record = _record()
        record.request = {"client": object()}  # type: ignore[attr-defined]
        data = json.loads(formatter.format(record))
        assert data["request"]["client"].startswith("<object")
