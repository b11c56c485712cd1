"""
Tests for the structured logging middleware and formatter.
"""

import json
import logging

import pytest
from httpx import ASGITransport, AsyncClient

from app.middleware.logging import RequestIdFilter, StructuredFormatter, get_request_id, request_id_var
from main import app


class TestStructuredFormatter:
    def _record(self, **extra) -> logging.LogRecord:
        record = logging.LogRecord("app.services.sse_manager", logging.INFO, __file__, 1, "client %s", ("A",), None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_formats_json(self):
        output = json.loads(StructuredFormatter().format(self._record()))
        assert output["level"] == "INFO"
        assert output["logger"] == "app.services.sse_manager"
        assert output["message"] == "client A"
        assert "timestamp" in output

    def test_includes_sse_extra_fields(self):
        record = self._record(client_id="A", event="note", delivered=2, total_connections=3)
        output = json.loads(StructuredFormatter().format(record))
        assert output["client_id"] == "A"
        assert output["event"] == "note"
        assert output["delivered"] == 2
        assert output["total_connections"] == 3

    def test_ignores_unknown_extra_fields(self):
        output = json.loads(StructuredFormatter().format(self._record(secret="x")))
        assert "secret" not in output


class TestRequestId:
    def test_filter_copies_request_id(self):
        token = request_id_var.set("req-123")
        try:
            record = logging.LogRecord("x", logging.INFO, __file__, 1, "msg", (), None)
            assert RequestIdFilter().filter(record) is True
            assert record.request_id == "req-123"
            assert get_request_id() == "req-123"
        finally:
            request_id_var.reset(token)

    @pytest.mark.asyncio
    async def test_request_id_header_echoed(self):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.post("/api/v1/sse/generate-id", headers={"X-Request-ID": "abc-123"})

        assert response.headers["X-Request-ID"] == "abc-123"

    @pytest.mark.asyncio
    async def test_request_id_generated_when_missing(self):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.post("/api/v1/sse/generate-id")

        assert response.headers.get("X-Request-ID")
