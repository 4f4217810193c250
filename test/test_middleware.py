"""
Tests for middleware modules
"""

import json
import logging

from fastapi import FastAPI
from fastapi.testclient import TestClient

from consent_lineage.middleware.logging import (
    RequestIdFilter,
    StructuredFormatter,
    StructuredLoggingMiddleware,
    request_id_var,
)


def make_app() -> FastAPI:
    app = FastAPI()

    @app.get("/ping")
    async def ping():
        return {"message": "pong"}

    @app.get("/health")
    async def health():
        return {"status": "healthy"}

    app.add_middleware(StructuredLoggingMiddleware)
    return app


class TestStructuredLoggingMiddleware:
    """Test request logging"""

    def test_request_id_echoed(self):
        client = TestClient(make_app())
        response = client.get("/ping", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    def test_request_id_generated(self):
        client = TestClient(make_app())
        response = client.get("/ping")
        assert len(response.headers["X-Request-ID"]) == 36

    def test_request_logged(self, caplog):
        client = TestClient(make_app())
        with caplog.at_level(logging.INFO, logger="consent_lineage.access"):
            client.get("/ping", headers={"X-Forwarded-For": "10.0.0.1, 10.0.0.2"})

        records = [r for r in caplog.records if r.name == "consent_lineage.access"]
        assert len(records) == 1
        assert records[0].path == "/ping"
        assert records[0].status_code == 200
        assert records[0].client_ip == "10.0.0.1"

    def test_health_not_logged(self, caplog):
        client = TestClient(make_app())
        with caplog.at_level(logging.INFO, logger="consent_lineage.access"):
            client.get("/health")
        assert not [r for r in caplog.records if r.name == "consent_lineage.access"]


class TestStructuredFormatter:
    """Test JSON log lines"""

    def test_extra_fields_included(self):
        record = logging.LogRecord("consent_lineage", logging.INFO, __file__, 1, "Validated", None, None)
        record.subject_id = "device-1"
        record.transition = "validate"
        record.request_id = "req-1"

        line = json.loads(StructuredFormatter().format(record))
        assert line["message"] == "Validated"
        assert line["subject_id"] == "device-1"
        assert line["transition"] == "validate"
        assert line["request_id"] == "req-1"
        assert "attempt" not in line

    def test_request_id_filter(self):
        token = request_id_var.set("req-9")
        try:
            record = logging.LogRecord("x", logging.INFO, __file__, 1, "msg", None, None)
            assert RequestIdFilter().filter(record)
            assert record.request_id == "req-9"
        finally:
            request_id_var.reset(token)
