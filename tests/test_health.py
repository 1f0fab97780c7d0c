"""Tests for the health HTTP endpoint."""

import asyncio
import json
from datetime import UTC, datetime

import pytest

from mastery_workers import health
from mastery_workers.dlq_monitor import DlqMonitor
from mastery_workers.health import dlq_response, health_response, start_health_server
from mastery_workers.models import DlqTopicStatus

NOW = datetime(2026, 3, 9, 12, 0, tzinfo=UTC)


def _parse(response: str) -> tuple[str, dict]:
    head, body = response.split("\r\n\r\n", 1)
    return head.split("\r\n")[0], json.loads(body)


def _monitor(count: int) -> DlqMonitor:
    monitor = DlqMonitor("postgresql://unused", clock=lambda: NOW)
    monitor.record_scan([DlqTopicStatus("signals-batch", count, "queue_messages")])
    return monitor


class TestDlqResponse:
    def test_disabled_monitor(self):
        status_line, body = _parse(dlq_response(None))
        assert status_line == "HTTP/1.1 404 Not Found"
        assert body == {"error": "dlq_monitor_disabled"}

    def test_healthy(self):
        status_line, body = _parse(dlq_response(_monitor(3)))
        assert status_line == "HTTP/1.1 200 OK"
        assert body["status"] == "healthy"
        assert body["dlq"]["total_failed"] == 3

    def test_degraded_is_still_200(self):
        status_line, body = _parse(dlq_response(_monitor(75)))
        assert status_line == "HTTP/1.1 200 OK"
        assert body["status"] == "degraded"

    def test_unhealthy_is_503(self):
        status_line, body = _parse(dlq_response(_monitor(250)))
        assert status_line == "HTTP/1.1 503 Service Unavailable"
        assert body["dlq"]["topics"][0]["topic_name"] == "signals-batch"


class TestHealthResponse:
    @pytest.mark.asyncio
    async def test_ok_when_db_reachable(self, monkeypatch):
        async def check_db(db_url):
            return "ok"

        monkeypatch.setattr(health, "_check_db", check_db)
        status_line, body = _parse(await health_response("postgresql://test"))
        assert status_line == "HTTP/1.1 200 OK"
        assert body["status"] == "ok"
        assert "batches_processed" in body["metrics"]

    @pytest.mark.asyncio
    async def test_degraded_when_db_unreachable(self, monkeypatch):
        async def check_db(db_url):
            return "error"

        monkeypatch.setattr(health, "_check_db", check_db)
        status_line, body = _parse(await health_response("postgresql://test"))
        assert status_line == "HTTP/1.1 503 Service Unavailable"
        assert (body["status"], body["db"]) == ("degraded", "error")


class TestHealthServer:
    @pytest.mark.asyncio
    async def test_serves_dlq_status_over_http(self):
        server = await start_health_server(0, "postgresql://unused", _monitor(120))
        port = server.sockets[0].getsockname()[1]
        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", port)
            writer.write(b"GET /health/dlq HTTP/1.1\r\nHost: localhost\r\n\r\n")
            await writer.drain()
            raw = await asyncio.wait_for(reader.read(), timeout=5)
            writer.close()
            await writer.wait_closed()
        finally:
            server.close()
            await server.wait_closed()

        status_line, body = _parse(raw.decode())
        assert status_line == "HTTP/1.1 503 Service Unavailable"
        assert body["status"] == "unhealthy"

    @pytest.mark.asyncio
    async def test_unknown_path_is_404(self):
        server = await start_health_server(0, "postgresql://unused")
        port = server.sockets[0].getsockname()[1]
        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", port)
            writer.write(b"GET /metrics HTTP/1.1\r\n\r\n")
            await writer.drain()
            raw = await asyncio.wait_for(reader.read(), timeout=5)
            writer.close()
            await writer.wait_closed()
        finally:
            server.close()
            await server.wait_closed()

        status_line, body = _parse(raw.decode())
        assert status_line == "HTTP/1.1 404 Not Found"
        assert body == {"error": "not_found"}
