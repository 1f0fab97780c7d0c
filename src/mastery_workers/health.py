"""Minimal async HTTP health endpoint for container healthchecks.

Uses raw asyncio.start_server. ``/health`` pings the database and reports
metrics; ``/health/dlq`` reports the DLQ monitor's cached status without
scanning.
"""

import asyncio
import json
import logging

import psycopg

from .dlq_monitor import UNHEALTHY, DlqMonitor
from .metrics import get_metrics

logger = logging.getLogger(__name__)

_HTTP_200 = "HTTP/1.1 200 OK\r\nContent-Type: application/json\r\n"
_HTTP_503 = "HTTP/1.1 503 Service Unavailable\r\nContent-Type: application/json\r\n"
_HTTP_404 = "HTTP/1.1 404 Not Found\r\nContent-Type: application/json\r\n"


async def _check_db(db_url: str) -> str:
    """Try SELECT 1 with a 2s timeout. Returns 'ok' or 'error'."""
    try:
        async with asyncio.timeout(2):
            async with await psycopg.AsyncConnection.connect(
                db_url, autocommit=True
            ) as conn:
                await conn.execute("SELECT 1")
        return "ok"
    except Exception:
        return "error"


def _response(status_line: str, payload: dict) -> str:
    body = json.dumps(payload, default=str)
    return f"{status_line}Content-Length: {len(body.encode())}\r\n\r\n{body}"


def dlq_response(monitor: DlqMonitor | None) -> str:
    if monitor is None:
        return _response(_HTTP_404, {"error": "dlq_monitor_disabled"})
    report = monitor.health()
    status_line = _HTTP_503 if report.status == UNHEALTHY else _HTTP_200
    return _response(
        status_line,
        {"status": report.status, "description": report.description, "dlq": report.data},
    )


async def health_response(db_url: str) -> str:
    db_status = await _check_db(db_url)
    metrics = get_metrics()
    status = "ok" if db_status == "ok" else "degraded"
    status_line = _HTTP_200 if status == "ok" else _HTTP_503
    return _response(
        status_line,
        {
            "status": status,
            "uptime_seconds": metrics["uptime_seconds"],
            "db": db_status,
            "metrics": metrics,
        },
    )


async def _handle_request(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    db_url: str,
    dlq_monitor: DlqMonitor | None,
) -> None:
    try:
        request_line = await asyncio.wait_for(reader.readline(), timeout=5)
        request_str = request_line.decode("utf-8", errors="replace")

        # Parse method and path from "GET /health HTTP/1.1\r\n"
        parts = request_str.strip().split()
        path = parts[1] if len(parts) >= 2 else "/"

        if path == "/health":
            response = await health_response(db_url)
        elif path == "/health/dlq":
            response = dlq_response(dlq_monitor)
        else:
            response = _response(_HTTP_404, {"error": "not_found"})

        writer.write(response.encode())
        await writer.drain()
    except Exception:
        logger.debug("Health endpoint request error", exc_info=True)
    finally:
        writer.close()
        await writer.wait_closed()


async def start_health_server(
    port: int,
    db_url: str,
    dlq_monitor: DlqMonitor | None = None,
) -> asyncio.Server:
    """Start the health HTTP server. Returns the asyncio.Server for lifecycle management."""

    async def handler(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        await _handle_request(reader, writer, db_url, dlq_monitor)

    server = await asyncio.start_server(handler, "0.0.0.0", port)
    logger.info("Health endpoint listening on port %d", port)
    return server
