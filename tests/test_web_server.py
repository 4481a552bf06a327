"""API server tests over real sockets: auth, rate limit, tracking, SSE."""
from __future__ import annotations

import asyncio
import contextlib
import json
from pathlib import Path
from typing import Any, AsyncIterator
from unittest.mock import AsyncMock, patch

import pytest

from conftest import make_config, wait_for
from k11.app import K11App


@contextlib.asynccontextmanager
async def _running(tmp_path: Path, **sections: dict[str, Any]) -> AsyncIterator[K11App]:
    app = K11App(config=make_config(tmp_path, **sections))
    await app.server.start()
    try:
        yield app
    finally:
        await app.streamer.close_all()
        app.streamer.close()
        await app.server.stop()
        app.event_log.close()


async def _http(
    port: int,
    method: str,
    path: str,
    body: Any = None,
    headers: dict[str, str] | None = None,
    raw_body: bytes | None = None,
) -> tuple[int, dict[str, Any] | None]:
    """Send one request and return (status_code, parsed JSON body)."""
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    payload = raw_body if raw_body is not None else (json.dumps(body).encode() if body is not None else b"")
    lines = [f"{method} {path} HTTP/1.1", "Host: 127.0.0.1", f"Content-Length: {len(payload)}"]
    lines += [f"{k}: {v}" for k, v in (headers or {}).items()]
    writer.write(("\r\n".join(lines) + "\r\n\r\n").encode() + payload)
    await writer.drain()

    data = await asyncio.wait_for(reader.read(), timeout=5.0)
    writer.close()
    try:
        await writer.wait_closed()
    except Exception:
        pass

    head, _, content = data.partition(b"\r\n\r\n")
    status = int(head.split(b" ", 2)[1])
    return status, json.loads(content) if content else None


# ---- Basic requests ----


@pytest.mark.asyncio
async def test_health_over_socket(tmp_path: Path) -> None:
    async with _running(tmp_path) as app:
        status, body = await _http(app.server.port, "GET", "/health")
        assert status == 200
        assert body["status"] == "ok"


@pytest.mark.asyncio
async def test_requests_are_tracked_and_logged(tmp_path: Path) -> None:
    async with _running(tmp_path) as app:
        await _http(app.server.port, "GET", "/api/status")
        await _http(app.server.port, "GET", "/api/nope")

        snap = app.request_stats.snapshot()
        assert snap["total"] == 2
        assert snap["ok"] == 1
        assert snap["errors4xx"] == 1
        assert "GET /api/status" in snap["byRoute"]

        http = [e for e in app.event_log.query(module="HTTP") if "->" in e.message]
        assert http[0].level == "warn"
        assert http[0].message.startswith("GET /api/nope -> 404 (")
        assert http[1].level == "debug"


@pytest.mark.asyncio
async def test_invalid_json_is_400(tmp_path: Path) -> None:
    async with _running(tmp_path) as app:
        status, body = await _http(app.server.port, "POST", "/api/system/log", raw_body=b"{nope")
        assert status == 400
        assert body["ok"] is False


@pytest.mark.asyncio
async def test_lone_surrogate_message_round_trips(tmp_path: Path) -> None:
    async with _running(tmp_path) as app:
        port = app.server.port
        status, _ = await _http(port, "POST", "/api/system/log", raw_body=b'{"message": "\\ud800"}')
        assert status == 200

        status, body = await _http(port, "GET", "/api/system/logs?module=FRONTEND")
        assert status == 200
        assert body["logs"][0]["message"] == "\\ud800"

        status, _ = await _http(port, "DELETE", "/api/system/logs")
        assert status == 200


@pytest.mark.asyncio
async def test_oversized_body_is_413(tmp_path: Path) -> None:
    async with _running(tmp_path, server={"max_body_bytes": 16}) as app:
        reader, writer = await asyncio.open_connection("127.0.0.1", app.server.port)
        # headers only: the server must refuse before reading the body
        writer.write(b"POST /api/system/log HTTP/1.1\r\nHost: x\r\nContent-Length: 100\r\n\r\n")
        await writer.drain()
        data = await asyncio.wait_for(reader.read(), timeout=5.0)
        writer.close()
        assert data.startswith(b"HTTP/1.1 413")


@pytest.mark.asyncio
async def test_cors_preflight(tmp_path: Path) -> None:
    async with _running(tmp_path) as app:
        reader, writer = await asyncio.open_connection("127.0.0.1", app.server.port)
        writer.write(b"OPTIONS /api/data/all HTTP/1.1\r\nHost: x\r\n\r\n")
        await writer.drain()
        data = await asyncio.wait_for(reader.read(), timeout=5.0)
        writer.close()
        assert data.startswith(b"HTTP/1.1 204")
        assert b"Access-Control-Allow-Origin: *" in data


@pytest.mark.asyncio
async def test_unhandled_error_is_500(tmp_path: Path) -> None:
    async with _running(tmp_path) as app:
        with patch("k11.web.routes.handle_route", AsyncMock(side_effect=RuntimeError("kaboom"))):
            status, body = await _http(app.server.port, "GET", "/api/status")
        assert status == 500
        assert body == {"ok": False, "error": "Internal server error"}
        entry = app.event_log.query(module="SERVER")[0]
        assert entry.level == "critical"
        assert "kaboom" in entry.message
        assert app.request_stats.snapshot()["errors5xx"] == 1


# ---- Auth and rate limit ----


@pytest.mark.asyncio
async def test_token_required(tmp_path: Path) -> None:
    async with _running(tmp_path, auth={"token": "s3cr3t"}) as app:
        port = app.server.port
        denied, body = await _http(port, "GET", "/api/system/logs")
        assert denied == 401
        assert body["ok"] is False

        allowed, _ = await _http(port, "GET", "/api/system/logs", headers={"Authorization": "Bearer s3cr3t"})
        via_query, _ = await _http(port, "GET", "/api/system/logs?_token=s3cr3t")
        public, _ = await _http(port, "GET", "/api/status")
        assert (allowed, via_query, public) == (200, 200, 200)


@pytest.mark.asyncio
async def test_rate_limit_blocks(tmp_path: Path) -> None:
    async with _running(tmp_path, rate_limit={"max_requests": 2}) as app:
        port = app.server.port
        s1, _ = await _http(port, "GET", "/api/status")
        s2, _ = await _http(port, "GET", "/api/status")
        s3, body = await _http(port, "GET", "/api/status")
        assert (s1, s2, s3) == (200, 200, 429)
        assert body["error"] == "Too many requests. Try again in a minute."
        assert app.event_log.query(module="RATE-LIMIT")[0].level == "warn"

        # not under /api: never limited
        s4, _ = await _http(port, "GET", "/health")
        assert s4 == 200


# ---- SSE ----


async def _read_frame(reader: asyncio.StreamReader) -> str:
    return (await asyncio.wait_for(reader.readuntil(b"\n\n"), timeout=5.0)).decode()


@pytest.mark.asyncio
async def test_stream_end_to_end(tmp_path: Path) -> None:
    async with _running(tmp_path) as app:
        app.event_log.info("TEST", "before")

        reader, writer = await asyncio.open_connection("127.0.0.1", app.server.port)
        writer.write(b"GET /api/system/stream HTTP/1.1\r\nHost: x\r\n\r\n")
        await writer.drain()

        headers = (await asyncio.wait_for(reader.readuntil(b"\r\n\r\n"), timeout=5.0)).decode()
        assert headers.startswith("HTTP/1.1 200")
        assert "Content-Type: text/event-stream" in headers

        ack = json.loads((await _read_frame(reader))[len("data: "):])
        assert ack["type"] == "connected"

        app.event_log.info("TEST", "live")
        seen: list[str] = []
        while "live" not in seen:
            frame = await _read_frame(reader)
            if frame.startswith("data: "):
                entry = json.loads(frame[len("data: "):])
                if entry.get("module") == "TEST":
                    seen.append(entry["message"])
        assert seen == ["before", "live"]
        assert app.streamer.client_count == 1

        writer.close()
        await wait_for(lambda: app.streamer.client_count == 0)
        # long-lived streams stay out of request stats
        assert "GET /api/system/stream" not in app.request_stats.snapshot()["byRoute"]
