"""API HTTP server -- asyncio-based, one request per connection plus SSE streams."""
from __future__ import annotations

import asyncio
import json
import time
import traceback
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable
from urllib.parse import parse_qs, urlparse

from k11.auth import TokenAuth
from k11.event_log import EventLog
from k11.log import logger
from k11.rate_limiter import SlidingWindowRateLimiter
from k11.request_stats import RequestStats

_MAX_HEADER_LINES = 64
_PRUNE_EVERY = 500  # requests between rate limiter cleanups

_STATUS_TEXT = {
    200: "OK", 204: "No Content", 400: "Bad Request", 401: "Unauthorized",
    404: "Not Found", 413: "Payload Too Large", 429: "Too Many Requests",
    500: "Internal Server Error",
}


class BadRequest(Exception):
    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = status


@dataclass
class Request:
    method: str
    path: str
    raw_path: str
    query: dict[str, str] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    client_ip: str = ""

    def json(self) -> Any:
        """Parsed JSON body; None for an empty body. Raises BadRequest on invalid JSON."""
        if not self.body:
            return None
        try:
            return json.loads(self.body)
        except ValueError as e:
            raise BadRequest(400, f"invalid JSON body: {e}") from e


@dataclass
class SSEResponse:
    """Sentinel: route handler wants to stream SSE to the client."""
    handler: Callable[[asyncio.StreamReader, asyncio.StreamWriter], Awaitable[None]]


class WriterSink:
    """StreamSink over an asyncio StreamWriter."""

    def __init__(self, writer: asyncio.StreamWriter) -> None:
        self._writer = writer

    async def send(self, chunk: str) -> None:
        if self._writer.is_closing():
            raise ConnectionResetError("stream writer closed")
        self._writer.write(chunk.encode("utf-8", "backslashreplace"))
        await self._writer.drain()


class APIServer:
    """HTTP front door: parsing, rate limiting, auth, routing, request tracking.

    Uses asyncio.start_server, no web framework. JSON responses close the
    connection; SSE responses keep it open until either side goes away.
    """

    def __init__(
        self,
        app: Any,
        event_log: EventLog,
        request_stats: RequestStats,
        auth: TokenAuth,
        rate_limiter: SlidingWindowRateLimiter,
        host: str = "0.0.0.0",
        port: int = 3000,
        cors_origin: str = "*",
        max_body: int = 2 * 1024 * 1024,
        exclude_paths: tuple[str, ...] = (),
        quiet_paths: tuple[str, ...] = (),
    ) -> None:
        self._app = app
        self._log = event_log
        self._stats = request_stats
        self._auth = auth
        self._limiter = rate_limiter
        self._host = host
        self._port = port
        self._cors_origin = cors_origin
        self._max_body = max_body
        self._exclude_paths = exclude_paths
        self._quiet_paths = quiet_paths
        self._server: asyncio.Server | None = None
        self._handled = 0

    @property
    def port(self) -> int:
        """Bound port (differs from the configured one when that was 0)."""
        if self._server and self._server.sockets:
            return self._server.sockets[0].getsockname()[1]
        return self._port

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle, self._host, self._port)
        self._log.info("BOOT", f"Server listening on http://{self._host}:{self.port}")

    async def stop(self) -> None:
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        started = time.perf_counter()
        req: Request | None = None
        status = 0
        sse_handled = False
        try:
            try:
                req = await self._read_request(reader, writer)
            except BadRequest as e:
                status = e.status
                await self._respond(writer, {"ok": False, "error": str(e)}, status=status)
                return
            if req is None:
                return

            result = await self._dispatch(req)
            if isinstance(result, SSEResponse):
                sse_handled = True
                status = 200
                await self._start_sse(writer)
                await result.handler(reader, writer)
            else:
                status = result.pop("status", 200) if isinstance(result.get("status"), int) else 200
                await self._respond(writer, result, status=status)
        except (asyncio.TimeoutError, asyncio.IncompleteReadError, ConnectionError, OSError) as e:
            logger.debug(f"Connection dropped: {e}")
        finally:
            if req is not None and status:
                self._track(req, status, (time.perf_counter() - started) * 1000)
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass
            if sse_handled:
                logger.debug(f"SSE connection from {req.client_ip if req else '?'} closed")

    async def _read_request(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> Request | None:
        line = await asyncio.wait_for(reader.readline(), timeout=5.0)
        if not line:
            return None
        parts = line.decode("utf-8", errors="replace").split()
        if len(parts) < 2:
            raise BadRequest(400, "malformed request line")
        method = parts[0].upper()
        raw_path = parts[1]

        headers: dict[str, str] = {}
        for _ in range(_MAX_HEADER_LINES):
            h = await asyncio.wait_for(reader.readline(), timeout=5.0)
            if h in (b"\r\n", b"\n", b""):
                break
            decoded = h.decode("utf-8", errors="replace").strip()
            if ":" in decoded:
                k, v = decoded.split(":", 1)
                headers[k.strip().lower()] = v.strip()
        else:
            raise BadRequest(400, "too many headers")

        try:
            content_length = int(headers.get("content-length", "0") or 0)
        except ValueError:
            raise BadRequest(400, "invalid content-length") from None
        if content_length > self._max_body:
            raise BadRequest(413, "payload too large")
        body = b""
        if content_length > 0:
            body = await asyncio.wait_for(reader.readexactly(content_length), timeout=10.0)

        parsed = urlparse(raw_path)
        query = {k: v[0] for k, v in parse_qs(parsed.query).items()}
        peer = writer.get_extra_info("peername")
        client_ip = peer[0] if isinstance(peer, tuple) and peer else ""
        return Request(
            method=method,
            path=parsed.path or "/",
            raw_path=raw_path,
            query=query,
            headers=headers,
            body=body,
            client_ip=client_ip,
        )

    async def _dispatch(self, req: Request) -> Any:
        if req.method == "OPTIONS":
            return {"status": 204}

        if req.path.startswith("/api/"):
            self._handled += 1
            if self._handled % _PRUNE_EVERY == 0:
                self._limiter.prune()
            allowed, retry_after = self._limiter.check(req.client_ip or "unknown")
            if not allowed:
                self._log.warn("RATE-LIMIT", "Limit exceeded", {"ip": req.client_ip, "path": req.path})
                return {
                    "ok": False,
                    "error": "Too many requests. Try again in a minute.",
                    "retryAfter": round(retry_after, 1),
                    "status": 429,
                }

        if not self._auth.check(req.path, req.raw_path, req.headers, req.client_ip):
            return {
                "ok": False,
                "error": "Unauthorized. Send the token as Authorization: Bearer <token>",
                "status": 401,
            }

        from k11.web.routes import handle_route
        try:
            return await handle_route(self._app, req)
        except BadRequest as e:
            return {"ok": False, "error": str(e), "status": e.status}
        except Exception as e:
            self._log.critical("SERVER", f"Unhandled error: {e}", {
                "stack": traceback.format_exc().splitlines()[-4:],
                "path": req.path,
            })
            return {"ok": False, "error": "Internal server error", "status": 500}

    def _track(self, req: Request, status: int, elapsed_ms: float) -> None:
        if req.method == "OPTIONS":
            return
        if not any(req.path.startswith(p) for p in self._quiet_paths):
            level = "error" if status >= 500 else "warn" if status >= 400 else "debug"
            self._log.record(level, "HTTP", f"{req.method} {req.raw_path} -> {status} ({elapsed_ms:.1f}ms)")
        if not any(req.path.startswith(p) for p in self._exclude_paths):
            self._stats.record_completion(req.method, req.path, status, elapsed_ms)

    def _cors_headers(self) -> str:
        return (
            f"Access-Control-Allow-Origin: {self._cors_origin}\r\n"
            "Access-Control-Allow-Methods: GET, POST, PUT, DELETE, OPTIONS\r\n"
            "Access-Control-Allow-Headers: Content-Type, Authorization\r\n"
        )

    async def _start_sse(self, writer: asyncio.StreamWriter) -> None:
        headers = (
            "HTTP/1.1 200 OK\r\n"
            "Content-Type: text/event-stream\r\n"
            "Cache-Control: no-cache\r\n"
            "Connection: keep-alive\r\n"
            "X-Accel-Buffering: no\r\n"
            f"{self._cors_headers()}\r\n"
        )
        writer.write(headers.encode())
        await writer.drain()

    async def _respond(self, writer: asyncio.StreamWriter, data: dict[str, Any], status: int = 200) -> None:
        status_text = _STATUS_TEXT.get(status, "OK")
        if status == 204:
            resp = (f"HTTP/1.1 204 No Content\r\n"
                    f"{self._cors_headers()}"
                    f"Connection: close\r\n\r\n")
            writer.write(resp.encode())
        else:
            payload = json.dumps(data, ensure_ascii=False, default=str).encode("utf-8", "backslashreplace")
            resp = (f"HTTP/1.1 {status} {status_text}\r\n"
                    f"Content-Type: application/json; charset=utf-8\r\n"
                    f"{self._cors_headers()}"
                    f"Content-Length: {len(payload)}\r\n"
                    f"Connection: close\r\n\r\n")
            writer.write(resp.encode() + payload)
        await writer.drain()
