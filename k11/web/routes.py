"""API route handlers."""
from __future__ import annotations

import asyncio
import platform
import re
from typing import Any

import psutil

from k11.snapshot import format_uptime
from k11.supervisor import score_label
from k11.types import LEVELS, iso_timestamp
from k11.web.server import BadRequest, Request, SSEResponse, WriterSink

_DATASET_ITEM = re.compile(r"^/api/data/([^/]+)/([^/]+)$")
_DATASET_TOGGLE = re.compile(r"^/api/data/([^/]+)/([^/]+)/toggle$")

ROUTES = [
    "GET  /health",
    "GET  /api/status",
    "GET  /api/data/all",
    "GET  /api/data/files",
    "GET  /api/data/:dataset",
    "PUT  /api/data/:dataset/:id",
    "POST /api/data/:dataset/:id/toggle",
    "DEL  /api/data/cache",
    "GET  /api/system/status",
    "GET  /api/system/logs",
    "GET  /api/system/stream",
    "POST /api/system/log",
    "DEL  /api/system/logs",
    "GET  /api/ai/health",
    "POST /api/ai/chat",
    "GET  /api/ai/history",
    "POST /api/ai/analyze-logs",
    "GET  /api/ai/score",
]


async def handle_route(app: Any, req: Request) -> Any:
    """Route dispatcher. Returns dict (JSON, optional int "status") or SSEResponse."""
    path, method = req.path, req.method

    # Public
    if path == "/health" and method == "GET":
        return _health(app)
    if path == "/api/status" and method == "GET":
        return _public_status(app)

    # Data
    if path.startswith("/api/data/"):
        result = await _data_route(app, req)
        if result is not None:
            return result

    # System
    if path == "/api/system/status" and method == "GET":
        return _system_status(app)
    if path == "/api/system/logs":
        if method == "GET":
            return _system_logs(app, req)
        if method == "DELETE":
            return await _system_logs_clear(app)
    if path == "/api/system/stream" and method == "GET":
        return _system_stream(app)
    if path == "/api/system/log" and method == "POST":
        return _system_log_inject(app, req)

    # AI supervisor
    if path == "/api/ai/health" and method == "GET":
        return await _ai_health(app)
    if path == "/api/ai/chat" and method == "POST":
        return await _ai_chat(app, req)
    if path == "/api/ai/history" and method == "GET":
        return _ai_history(app)
    if path == "/api/ai/analyze-logs" and method == "POST":
        return await _ai_analyze_logs(app)
    if path == "/api/ai/score" and method == "GET":
        return _ai_score(app)

    return _not_found(app, req)


def _not_found(app: Any, req: Request) -> dict[str, Any]:
    app.event_log.warn("HTTP", f"404: {req.method} {req.path}")
    return {
        "ok": False,
        "error": "Route not found",
        "path": f"{req.method} {req.path}",
        "routes": ROUTES,
        "status": 404,
    }


def _int_param(req: Request, name: str, default: int) -> int:
    raw = req.query.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise BadRequest(400, f"query parameter '{name}' must be an integer") from None


def _json_object(req: Request) -> dict[str, Any]:
    data = req.json()
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise BadRequest(400, "JSON body must be an object")
    return data


# ---- Public ----

def _health(app: Any) -> dict[str, Any]:
    return {"status": "ok", "ts": iso_timestamp()}


def _public_status(app: Any) -> dict[str, Any]:
    return {
        "ok": True,
        "system": "K11 SERVER",
        "version": app.version,
        "uptime": format_uptime(app.uptime_seconds()),
        "env": app.config.server.env,
        "ts": iso_timestamp(),
    }


# ---- Data ----

async def _data_route(app: Any, req: Request) -> dict[str, Any] | None:
    path, method = req.path, req.method
    store = app.datastore

    if path == "/api/data/all" and method == "GET":
        data = await asyncio.to_thread(store.get_all)
        return {"ok": True, "data": data, "ts": iso_timestamp()}
    if path == "/api/data/files" and method == "GET":
        files = await asyncio.to_thread(store.list_files)
        return {"ok": True, "files": files}
    if path == "/api/data/cache" and method == "DELETE":
        store.clear_cache()
        return {"ok": True, "message": "Cache cleared"}

    m = _DATASET_TOGGLE.match(path)
    if m and method == "POST":
        dataset, item_id = m.groups()
        item = await asyncio.to_thread(store.toggle_done, dataset, item_id)
        if item is None:
            return {"ok": False, "error": "Item not found", "status": 404}
        return {"ok": True, "item": item}

    m = _DATASET_ITEM.match(path)
    if m and method == "PUT":
        dataset, item_id = m.groups()
        patch = _json_object(req)
        item = await asyncio.to_thread(store.update_item, dataset, item_id, patch)
        if item is None:
            return {"ok": False, "error": "Item not found", "status": 404}
        return {"ok": True, "item": item}

    dataset = path[len("/api/data/"):]
    if dataset and "/" not in dataset and method == "GET":
        bust = req.query.get("refresh") == "1"
        rows = await asyncio.to_thread(store.get, dataset, bust)
        if not rows:
            app.event_log.warn("ROUTES/DATA", f"Dataset empty or not found: {dataset}")
            return {"ok": False, "error": f'Dataset "{dataset}" not found or empty', "data": [], "status": 404}
        return {"ok": True, "dataset": dataset, "rows": len(rows), "data": rows, "ts": iso_timestamp()}
    return None


# ---- System ----

def _system_status(app: Any) -> dict[str, Any]:
    proc = psutil.Process()
    mem = proc.memory_info()
    uptime_s = app.uptime_seconds()
    return {
        "ok": True,
        "system": "K11 SERVER",
        "version": app.version,
        "env": app.config.server.env,
        "uptime": {
            "ms": int(uptime_s * 1000),
            "human": format_uptime(uptime_s),
        },
        "memory": {
            "rssMB": round(mem.rss / 1024 / 1024),
            "vmsMB": round(mem.vms / 1024 / 1024),
            "systemPercent": psutil.virtual_memory().percent,
        },
        "cpu": {
            "cores": psutil.cpu_count() or 0,
            "loadAvg": [f"{v:.2f}" for v in psutil.getloadavg()],
            "processPercent": proc.cpu_percent(interval=None),
        },
        "platform": {
            "os": platform.system().lower(),
            "arch": platform.machine(),
            "hostname": platform.node(),
            "python": platform.python_version(),
            "pid": proc.pid,
        },
        "requests": app.request_stats.snapshot(),
        "logs": app.event_log.stats(),
        "datastore": app.datastore.get_stats(),
        "sseClients": app.streamer.client_count,
        "ts": iso_timestamp(),
    }


def _system_logs(app: Any, req: Request) -> dict[str, Any]:
    level = req.query.get("level") or None
    module = req.query.get("module") or None
    limit = min(_int_param(req, "limit", 200), app.event_log.max_lines)
    entries = app.event_log.query(level=level, module=module, limit=limit)
    return {
        "ok": True,
        "count": len(entries),
        "logs": [e.to_dict() for e in entries],
        "stats": app.event_log.stats(),
    }


async def _system_logs_clear(app: Any) -> dict[str, Any]:
    try:
        await asyncio.wait_for(asyncio.wrap_future(app.event_log.clear_persisted()), timeout=5.0)
    except (OSError, asyncio.TimeoutError) as e:
        return {"ok": False, "error": f"Could not clear log file: {e}", "status": 500}
    return {"ok": True, "message": "Log file cleared"}


def _system_stream(app: Any) -> SSEResponse:
    """Subscribe the connection to the live event log until either side closes."""

    async def _sse_handler(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        client = await app.streamer.subscribe(WriterSink(writer))
        peer_gone = asyncio.create_task(_wait_eof(reader))
        closed = asyncio.create_task(client.wait_closed())
        try:
            await asyncio.wait({peer_gone, closed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            client.close()
            for t in (peer_gone, closed):
                t.cancel()

    return SSEResponse(handler=_sse_handler)


async def _wait_eof(reader: asyncio.StreamReader) -> None:
    try:
        while await reader.read(1024):
            pass
    except (ConnectionError, OSError):
        pass


def _system_log_inject(app: Any, req: Request) -> dict[str, Any]:
    data = _json_object(req)
    level = str(data.get("level") or "info").lower()
    if level not in LEVELS:
        level = "info"
    module = str(data.get("module") or "FRONTEND")[:20]
    message = str(data.get("message") or "")[:500]
    if not message:
        return {"ok": False, "error": "message is required", "status": 400}
    entry = app.event_log.record(level, module, message, data.get("meta"))
    return {"ok": True, "id": entry.id}


# ---- AI supervisor ----

async def _ai_health(app: Any) -> dict[str, Any]:
    analysis = await app.supervisor.analyze_health(app.snapshot())
    return {"ok": True, "analysis": analysis}


async def _ai_chat(app: Any, req: Request) -> dict[str, Any]:
    data = _json_object(req)
    message = data.get("message")
    if not isinstance(message, str) or not message.strip():
        return {"ok": False, "error": "message is required", "status": 400}
    if len(message) > 1000:
        return {"ok": False, "error": "message too long (max 1000 chars)", "status": 400}
    result = await app.supervisor.chat(message, app.snapshot())
    return {"ok": result["success"], **result}


def _ai_history(app: Any) -> dict[str, Any]:
    history = app.supervisor.history()
    return {"ok": True, "history": history, "count": len(history)}


async def _ai_analyze_logs(app: Any) -> dict[str, Any]:
    entries = app.event_log.query(limit=100)
    analysis = await app.supervisor.analyze_logs(entries)
    if analysis is None:
        return {"ok": True, "analysis": None, "message": "No critical errors to analyse"}
    return {"ok": True, "analysis": analysis}


def _ai_score(app: Any) -> dict[str, Any]:
    score = app.supervisor.last_score
    return {
        "ok": True,
        "score": score,
        "label": score_label(score),
        "enabled": app.supervisor.enabled,
        "ts": iso_timestamp(),
    }
