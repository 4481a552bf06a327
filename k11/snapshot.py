"""Point-in-time system snapshot for the supervisor and status endpoints.

Pure functions. No I/O. Missing inputs degrade to zeroed structures.
"""

from __future__ import annotations

import copy
from collections.abc import Iterable, Mapping
from typing import Any

from k11.types import LEVELS, LogEntry

EMPTY_LOG_STATS: dict[str, Any] = {
    **{level: 0 for level in LEVELS},
    "total": 0,
    "uptimeMs": 0,
    "bufferSize": 0,
}

EMPTY_REQUEST_STATS: dict[str, Any] = {
    "total": 0,
    "ok": 0,
    "errors4xx": 0,
    "errors5xx": 0,
    "slow": 0,
    "avgLatencyMs": 0,
    "byRoute": {},
    "uptimeMs": 0,
    "topRoutes": [],
}

EMPTY_DATASTORE_STATS: dict[str, Any] = {
    "reads": 0,
    "writes": 0,
    "errors": 0,
    "cacheSize": 0,
}


def _merged(defaults: Mapping[str, Any], given: Mapping[str, Any] | None) -> dict[str, Any]:
    out = copy.deepcopy(dict(defaults))
    if given:
        out.update(copy.deepcopy(dict(given)))
    return out


def build_snapshot(
    log_stats: Mapping[str, Any] | None = None,
    request_stats: Mapping[str, Any] | None = None,
    datastore_stats: Mapping[str, Any] | None = None,
    uptime_ms: float | None = None,
    recent_logs: Iterable[LogEntry | Mapping[str, Any]] | None = None,
) -> dict[str, Any]:
    """Assemble one structured view of the running system."""
    logs: list[dict[str, Any]] = []
    for entry in recent_logs or ():
        logs.append(entry.to_dict() if isinstance(entry, LogEntry) else dict(entry))
    return {
        "uptime": uptime_ms if uptime_ms is not None else 0,
        "logStats": _merged(EMPTY_LOG_STATS, log_stats),
        "requestStats": _merged(EMPTY_REQUEST_STATS, request_stats),
        "datastoreStats": _merged(EMPTY_DATASTORE_STATS, datastore_stats),
        "recentLogs": logs,
    }


def format_uptime(seconds: float) -> str:
    s = int(seconds)
    return f"{s // 3600}h {(s % 3600) // 60}m {s % 60}s"
