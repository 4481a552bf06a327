"""Core data structures -- log entries and levels."""

from __future__ import annotations

import json
import random
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

# Ordered by severity. Used for console colouring and validation only.
LEVELS: tuple[str, ...] = ("debug", "info", "warn", "error", "critical")

# Event log level -> loguru level name.
LOGURU_LEVELS: dict[str, str] = {
    "debug": "DEBUG",
    "info": "INFO",
    "warn": "WARNING",
    "error": "ERROR",
    "critical": "CRITICAL",
}

_ID_ALPHABET = string.digits + string.ascii_lowercase


def new_entry_id(now_ms: int | None = None) -> str:
    """Time-based id with a short random suffix. Unique in practice, not guaranteed."""
    ms = now_ms if now_ms is not None else int(time.time() * 1000)
    suffix = "".join(random.choices(_ID_ALPHABET, k=4))
    return f"{ms}-{suffix}"


def iso_timestamp(ts: float | None = None) -> str:
    """UTC instant as ISO-8601 with millisecond precision (defaults to now)."""
    moment = datetime.fromtimestamp(ts, timezone.utc) if ts is not None else datetime.now(timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class LogEntry:
    """One structured log record. Never mutated after creation."""

    id: str
    timestamp: str
    level: str
    module: str
    message: str
    meta: dict[str, Any] | None = None
    uptime: int = 0
    seq: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "ts": self.timestamp,
            "level": self.level,
            "module": self.module,
            "message": self.message,
            "meta": self.meta,
            "uptime": self.uptime,
            "seq": self.seq,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)


@dataclass
class RouteStats:
    """Per-route request counters."""

    count: int = 0
    total_ms: float = 0.0
    errors: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"count": self.count, "totalMs": self.total_ms, "errors": self.errors}


@dataclass
class LLMResponse:
    """LLM chat completion response."""

    content: str | None = None
    finish_reason: str = "stop"
    usage: dict[str, int] = field(default_factory=dict)

    @property
    def failed(self) -> bool:
        return self.finish_reason == "error"
