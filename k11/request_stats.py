"""Request statistics -- rolling counters and per-route breakdowns."""

from __future__ import annotations

import math
import threading
import time
from typing import Any

from k11.event_log import EventLog
from k11.types import RouteStats

SLOW_THRESHOLD_MS = 500
TOP_ROUTES = 10


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positives, like JavaScript's Math.round."""
    return int(math.floor(value + 0.5))


class RequestStats:
    """Aggregates one observation per completed HTTP request.

    Counter updates are serialized by a lock; slow/error log entries are
    emitted after it is released so listeners never run under it.
    """

    def __init__(
        self,
        event_log: EventLog | None = None,
        slow_threshold_ms: float = SLOW_THRESHOLD_MS,
        top_n: int = TOP_ROUTES,
    ) -> None:
        self._log = event_log
        self._slow_threshold_ms = slow_threshold_ms
        self._top_n = top_n
        self._lock = threading.Lock()
        self._total = 0
        self._ok = 0
        self._errors_4xx = 0
        self._errors_5xx = 0
        self._slow = 0
        self._avg_latency_ms = 0
        # dicts keep insertion order, which breaks ties in top routes
        self._by_route: dict[str, RouteStats] = {}
        self._start_time = time.time()
        self._started_mono = time.monotonic()

    def record_completion(self, method: str, path: str, status: int, elapsed_ms: float) -> None:
        route = f"{method} {path}"
        is_slow = elapsed_ms > self._slow_threshold_ms

        with self._lock:
            self._total += 1
            if status >= 500:
                self._errors_5xx += 1
            elif status >= 400:
                self._errors_4xx += 1
            else:
                self._ok += 1
            if is_slow:
                self._slow += 1

            # Running mean over the rounded previous mean; rounding drift is accepted.
            self._avg_latency_ms = round_half_up(
                (self._avg_latency_ms * (self._total - 1) + elapsed_ms) / self._total
            )

            rs = self._by_route.get(route)
            if rs is None:
                rs = self._by_route[route] = RouteStats()
            rs.count += 1
            rs.total_ms += elapsed_ms
            if status >= 400:
                rs.errors += 1

        if self._log is None:
            return
        if is_slow:
            self._log.warn("REQUEST", f"Slow request: {route}", {
                "ms": round_half_up(elapsed_ms),
                "status": status,
            })
        if status >= 500:
            self._log.error("REQUEST", f"Error {status}: {route}", {"ms": round_half_up(elapsed_ms)})

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            by_route = {route: rs.to_dict() for route, rs in self._by_route.items()}
            result: dict[str, Any] = {
                "total": self._total,
                "ok": self._ok,
                "errors4xx": self._errors_4xx,
                "errors5xx": self._errors_5xx,
                "slow": self._slow,
                "avgLatencyMs": self._avg_latency_ms,
                "byRoute": by_route,
                "startTime": int(self._start_time * 1000),
            }
        result["uptimeMs"] = int((time.monotonic() - self._started_mono) * 1000)
        result["topRoutes"] = self._top_routes(by_route)
        return result

    def _top_routes(self, by_route: dict[str, dict[str, Any]]) -> list[dict[str, Any]]:
        # sorted() is stable: equal counts keep first-seen order
        ranked = sorted(by_route.items(), key=lambda item: -item[1]["count"])
        return [
            {
                "route": route,
                "count": s["count"],
                "avgMs": round_half_up(s["totalMs"] / s["count"]),
                "errors": s["errors"],
            }
            for route, s in ranked[: self._top_n]
        ]

