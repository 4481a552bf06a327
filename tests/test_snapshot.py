"""Tests for snapshot assembly."""

from __future__ import annotations

from k11.event_log import EventLog
from k11.snapshot import EMPTY_REQUEST_STATS, build_snapshot, format_uptime


def test_all_inputs_missing() -> None:
    snap = build_snapshot()
    assert snap["uptime"] == 0
    assert snap["logStats"]["total"] == 0
    assert snap["logStats"]["critical"] == 0
    assert snap["requestStats"]["total"] == 0
    assert snap["requestStats"]["topRoutes"] == []
    assert snap["datastoreStats"] == {"reads": 0, "writes": 0, "errors": 0, "cacheSize": 0}
    assert snap["recentLogs"] == []


def test_partial_inputs_are_merged_over_defaults() -> None:
    snap = build_snapshot(request_stats={"total": 4, "slow": 1}, uptime_ms=1500)
    assert snap["uptime"] == 1500
    assert snap["requestStats"]["total"] == 4
    assert snap["requestStats"]["slow"] == 1
    assert snap["requestStats"]["errors5xx"] == 0


def test_defaults_are_not_shared() -> None:
    snap = build_snapshot()
    snap["requestStats"]["byRoute"]["GET /x"] = {"count": 1}
    assert EMPTY_REQUEST_STATS["byRoute"] == {}
    assert build_snapshot()["requestStats"]["byRoute"] == {}


def test_recent_logs_serialized() -> None:
    el = EventLog(echo=False)
    el.error("HTTP", "boom")
    snap = build_snapshot(log_stats=el.stats(), recent_logs=el.query(limit=5))
    assert snap["logStats"]["error"] == 1
    assert snap["recentLogs"][0]["message"] == "boom"
    assert snap["recentLogs"][0]["level"] == "error"


def test_format_uptime() -> None:
    assert format_uptime(0) == "0h 0m 0s"
    assert format_uptime(3725.9) == "1h 2m 5s"
    assert format_uptime(90061) == "25h 1m 1s"
