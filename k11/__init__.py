"""K11 - JSON data API server with a live event log and an AI supervisor."""

__version__ = "2.0.0"

from k11.types import LogEntry, LLMResponse
from k11.event_log import EventLog
from k11.request_stats import RequestStats
from k11.stream import LogStreamer
from k11.snapshot import build_snapshot
from k11.app import K11App

__all__ = [
    "K11App",
    "EventLog",
    "RequestStats",
    "LogStreamer",
    "LogEntry",
    "LLMResponse",
    "build_snapshot",
]
