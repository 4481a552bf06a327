"""Shared test fixtures for the K11 test suite."""
from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Callable

import pytest

from k11.config import K11Config
from k11.event_log import EventLog
from k11.provider import LLMProvider
from k11.stream import HEARTBEAT_FRAME
from k11.types import LLMResponse


# ---- Fakes ----


class FakeProvider(LLMProvider):
    """LLM provider that returns pre-configured responses in order."""

    def __init__(self, responses: list[LLMResponse] | None = None) -> None:
        self.responses: list[LLMResponse] = responses or []
        self.calls: list[list[dict[str, Any]]] = []

    async def chat(
        self,
        messages: list[dict[str, Any]],
        model: str = "",
        max_tokens: int = 0,
        temperature: float = -1.0,
    ) -> LLMResponse:
        self.calls.append([dict(m) for m in messages])
        if not self.responses:
            return LLMResponse(content="(no more responses)")
        return self.responses.pop(0)


class FakeSink:
    """Collects every chunk a stream client writes."""

    def __init__(self) -> None:
        self.chunks: list[str] = []

    async def send(self, chunk: str) -> None:
        self.chunks.append(chunk)

    def frames(self) -> list[dict[str, Any]]:
        return [
            json.loads(c[len("data: "):].strip())
            for c in self.chunks if c.startswith("data: ")
        ]

    def messages(self, module: str = "TEST") -> list[str]:
        return [f["message"] for f in self.frames() if f.get("module") == module]


class FailingSink(FakeSink):
    """Accepts `ok_sends` chunks, then behaves like a dead socket."""

    def __init__(self, ok_sends: int = 0) -> None:
        super().__init__()
        self.ok_sends = ok_sends

    async def send(self, chunk: str) -> None:
        if len(self.chunks) >= self.ok_sends:
            raise ConnectionResetError("peer went away")
        self.chunks.append(chunk)


class HeartbeatFailingSink(FakeSink):
    """Delivers data frames but fails on the keepalive ping."""

    async def send(self, chunk: str) -> None:
        if chunk == HEARTBEAT_FRAME:
            raise ConnectionResetError("ping failed")
        self.chunks.append(chunk)


class BlockedSink(FakeSink):
    """Never completes a write until released."""

    def __init__(self) -> None:
        super().__init__()
        self.release = asyncio.Event()

    async def send(self, chunk: str) -> None:
        await self.release.wait()
        self.chunks.append(chunk)


# ---- Helpers ----


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until predicate() is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def make_config(tmp_path: Path, **sections: dict[str, Any]) -> K11Config:
    """Config rooted in tmp_path, bound to an ephemeral port."""
    data: dict[str, Any] = {
        "server": {"host": "127.0.0.1", "port": 0},
        "log": {"file": str(tmp_path / "logs" / "k11.log"), "level": "WARNING"},
        "datastore": {"data_dir": str(tmp_path / "data")},
    }
    for name, values in sections.items():
        data.setdefault(name, {}).update(values)
    return K11Config(**data)


# ---- Fixtures ----


@pytest.fixture
def event_log(tmp_path: Path):
    el = EventLog(tmp_path / "k11.log", echo=False)
    yield el
    el.close()


@pytest.fixture
def memory_log():
    el = EventLog(None, echo=False)
    yield el
    el.close()
