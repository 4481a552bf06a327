"""Tests for the AI supervisor and the LiteLLM provider wrapper."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from conftest import FakeProvider
from k11.event_log import EventLog
from k11.provider import LiteLLMProvider
from k11.snapshot import build_snapshot
from k11.supervisor import AISupervisor, score_label
from k11.types import LLMResponse


def _health_json(score: int = 92, status: str = "healthy") -> str:
    return json.dumps({
        "score": score,
        "status": status,
        "issues": [],
        "recommendations": ["keep going"],
        "summary": "All good",
    })


# ---- score_label ----


@pytest.mark.parametrize("score,label", [
    (None, "Not calculated"),
    (100, "Healthy"),
    (90, "Healthy"),
    (89, "Attention"),
    (70, "Attention"),
    (69, "Degraded"),
    (50, "Degraded"),
    (49, "Critical"),
    (0, "Critical"),
])
def test_score_label(score, label) -> None:
    assert score_label(score) == label


# ---- Health analysis ----


class TestAnalyzeHealth:
    @pytest.mark.asyncio
    async def test_success_updates_score_and_history(self, memory_log: EventLog) -> None:
        provider = FakeProvider([LLMResponse(content=f"Here you go:\n{_health_json(88, 'attention')}\n")])
        sup = AISupervisor(provider, memory_log)

        result = await sup.analyze_health(build_snapshot(uptime_ms=61_000))

        assert result["score"] == 88
        assert result["status"] == "attention"
        assert "ts" in result
        assert sup.last_score == 88
        assert sup.history()[0] is result
        prompt = provider.calls[0][1]["content"]
        assert "Uptime: 61s" in prompt

    @pytest.mark.asyncio
    async def test_provider_failure_degrades(self, memory_log: EventLog) -> None:
        provider = FakeProvider([LLMResponse(content="LLM error: timeout", finish_reason="error")])
        sup = AISupervisor(provider, memory_log)

        result = await sup.analyze_health(build_snapshot())

        assert result["error"] is True
        assert result["status"] == "unavailable"
        assert result["score"] == 50
        assert sup.last_score is None
        assert sup.history() == []
        assert memory_log.query(module="AI-SUPERVISOR", level="error")

    @pytest.mark.asyncio
    async def test_failure_keeps_previous_score(self, memory_log: EventLog) -> None:
        provider = FakeProvider([
            LLMResponse(content=_health_json(95)),
            LLMResponse(content="no json at all"),
        ])
        sup = AISupervisor(provider, memory_log)
        await sup.analyze_health(build_snapshot())
        result = await sup.analyze_health(build_snapshot())
        assert result["error"] is True
        assert result["score"] == 95
        assert sup.last_score == 95

    @pytest.mark.asyncio
    async def test_disabled_supervisor(self, memory_log: EventLog) -> None:
        sup = AISupervisor(None, memory_log)
        assert not sup.enabled
        result = await sup.analyze_health(build_snapshot())
        assert result["status"] == "unavailable"

    @pytest.mark.asyncio
    async def test_history_newest_first_and_bounded(self, memory_log: EventLog) -> None:
        provider = FakeProvider([LLMResponse(content=_health_json(s)) for s in range(60, 90)])
        sup = AISupervisor(provider, memory_log, history_size=5)
        for _ in range(30):
            await sup.analyze_health(build_snapshot())
        scores = [h["score"] for h in sup.history(limit=20)]
        assert scores == [89, 88, 87, 86, 85]


# ---- Chat ----


class TestChat:
    @pytest.mark.asyncio
    async def test_chat_includes_state(self, memory_log: EventLog) -> None:
        provider = FakeProvider([LLMResponse(content="All systems nominal.")])
        sup = AISupervisor(provider, memory_log)
        memory_log.error("HTTP", "boom")
        snap = build_snapshot(recent_logs=memory_log.query(limit=5), uptime_ms=5000)

        result = await sup.chat("How are we doing?", snap)

        assert result["success"] is True
        assert result["response"] == "All systems nominal."
        system = provider.calls[0][0]["content"]
        assert "CURRENT SERVER STATE" in system
        assert "boom" in system
        assert provider.calls[0][1] == {"role": "user", "content": "How are we doing?"}

    @pytest.mark.asyncio
    async def test_chat_unavailable(self, memory_log: EventLog) -> None:
        sup = AISupervisor(None, memory_log)
        result = await sup.chat("hello")
        assert result["success"] is False
        assert "unavailable" in result["response"]


# ---- Log analysis ----


class TestAnalyzeLogs:
    @pytest.mark.asyncio
    async def test_no_errors_returns_none(self, memory_log: EventLog) -> None:
        provider = FakeProvider()
        sup = AISupervisor(provider, memory_log)
        memory_log.info("M", "fine")
        assert await sup.analyze_logs(memory_log.query()) is None
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_only_errors_sent(self, memory_log: EventLog) -> None:
        provider = FakeProvider([LLMResponse(content="Disk is full.")])
        sup = AISupervisor(provider, memory_log)
        memory_log.info("M", "fine")
        for i in range(25):
            memory_log.error("DATASTORE", f"write failed {i}")
        memory_log.critical("SERVER", "crash")

        result = await sup.analyze_logs(memory_log.query(limit=100))

        assert result is not None
        assert result["diagnosis"] == "Disk is full."
        assert result["logsAnalyzed"] == 20
        prompt = provider.calls[0][1]["content"]
        assert "[CRITICAL] SERVER: crash" in prompt
        assert "fine" not in prompt

    @pytest.mark.asyncio
    async def test_accepts_plain_dicts(self, memory_log: EventLog) -> None:
        provider = FakeProvider([LLMResponse(content="ok")])
        sup = AISupervisor(provider, memory_log)
        result = await sup.analyze_logs([{"level": "error", "module": "X", "message": "y"}])
        assert result["logsAnalyzed"] == 1


# ---- LiteLLMProvider ----


class TestLiteLLMProvider:
    @pytest.mark.asyncio
    async def test_parses_response(self) -> None:
        resp = MagicMock()
        resp.choices = [MagicMock()]
        resp.choices[0].message.content = "hi"
        resp.choices[0].finish_reason = "stop"
        resp.usage = {"prompt_tokens": 3}
        provider = LiteLLMProvider(model="groq/test", api_key="k")

        with patch("litellm.acompletion", AsyncMock(return_value=resp)) as mock:
            result = await provider.chat([{"role": "user", "content": "x"}])

        assert result.content == "hi"
        assert not result.failed
        kwargs = mock.call_args.kwargs
        assert kwargs["model"] == "groq/test"
        assert kwargs["api_key"] == "k"
        assert "api_base" not in kwargs

    @pytest.mark.asyncio
    async def test_retries_then_returns_error(self) -> None:
        provider = LiteLLMProvider(model="groq/test", max_retries=3, retry_base_delay=0)
        failing = AsyncMock(side_effect=RuntimeError("503"))

        with patch("litellm.acompletion", failing):
            result = await provider.chat([{"role": "user", "content": "x"}])

        assert result.failed
        assert "503" in result.content
        assert failing.await_count == 3
