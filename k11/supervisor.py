"""AI supervisor -- LLM-backed health diagnosis, chat and error-log analysis.

Every public call degrades instead of raising: a disabled supervisor, a
provider error or an unparseable answer produce an explicit "unavailable"
result and an error entry in the event log.
"""

from __future__ import annotations

import json
import re
from collections import deque
from collections.abc import Iterable, Mapping
from typing import Any

from k11.event_log import EventLog
from k11.provider import LLMProvider
from k11.types import LogEntry, iso_timestamp

_JSON_BLOCK = re.compile(r"\{[\s\S]*\}")

SYSTEM_PROMPT = """You are the K11 AI Supervisor, the monitoring assistant of the K11 server.

MISSION: analyse logs, metrics and system state to:
1. Detect anomalies and critical patterns
2. Compute a health score (0-100)
3. Produce short, actionable diagnoses
4. Answer questions about the server state

RULES:
- Be concise and direct.
- Health score: 90-100 = healthy | 70-89 = attention | 50-69 = degraded | <50 = critical
- Use technical terms but explain the impact
- Prioritise critical errors over warnings
- Return structured JSON when asked for it

SYSTEM CONTEXT:
- Python asyncio server serving JSON datasets (stock and operations management)
- Front-end consumes the REST API with a bearer token"""

HEALTH_PROMPT = """Analyse this K11 server snapshot and return JSON with a health score and diagnosis.

SNAPSHOT:
- Uptime: {uptime_s}s
- Logs: {log_stats}
- DataStore: {datastore_stats}
- Requests: {request_stats}

Return ONLY valid JSON in this format:
{{
  "score": 85,
  "status": "healthy",
  "issues": ["problem description, if any"],
  "recommendations": ["recommended action"],
  "summary": "One sentence summary"
}}"""


class SupervisorUnavailable(RuntimeError):
    """The supervisor cannot produce an answer right now."""


def score_label(score: float | None) -> str:
    if score is None:
        return "Not calculated"
    if score >= 90:
        return "Healthy"
    if score >= 70:
        return "Attention"
    if score >= 50:
        return "Degraded"
    return "Critical"


def _compact(data: Any) -> str:
    return json.dumps(data, ensure_ascii=False, default=str)


class AISupervisor:
    """Wraps an LLMProvider with the server's prompts and keeps analysis history."""

    def __init__(
        self,
        provider: LLMProvider | None,
        event_log: EventLog,
        enabled: bool = True,
        history_size: int = 50,
    ) -> None:
        self._provider = provider
        self._log = event_log
        self._enabled = enabled and provider is not None
        self._history: deque[dict[str, Any]] = deque(maxlen=history_size)
        self._last_score: float | None = None

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def last_score(self) -> float | None:
        return self._last_score

    def history(self, limit: int = 20) -> list[dict[str, Any]]:
        return list(reversed(self._history))[:limit]

    async def _ask(self, messages: list[dict[str, Any]]) -> str:
        if not self._enabled or self._provider is None:
            raise SupervisorUnavailable("API key not configured")
        resp = await self._provider.chat(messages)
        if resp.failed:
            raise SupervisorUnavailable(resp.content or "provider error")
        return resp.content or ""

    async def analyze_health(self, snapshot: Mapping[str, Any]) -> dict[str, Any]:
        prompt = HEALTH_PROMPT.format(
            uptime_s=int((snapshot.get("uptime") or 0) / 1000),
            log_stats=_compact(snapshot.get("logStats", {})),
            datastore_stats=_compact(snapshot.get("datastoreStats", {})),
            request_stats=_compact(snapshot.get("requestStats", {})),
        )
        try:
            response = await self._ask([
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ])
            match = _JSON_BLOCK.search(response)
            if not match:
                raise SupervisorUnavailable("response contains no JSON")
            analysis = json.loads(match.group(0))
            if not isinstance(analysis, dict):
                raise SupervisorUnavailable("response JSON is not an object")
        except (SupervisorUnavailable, ValueError) as e:
            self._log.error("AI-SUPERVISOR", "Health check failed", {"error": str(e)})
            return {
                "score": self._last_score if self._last_score is not None else 50,
                "status": "unavailable",
                "issues": [f"Supervisor offline: {e}"],
                "recommendations": ["Check the supervisor API key and provider settings"],
                "summary": "AI supervisor temporarily unavailable",
                "ts": iso_timestamp(),
                "error": True,
            }

        analysis["ts"] = iso_timestamp()
        analysis["raw"] = response
        score = analysis.get("score")
        if isinstance(score, (int, float)):
            self._last_score = score
        self._history.append(analysis)
        self._log.info("AI-SUPERVISOR", "Health check finished", {
            "score": analysis.get("score"),
            "status": analysis.get("status"),
            "issues": len(analysis.get("issues") or []),
        })
        return analysis

    async def chat(self, message: str, snapshot: Mapping[str, Any] | None = None) -> dict[str, Any]:
        context = ""
        if snapshot:
            score = self._last_score if self._last_score is not None else "not calculated"
            context = (
                "\n\nCURRENT SERVER STATE:\n"
                f"- Uptime: {int((snapshot.get('uptime') or 0) / 1000)}s\n"
                f"- Recent logs: {_compact(list(snapshot.get('recentLogs') or [])[:10])}\n"
                f"- Current health score: {score}\n"
                f"- Stats: {_compact(snapshot.get('logStats', {}))}\n"
            )
        try:
            response = await self._ask([
                {"role": "system", "content": SYSTEM_PROMPT + context},
                {"role": "user", "content": message},
            ])
        except SupervisorUnavailable as e:
            self._log.error("AI-SUPERVISOR", "Chat failed", {"error": str(e)})
            return {"success": False, "response": f"Supervisor unavailable: {e}", "ts": iso_timestamp()}

        self._log.info("AI-SUPERVISOR", "Chat answered", {
            "question": message[:60],
            "chars": len(response),
        })
        return {"success": True, "response": response, "ts": iso_timestamp()}

    async def analyze_logs(self, logs: Iterable[LogEntry | Mapping[str, Any]]) -> dict[str, Any] | None:
        critical: list[Mapping[str, Any]] = []
        for item in logs:
            data = item.to_dict() if isinstance(item, LogEntry) else item
            if data.get("level") in ("error", "critical"):
                critical.append(data)
            if len(critical) >= 20:
                break
        if not critical:
            return None

        lines = "\n".join(
            f"[{str(e.get('level', '')).upper()}] {e.get('module', '')}: {e.get('message', '')}"
            for e in critical
        )
        prompt = (
            "Analyse these K11 server error logs and provide a diagnosis:\n\n"
            f"{lines}\n\n"
            "Provide: probable root cause, system impact and immediate corrective action."
        )
        try:
            response = await self._ask([
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ])
        except SupervisorUnavailable:
            return None
        return {"diagnosis": response, "logsAnalyzed": len(critical), "ts": iso_timestamp()}
