"""Static bearer-token check for the HTTP API."""

from __future__ import annotations

import hmac
from collections.abc import Mapping
from urllib.parse import parse_qs, urlparse

from k11.event_log import EventLog

PUBLIC_PATHS: tuple[str, ...] = ("/health", "/api/status")


def extract_token(headers: Mapping[str, str], raw_path: str) -> str:
    """Bearer header first; ?_token= as fallback (EventSource can't set headers)."""
    auth = headers.get("authorization", "")
    if auth.startswith("Bearer "):
        return auth[7:].strip()
    qs = parse_qs(urlparse(raw_path).query)
    return qs.get("_token", [""])[0]


class TokenAuth:
    """Single shared secret. An empty secret disables the check."""

    def __init__(self, token: str, event_log: EventLog, public_paths: tuple[str, ...] = PUBLIC_PATHS) -> None:
        self._token = token
        self._log = event_log
        self._public = public_paths
        if not token:
            self._log.warn("AUTH", "No API token configured -- authentication disabled")

    @property
    def enabled(self) -> bool:
        return bool(self._token)

    def is_public(self, path: str) -> bool:
        return any(path.startswith(p) for p in self._public)

    def check(self, path: str, raw_path: str, headers: Mapping[str, str], client_ip: str = "") -> bool:
        if not self._token or self.is_public(path):
            return True
        provided = extract_token(headers, raw_path)
        if provided and hmac.compare_digest(provided, self._token):
            return True
        self._log.warn("AUTH", "Invalid or missing token", {
            "ip": client_ip,
            "path": path,
            "ua": headers.get("user-agent", "")[:60],
        })
        return False
