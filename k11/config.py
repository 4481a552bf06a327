"""Configuration schema and loading."""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from k11.datastore import DEFAULT_DATASETS

STREAM_PATH = "/api/system/stream"


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 3000
    env: str = "development"
    cors_origin: str = "*"
    max_body_bytes: int = 2 * 1024 * 1024
    # Paths not fed to request statistics (long-lived streams would all count as slow).
    exclude_paths: list[str] = Field(default_factory=lambda: [STREAM_PATH])


class AuthConfig(BaseModel):
    token: str = ""  # empty = auth disabled (development)


class LogConfig(BaseModel):
    level: str = "DEBUG"
    format: str = ""
    json_format: bool = False
    file: str = "logs/k11.log"   # JSONL event log; empty = memory only
    max_lines: int = 2000        # ring buffer capacity
    console_file: str = ""       # optional loguru file sink for the console view
    rotation: str = "10 MB"      # loguru rotation param (console_file only)
    retention: str = "7 days"


class StreamConfig(BaseModel):
    keepalive_seconds: float = 25.0
    replay: int = 50
    queue_size: int = 1000


class StatsConfig(BaseModel):
    slow_threshold_ms: float = 500.0
    top_routes: int = 10


class DataStoreConfig(BaseModel):
    data_dir: str = "data"
    cache_ttl_seconds: float = 30.0
    datasets: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_DATASETS))


class SupervisorConfig(BaseModel):
    model: str = "groq/llama-3.3-70b-versatile"
    api_key: str = ""
    api_base: str = ""  # set for local OpenAI-compatible servers (no key needed)
    max_tokens: int = 1024
    temperature: float = 0.3
    timeout: float = 15.0
    max_retries: int = 2
    initial_check_delay: float = 2.0

    @property
    def enabled(self) -> bool:
        return bool(self.api_key or self.api_base)


class RateLimitConfig(BaseModel):
    """Sliding window limit applied per client IP to /api/*."""
    enabled: bool = True
    window_seconds: float = 60.0
    max_requests: int = 120


class K11Config(BaseSettings):
    server: ServerConfig = Field(default_factory=ServerConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    log: LogConfig = Field(default_factory=LogConfig)
    stream: StreamConfig = Field(default_factory=StreamConfig)
    stats: StatsConfig = Field(default_factory=StatsConfig)
    datastore: DataStoreConfig = Field(default_factory=DataStoreConfig)
    supervisor: SupervisorConfig = Field(default_factory=SupervisorConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)

    model_config = SettingsConfigDict(
        env_prefix="K11_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(cls, settings_cls, init_settings, env_settings, dotenv_settings, file_secret_settings):
        # env > dotenv > file (init) > defaults -- environment variables always win
        return (env_settings, dotenv_settings, init_settings, file_secret_settings)


def _camel_to_snake(name: str) -> str:
    s = re.sub(r"([A-Z]+)([A-Z][a-z])", r"\1_\2", name)
    s = re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", s)
    return s.lower()


def _convert_keys(data: Any) -> Any:
    if isinstance(data, dict):
        # dataset names are user keys, keep them verbatim
        return {_camel_to_snake(k): (v if k == "datasets" else _convert_keys(v)) for k, v in data.items()}
    if isinstance(data, list):
        return [_convert_keys(i) for i in data]
    return data


def _default_config_path() -> Path:
    return Path.home() / ".k11" / "config.json"


def load_config(config_path: str | None = None) -> K11Config:
    """Load config from JSON file + environment variables."""
    path = Path(config_path).expanduser() if config_path else _default_config_path()

    file_data: dict[str, Any] = {}
    if path.exists():
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            file_data = _convert_keys(raw)
        except (json.JSONDecodeError, ValueError, OSError):
            pass

    # Pass file data as kwargs so BaseSettings still applies env var overrides
    return K11Config(**file_data)


def validate_startup(config: K11Config) -> None:
    """Validate config for production startup. Raises ValueError with all errors."""
    errors: list[str] = []

    if not 0 <= config.server.port < 65536:
        errors.append(f"server.port {config.server.port} out of range")

    valid_levels = {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}
    if config.log.level.upper() not in valid_levels:
        errors.append(f"log.level '{config.log.level}' invalid, must be one of {sorted(valid_levels)}")

    if config.log.max_lines < 1:
        errors.append("log.max_lines must be >= 1")
    if config.stream.replay < 0:
        errors.append("stream.replay must be >= 0")
    if config.stream.queue_size < 1:
        errors.append("stream.queue_size must be >= 1")
    if config.stats.top_routes < 1:
        errors.append("stats.top_routes must be >= 1")
    if config.rate_limit.enabled and config.rate_limit.max_requests < 1:
        errors.append("rate_limit.max_requests must be >= 1 when rate limiting is enabled")

    if errors:
        raise ValueError(
            "K11 configuration errors:\n" + "\n".join(f"  - {e}" for e in errors)
        )
