"""Composition root -- wire everything together."""

from __future__ import annotations

import asyncio
import signal
import time
from pathlib import Path
from typing import Any

from k11 import __version__
from k11.auth import TokenAuth
from k11.config import STREAM_PATH, K11Config, load_config, validate_startup
from k11.datastore import DataStore
from k11.event_log import EventLog
from k11.log import logger
from k11.provider import LiteLLMProvider
from k11.rate_limiter import SlidingWindowRateLimiter
from k11.request_stats import RequestStats
from k11.snapshot import build_snapshot
from k11.stream import LogStreamer
from k11.supervisor import AISupervisor
from k11.web.server import APIServer

SHUTDOWN_TIMEOUT = 5.0


class K11App:
    """Main application. Create, configure, run."""

    def __init__(self, config_path: str | None = None, config: K11Config | None = None) -> None:
        self.config = config if config is not None else load_config(config_path)
        self.version = __version__

        # Configure logging early -- before any logger.info() calls
        from k11.log import configure as _configure_log
        lc = self.config.log
        _configure_log(
            level=lc.level, fmt=lc.format, json_format=lc.json_format,
            file=lc.console_file, rotation=lc.rotation, retention=lc.retention,
        )

        validate_startup(self.config)
        self._started_mono = time.monotonic()

        log_path = Path(lc.file).expanduser() if lc.file else None
        self.event_log = EventLog(log_path, max_lines=lc.max_lines)

        st = self.config.stats
        self.request_stats = RequestStats(
            self.event_log,
            slow_threshold_ms=st.slow_threshold_ms,
            top_n=st.top_routes,
        )

        ds = self.config.datastore
        self.datastore = DataStore(
            Path(ds.data_dir).expanduser(),
            self.event_log,
            datasets=ds.datasets,
            cache_ttl=ds.cache_ttl_seconds,
        )

        sv = self.config.supervisor
        provider = None
        if sv.enabled:
            provider = LiteLLMProvider(
                model=sv.model,
                api_key=sv.api_key,
                api_base=sv.api_base,
                max_tokens=sv.max_tokens,
                temperature=sv.temperature,
                timeout=sv.timeout,
                max_retries=sv.max_retries,
            )
        self.supervisor = AISupervisor(provider, self.event_log, enabled=sv.enabled)

        sc = self.config.stream
        self.streamer = LogStreamer(
            self.event_log,
            keepalive_interval=sc.keepalive_seconds,
            replay=sc.replay,
            queue_size=sc.queue_size,
        )

        self.auth = TokenAuth(self.config.auth.token, self.event_log)
        rl = self.config.rate_limit
        self.rate_limiter = SlidingWindowRateLimiter(
            max_requests=rl.max_requests,
            window_seconds=rl.window_seconds,
            enabled=rl.enabled,
        )

        srv = self.config.server
        self.server = APIServer(
            self,
            self.event_log,
            self.request_stats,
            self.auth,
            self.rate_limiter,
            host=srv.host,
            port=srv.port,
            cors_origin=srv.cors_origin,
            max_body=srv.max_body_bytes,
            exclude_paths=tuple(srv.exclude_paths),
            quiet_paths=(STREAM_PATH,),
        )
        self._bg_tasks: set[asyncio.Task[Any]] = set()

    def uptime_seconds(self) -> float:
        return time.monotonic() - self._started_mono

    def snapshot(self, recent: int = 30) -> dict[str, Any]:
        """Current system view handed to the supervisor."""
        return build_snapshot(
            log_stats=self.event_log.stats(),
            request_stats=self.request_stats.snapshot(),
            datastore_stats=self.datastore.get_stats(),
            uptime_ms=int(self.uptime_seconds() * 1000),
            recent_logs=self.event_log.query(limit=recent),
        )

    def _spawn(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._bg_tasks.add(task)
        task.add_done_callback(self._bg_tasks.discard)

    def _loop_exception_handler(self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
        exc = context.get("exception")
        self.event_log.critical("PROCESS", f"Unhandled async error: {exc or context.get('message')}", {
            "type": type(exc).__name__ if exc else None,
        })

    async def _preload(self) -> None:
        data = await asyncio.to_thread(self.datastore.get_all)
        self.event_log.info("BOOT", "Datasets preloaded", {
            "totals": {name: len(rows) for name, rows in data.items()},
        })

    async def _initial_health_check(self, delay: float) -> None:
        await asyncio.sleep(delay)
        analysis = await self.supervisor.analyze_health(self.snapshot())
        self.event_log.info("BOOT", f"Initial health score: {analysis.get('score')}/100", {
            "status": analysis.get("status"),
        })

    async def start(self) -> None:
        """Bind the server and kick off background startup work."""
        loop = asyncio.get_running_loop()
        loop.set_exception_handler(self._loop_exception_handler)

        self.event_log.info("BOOT", f"K11 SERVER v{self.version} starting", {
            "env": self.config.server.env,
            "auth": self.auth.enabled,
            "supervisor": self.supervisor.enabled,
            "logFile": str(self.event_log.path) if self.event_log.path else None,
        })
        await self.server.start()
        self._spawn(self._preload())
        if self.supervisor.enabled:
            self._spawn(self._initial_health_check(self.config.supervisor.initial_check_delay))
        else:
            self.event_log.warn("AI-SUPERVISOR", "No API key configured -- supervisor disabled")

    async def run(self) -> None:
        await self.start()

        loop = asyncio.get_running_loop()
        shutdown_event = asyncio.Event()

        def _signal_handler() -> None:
            if not shutdown_event.is_set():
                self.event_log.warn("PROCESS", "Shutdown signal received, stopping gracefully...")
                shutdown_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, _signal_handler)
            except (NotImplementedError, OSError):
                # Windows: Ctrl+C still ends in CancelledError -> finally below.
                pass

        try:
            await shutdown_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            try:
                await asyncio.wait_for(self.shutdown(), timeout=SHUTDOWN_TIMEOUT)
            except asyncio.TimeoutError:
                logger.error(f"Shutdown did not finish within {SHUTDOWN_TIMEOUT}s, forcing exit")

    async def shutdown(self) -> None:
        """Stop accepting connections, drop stream clients, flush the log file."""
        logger.info("Shutting down components...")
        for task in list(self._bg_tasks):
            task.cancel()
        if self._bg_tasks:
            await asyncio.gather(*self._bg_tasks, return_exceptions=True)

        await self.streamer.close_all()
        self.streamer.close()
        await self.server.stop()

        self.event_log.info("PROCESS", "Server stopped")
        await asyncio.to_thread(self.event_log.flush)
        self.event_log.close()
        logger.info("K11 stopped.")
