"""Structured event log -- in-memory ring, JSONL disk append, live listeners.

Every component logs through one EventLog instance. Each record:
  1. lands in a bounded ring buffer (oldest evicted) used for queries and replay,
  2. bumps lifetime per-level counters that survive eviction,
  3. is queued for append to a JSONL file by a background writer thread,
  4. is pushed synchronously to registered listeners (the live stream),
  5. is echoed to the console through loguru.

record() never raises and never waits on disk I/O.
"""

from __future__ import annotations

import json
import queue
import threading
import time
from collections import deque
from collections.abc import Callable, Mapping
from concurrent.futures import Future
from pathlib import Path
from typing import Any

from k11.log import logger
from k11.types import LEVELS, LOGURU_LEVELS, LogEntry, iso_timestamp, new_entry_id

Listener = Callable[[LogEntry], None]

DEFAULT_MAX_LINES = 2000
_MAX_META_DEPTH = 16


def _valid_text(text: str) -> str:
    """Escape lone surrogates so the text always encodes as UTF-8."""
    return text.encode("utf-8", "backslashreplace").decode("utf-8")


def _safe_str(value: Any) -> str:
    try:
        text = str(value)
    except Exception:
        text = object.__repr__(value)
    return _valid_text(text)


def _clean(value: Any, depth: int = 0) -> Any:
    if isinstance(value, str):
        return _valid_text(value)
    if depth >= _MAX_META_DEPTH:
        return value
    if isinstance(value, Mapping):
        return {_safe_str(k): _clean(v, depth + 1) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_clean(v, depth + 1) for v in value]
    return value


def _coerce_meta(meta: Any) -> dict[str, Any] | None:
    if meta is None:
        return None
    try:
        if isinstance(meta, Mapping):
            return _clean(meta)
        return {"value": _clean(meta)}
    except Exception:
        return {"value": _safe_str(meta)}


def _serialize(entry: LogEntry) -> str:
    try:
        return entry.to_json()
    except Exception:
        # circular or otherwise unencodable meta
        data = entry.to_dict()
        data["meta"] = _safe_str(entry.meta)
        return json.dumps(data, ensure_ascii=False, default=_safe_str)


class _DiskWriter:
    """Single daemon thread that owns every write to the log file.

    Appends and truncates are queued and applied in FIFO order, so a truncate
    only drops lines recorded before it was requested.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._queue: queue.Queue[tuple[str, Any]] = queue.Queue()
        self._closed = False
        self._thread = threading.Thread(target=self._run, name="k11-log-writer", daemon=True)
        self._thread.start()

    @property
    def path(self) -> Path:
        return self._path

    def append(self, line: str) -> None:
        if not self._closed:
            self._queue.put(("append", line))

    def truncate(self) -> Future[bool]:
        fut: Future[bool] = Future()
        if self._closed:
            fut.set_exception(RuntimeError("log writer is closed"))
        else:
            self._queue.put(("truncate", fut))
        return fut

    def flush(self, timeout: float | None = None) -> bool:
        """Block until everything queued so far is on disk (or failed)."""
        if self._closed:
            return True
        done = threading.Event()
        self._queue.put(("flush", done))
        return done.wait(timeout)

    def close(self, timeout: float = 5.0) -> None:
        if self._closed:
            return
        self.flush(timeout)
        self._closed = True
        self._queue.put(("stop", None))
        self._thread.join(timeout)

    def _run(self) -> None:
        while True:
            ops = [self._queue.get()]
            while True:
                try:
                    ops.append(self._queue.get_nowait())
                except queue.Empty:
                    break

            pending: list[str] = []
            for op, payload in ops:
                if op == "append":
                    pending.append(payload)
                    continue
                self._write(pending)
                pending = []
                if op == "truncate":
                    self._truncate(payload)
                elif op == "flush":
                    payload.set()
                elif op == "stop":
                    return
            self._write(pending)

    def _write(self, lines: list[str]) -> None:
        if not lines:
            return
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as f:
                f.write("".join(lines))
        except (OSError, ValueError):
            pass  # persistence is best-effort; the ring stays authoritative

    def _truncate(self, fut: Future[bool]) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text("", encoding="utf-8")
        except (OSError, ValueError) as e:
            fut.set_exception(e)
        else:
            fut.set_result(True)


class EventLog:
    """Process-wide structured log: ring buffer, lifetime counters, disk sink, listeners.

    Args:
        path: JSONL file to append to. None disables persistence.
        max_lines: Ring capacity.
        echo: Mirror each entry to the loguru console.
    """

    def __init__(
        self,
        path: Path | None = None,
        max_lines: int = DEFAULT_MAX_LINES,
        echo: bool = True,
    ) -> None:
        self._max_lines = max(1, max_lines)
        self._buffer: deque[LogEntry] = deque(maxlen=self._max_lines)
        self._counts: dict[str, int] = {level: 0 for level in LEVELS}
        self._seq = 0
        # Re-entrant: a listener may itself record (e.g. a stream client dropping out).
        self._lock = threading.RLock()
        self._listeners: list[Listener] = []
        self._echo = echo
        self._started_at = time.time()
        self._started_mono = time.monotonic()
        self._writer = _DiskWriter(path) if path is not None else None

    @property
    def path(self) -> Path | None:
        return self._writer.path if self._writer else None

    @property
    def max_lines(self) -> int:
        return self._max_lines

    @property
    def started_at(self) -> float:
        return self._started_at

    # ---- Writing ----

    def record(self, level: str, module: Any, message: Any, meta: Any = None) -> LogEntry:
        """Create, store, persist and broadcast one entry. Never raises."""
        if level not in LEVELS:
            level = "info"
        with self._lock:
            self._seq += 1
            now = time.time()
            entry = LogEntry(
                id=new_entry_id(int(now * 1000)),
                timestamp=iso_timestamp(now),
                level=level,
                module=_safe_str(module) if module else "CORE",
                message=_safe_str(message),
                meta=_coerce_meta(meta),
                uptime=int(time.monotonic() - self._started_mono),
                seq=self._seq,
            )
            self._counts[level] += 1
            self._buffer.append(entry)
            if self._writer is not None:
                self._writer.append(_serialize(entry) + "\n")
            # Under the lock so every listener sees entries in record order.
            self._notify(entry)
        if self._echo:
            self._echo_console(entry)
        return entry

    def debug(self, module: Any, message: Any, meta: Any = None) -> LogEntry:
        return self.record("debug", module, message, meta)

    def info(self, module: Any, message: Any, meta: Any = None) -> LogEntry:
        return self.record("info", module, message, meta)

    def warn(self, module: Any, message: Any, meta: Any = None) -> LogEntry:
        return self.record("warn", module, message, meta)

    def error(self, module: Any, message: Any, meta: Any = None) -> LogEntry:
        return self.record("error", module, message, meta)

    def critical(self, module: Any, message: Any, meta: Any = None) -> LogEntry:
        return self.record("critical", module, message, meta)

    # ---- Reading ----

    def query(
        self,
        level: str | None = None,
        module: str | None = None,
        limit: int = 200,
    ) -> list[LogEntry]:
        """Most recent matching entries, newest first."""
        if limit <= 0:
            return []
        out: list[LogEntry] = []
        with self._lock:
            for entry in reversed(self._buffer):
                if level and entry.level != level:
                    continue
                if module and entry.module != module:
                    continue
                out.append(entry)
                if len(out) >= limit:
                    break
        return out

    def tail(self, n: int) -> tuple[list[LogEntry], int]:
        """Last n entries oldest-first, plus the newest seq at that instant."""
        with self._lock:
            entries = list(self._buffer)[-n:] if n > 0 else []
            return entries, self._seq

    def stats(self) -> dict[str, Any]:
        with self._lock:
            counts = dict(self._counts)
            size = len(self._buffer)
        return {
            **counts,
            "total": sum(counts.values()),
            "uptimeMs": int((time.monotonic() - self._started_mono) * 1000),
            "bufferSize": size,
        }

    # ---- Listeners ----

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Register a synchronous listener. Returns an idempotent remover."""
        with self._lock:
            self._listeners.append(listener)

        def remove() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return remove

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    def _notify(self, entry: LogEntry) -> None:
        for listener in list(self._listeners):
            try:
                listener(entry)
            except Exception as e:
                logger.debug(f"Event log listener {listener!r} failed: {e}")

    # ---- Disk ----

    def clear_persisted(self) -> Future[bool]:
        """Truncate the log file. Memory buffer and counters are untouched."""
        if self._writer is None:
            fut: Future[bool] = Future()
            fut.set_result(True)
        else:
            fut = self._writer.truncate()
        self.info("LOGGER", "Log file cleared by admin")
        return fut

    def flush(self, timeout: float | None = 5.0) -> bool:
        if self._writer is None:
            return True
        return self._writer.flush(timeout)

    def close(self) -> None:
        if self._writer is not None:
            self._writer.close()

    def _echo_console(self, entry: LogEntry) -> None:
        text = entry.message
        if entry.meta:
            try:
                meta = json.dumps(entry.meta, ensure_ascii=False, default=_safe_str)
            except Exception:
                meta = _safe_str(entry.meta)
            text = f"{text} {meta}"
        try:
            logger.bind(module=entry.module).log(LOGURU_LEVELS[entry.level], text)
        except (TypeError, ValueError):
            pass
