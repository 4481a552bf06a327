"""JSON dataset store -- files on disk behind an in-memory TTL cache."""

from __future__ import annotations

import json
import threading
import time
from collections.abc import Mapping
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from k11.event_log import EventLog

DEFAULT_CACHE_TTL = 30.0

DEFAULT_DATASETS: dict[str, str] = {
    "products": "products.json",
    "pos": "pos.json",
    "pos_previous": "pos_previous.json",
    "movements": "movements.json",
    "audit": "audit.json",
    "suppliers": "suppliers.json",
    "tasks": "tasks.json",
}


def _normalize(data: Any) -> list[Any]:
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        if "data" in data:
            inner = data["data"]
            return inner if isinstance(inner, list) else [inner]
        return list(data.values())
    return [data]


class DataStore:
    """Reads JSON datasets by name, caching parsed rows for cache_ttl seconds.

    Reads never raise: a missing or unreadable file yields [] and is counted
    as an error. Writes go straight to disk and invalidate the cache entry.
    """

    def __init__(
        self,
        data_dir: Path,
        event_log: EventLog,
        datasets: Mapping[str, str] | None = None,
        cache_ttl: float = DEFAULT_CACHE_TTL,
    ) -> None:
        self._dir = data_dir
        self._log = event_log
        self._datasets = dict(datasets if datasets is not None else DEFAULT_DATASETS)
        self._ttl = cache_ttl
        self._cache: dict[str, tuple[float, list[Any]]] = {}  # filename -> (loaded_at, rows)
        self._lock = threading.Lock()
        self._reads = 0
        self._writes = 0
        self._errors = 0

        if not self._dir.exists():
            try:
                self._dir.mkdir(parents=True, exist_ok=True)
                self._log.warn("DATASTORE", f"Data dir created, place JSON files in: {self._dir}")
            except OSError as e:
                self._log.error("DATASTORE", "Cannot create data dir", {"dir": str(self._dir), "error": str(e)})

        self._log.info("DATASTORE", "DataStore initialized", {
            "dir": str(self._dir), "datasets": len(self._datasets),
        })

    @property
    def datasets(self) -> list[str]:
        return list(self._datasets)

    def _filename(self, name: str) -> str:
        if name in self._datasets:
            return self._datasets[name]
        return name if name.endswith(".json") else f"{name}.json"

    # ---- Reading ----

    def get(self, name: str, bust_cache: bool = False) -> list[Any]:
        filename = self._filename(name)
        path = self._dir / filename

        if not bust_cache:
            with self._lock:
                cached = self._cache.get(filename)
            if cached and time.monotonic() - cached[0] < self._ttl:
                self._log.debug("DATASTORE", f"Cache HIT: {filename}")
                return cached[1]

        if not path.exists():
            with self._lock:
                self._errors += 1
            self._log.warn("DATASTORE", f"File not found: {filename}", {"path": str(path)})
            return []

        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            with self._lock:
                self._errors += 1
            self._log.error("DATASTORE", f"Failed to read {filename}", {"error": str(e)})
            return []

        rows = _normalize(data)
        with self._lock:
            self._reads += 1
            self._cache[filename] = (time.monotonic(), rows)
        self._log.debug("DATASTORE", f"Read: {filename}", {"rows": len(rows)})
        return rows

    def get_all(self) -> dict[str, list[Any]]:
        result = {name: self.get(name) for name in self._datasets}
        self._log.info("DATASTORE", "All datasets loaded", {
            "totals": {name: len(rows) for name, rows in result.items()},
        })
        return result

    # ---- Writing ----

    def set(self, name: str, data: Any) -> bool:
        filename = self._filename(name)
        path = self._dir / filename
        try:
            path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
        except (OSError, TypeError, ValueError) as e:
            with self._lock:
                self._errors += 1
            self._log.error("DATASTORE", f"Failed to write {filename}", {"error": str(e)})
            return False

        with self._lock:
            self._writes += 1
            self._cache.pop(filename, None)
        self._log.info("DATASTORE", f"Written: {filename}", {
            "rows": len(data) if isinstance(data, list) else 1,
        })
        return True

    def update_item(self, name: str, item_id: Any, patch: Mapping[str, Any]) -> dict[str, Any] | None:
        rows = list(self.get(name, bust_cache=True))
        for idx, item in enumerate(rows):
            if isinstance(item, dict) and str(item.get("id")) == str(item_id):
                updated = {
                    **item,
                    **patch,
                    "updatedAt": datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
                }
                rows[idx] = updated
                if not self.set(name, rows):
                    return None
                return updated
        self._log.warn("DATASTORE", "Item not found for update", {"dataset": name, "id": str(item_id)})
        return None

    def toggle_done(self, name: str, item_id: Any) -> dict[str, Any] | None:
        for item in self.get(name, bust_cache=True):
            if isinstance(item, dict) and str(item.get("id")) == str(item_id):
                return self.update_item(name, item_id, {"done": not item.get("done", False)})
        return None

    # ---- Housekeeping ----

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()
        self._log.info("DATASTORE", "Cache cleared manually")

    def list_files(self) -> list[dict[str, Any]]:
        try:
            paths = sorted(p for p in self._dir.iterdir() if p.suffix == ".json")
        except OSError:
            return []
        with self._lock:
            loaded = set(self._cache)
        files: list[dict[str, Any]] = []
        for p in paths:
            try:
                st = p.stat()
            except OSError:
                continue
            files.append({
                "name": p.name,
                "size": st.st_size,
                "modified": datetime.fromtimestamp(st.st_mtime, timezone.utc).isoformat(),
                "loaded": p.name in loaded,
            })
        return files

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "reads": self._reads,
                "writes": self._writes,
                "errors": self._errors,
                "cacheSize": len(self._cache),
                "cacheTTL": int(self._ttl * 1000),
                "dataDir": str(self._dir),
                "datasets": list(self._datasets),
            }
