"""Live log streaming -- fans event log entries out to SSE clients.

Each subscribed client gets:
  - a connection acknowledgement plus a replay of recent entries (oldest first),
  - every entry recorded afterwards, in record order, exactly once,
  - a heartbeat comment every keepalive interval.

Delivery is push-only: a client is dropped on its first failed write or
when its bounded queue overflows. Nothing is retained for dead clients.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import threading
from enum import Enum
from typing import Any, Protocol

from k11.event_log import EventLog
from k11.log import logger
from k11.types import LogEntry, iso_timestamp

HEARTBEAT_FRAME = ": ping\n\n"
_HEARTBEAT = object()


def sse_frame(data: dict[str, Any]) -> str:
    return f"data: {json.dumps(data, ensure_ascii=False, default=str)}\n\n"


class StreamSink(Protocol):
    """Anything that can push a text chunk to a connected peer."""

    async def send(self, chunk: str) -> None: ...


class ClientState(str, Enum):
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    DISCONNECTED = "disconnected"


class StreamClient:
    """One open streaming connection. Created by LogStreamer.subscribe()."""

    def __init__(
        self,
        streamer: LogStreamer,
        sink: StreamSink,
        client_id: int,
        loop: asyncio.AbstractEventLoop,
        queue_size: int,
    ) -> None:
        self.id = client_id
        self.sink = sink
        self.state = ClientState.CONNECTING
        self.delivered = 0
        self._streamer = streamer
        self._loop = loop
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=queue_size)
        self._replay: list[LogEntry] = []
        self._high_water = 0
        self._pump_task: asyncio.Task[None] | None = None
        self._keepalive_task: asyncio.Task[None] | None = None
        self._closed = asyncio.Event()

    def __repr__(self) -> str:
        return f"StreamClient(id={self.id}, state={self.state.value})"

    @property
    def closed(self) -> bool:
        return self.state is ClientState.DISCONNECTED

    async def wait_closed(self) -> None:
        await self._closed.wait()

    def close(self) -> None:
        """Detach from the streamer. Safe to call repeatedly."""
        self._streamer.unsubscribe(self)

    # ---- Streamer side ----

    def _start(self, replay: list[LogEntry], high_water: int, keepalive_interval: float) -> None:
        self._replay = replay
        self._high_water = high_water
        self._pump_task = asyncio.create_task(self._pump(), name=f"k11-stream-{self.id}")
        if keepalive_interval > 0:
            self._keepalive_task = asyncio.create_task(
                self._keepalive(keepalive_interval), name=f"k11-keepalive-{self.id}",
            )

    def _offer(self, entry: LogEntry) -> None:
        """Called from the event log listener, possibly off the loop thread."""
        if self.closed:
            return
        try:
            self._loop.call_soon_threadsafe(self._enqueue, entry)
        except RuntimeError:
            pass  # loop already closed

    def _enqueue(self, item: Any) -> None:
        if self.closed:
            return
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            logger.debug(f"Stream client {self.id} too slow, dropping")
            self._streamer.unsubscribe(self)

    def _teardown(self) -> bool:
        """Stop all activity. Returns True only on the first call."""
        if self.closed:
            return False
        self.state = ClientState.DISCONNECTED
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        for task in (self._keepalive_task, self._pump_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._closed.set()
        return True

    async def _pump(self) -> None:
        try:
            await self.sink.send(sse_frame({"type": "connected", "ts": iso_timestamp()}))
            for entry in self._replay:
                await self.sink.send(sse_frame(entry.to_dict()))
            self._replay = []
            if self.closed:
                return
            self.state = ClientState.SUBSCRIBED

            while True:
                item = await self._queue.get()
                if item is _HEARTBEAT:
                    await self.sink.send(HEARTBEAT_FRAME)
                    continue
                if item.seq <= self._high_water:
                    continue  # already sent as part of the replay
                await self.sink.send(sse_frame(item.to_dict()))
                self.delivered += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug(f"Stream client {self.id} write failed: {e}")
            self._streamer.unsubscribe(self)

    async def _keepalive(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self._enqueue(_HEARTBEAT)


class LogStreamer:
    """Fan-out manager: one event log listener, many stream clients.

    The client set is guarded by a lock because the listener may run on
    any thread that records to the event log. Client lifecycle operations
    (subscribe, unsubscribe, close_all) run on the event loop.
    """

    def __init__(
        self,
        event_log: EventLog,
        keepalive_interval: float = 25.0,
        replay: int = 50,
        queue_size: int = 1000,
    ) -> None:
        self._log = event_log
        self._keepalive_interval = keepalive_interval
        self._replay = replay
        self._queue_size = max(1, queue_size)
        self._clients: dict[int, StreamClient] = {}
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._remove_listener = event_log.add_listener(self._on_entry)

    @property
    def client_count(self) -> int:
        with self._lock:
            return len(self._clients)

    def clients(self) -> list[StreamClient]:
        with self._lock:
            return list(self._clients.values())

    async def subscribe(self, sink: StreamSink) -> StreamClient:
        """Attach a sink. Acknowledgement and replay are written by the client's pump."""
        client = StreamClient(
            self, sink, next(self._ids), asyncio.get_running_loop(), self._queue_size,
        )
        with self._lock:
            self._clients[client.id] = client
            total = len(self._clients)
        # Registered before the snapshot: entries recorded in between reach the
        # queue and are skipped there by seq, so none is lost or sent twice.
        replay, high_water = self._log.tail(self._replay)
        client._start(replay, high_water, self._keepalive_interval)
        self._log.info("SSE", f"Client connected (total: {total})")
        return client

    def unsubscribe(self, client: StreamClient) -> None:
        with self._lock:
            self._clients.pop(client.id, None)
            total = len(self._clients)
        if client._teardown():
            self._log.debug("SSE", f"Client disconnected (total: {total})")

    async def close_all(self) -> None:
        clients = self.clients()
        tasks = [c._pump_task for c in clients if c._pump_task is not None]
        for client in clients:
            self.unsubscribe(client)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def close(self) -> None:
        """Stop listening to the event log. Existing clients are left to close_all()."""
        self._remove_listener()

    def _on_entry(self, entry: LogEntry) -> None:
        with self._lock:
            clients = list(self._clients.values())
        for client in clients:
            client._offer(entry)
