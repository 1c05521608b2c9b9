"""Coalescing live-update hub for connected viewers.

Consumers only learn that *something* changed and are expected to refetch.
Each consumer owns a bounded queue; the hub never awaits a consumer, and a
consumer whose queue is full is dropped.

Messages are plain dicts::

    {"event": "connected", "data": {"ts": "..."}}
    {"event": "data-changed", "data": {"ts": "..."}}
    {"event": "keep-alive", "data": {"ts": "..."}}
"""

from __future__ import annotations

import asyncio
import itertools
import json
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from loguru import logger

from ..board.model import now_iso
from ..constants import DEFAULT_COALESCE_MS, DEFAULT_HEARTBEAT_SECONDS, DEFAULT_QUEUE_SIZE

CONNECTED = "connected"
DATA_CHANGED = "data-changed"
KEEP_ALIVE = "keep-alive"


@dataclass
class LiveConsumer:
    id: int
    queue: asyncio.Queue
    connected_at: float = field(default_factory=time.time)
    closed: bool = False

    async def get(self, timeout: Optional[float] = None) -> Optional[dict[str, Any]]:
        """Next message, or None when *timeout* elapses first or the consumer is closed."""
        if self.closed:
            return None
        if timeout is None:
            return await self.queue.get()
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def close(self) -> None:
        """Mark the consumer closed and wake a reader blocked in :meth:`get`."""
        if self.closed:
            return
        self.closed = True
        while not self.queue.empty():
            self.queue.get_nowait()
        self.queue.put_nowait(None)


def format_sse(message: dict[str, Any]) -> str:
    """Render a hub message as a Server-Sent Events frame."""
    if message.get("event") == KEEP_ALIVE:
        return ": keep-alive\n\n"
    return f"event: {message['event']}\ndata: {json.dumps(message.get('data') or {})}\n\n"


class LiveHub:
    """Registry of live consumers with debounced change notifications.

    Usage::

        hub = LiveHub()
        hub.attach_loop(asyncio.get_running_loop())

        consumer = hub.subscribe()          # inside the loop
        hub.notify()                        # from any thread
        message = await consumer.get()
    """

    def __init__(
        self,
        coalesce_ms: int = DEFAULT_COALESCE_MS,
        heartbeat_seconds: float = DEFAULT_HEARTBEAT_SECONDS,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ) -> None:
        self.coalesce_seconds = coalesce_ms / 1000.0
        self.heartbeat_seconds = heartbeat_seconds
        self.queue_size = queue_size
        self._consumers: dict[int, LiveConsumer] = {}
        self._ids = itertools.count(1)
        self._loop: asyncio.AbstractEventLoop | None = None
        self._lock = threading.Lock()
        self._timer: asyncio.TimerHandle | None = None
        self._heartbeat: asyncio.Task | None = None

    @property
    def consumer_count(self) -> int:
        return len(self._consumers)

    def attach_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        with self._lock:
            self._loop = loop

    # ------------------------------------------------------------------
    # Registry (loop thread only)
    # ------------------------------------------------------------------

    def subscribe(self) -> LiveConsumer:
        loop = asyncio.get_running_loop()
        self.attach_loop(loop)
        consumer = LiveConsumer(id=next(self._ids), queue=asyncio.Queue(maxsize=self.queue_size))
        consumer.queue.put_nowait({"event": CONNECTED, "data": {"ts": now_iso()}})
        self._consumers[consumer.id] = consumer
        if self._heartbeat is None or self._heartbeat.done():
            self._heartbeat = loop.create_task(self._heartbeat_loop())
        logger.debug("Live consumer {} connected (total={})", consumer.id, self.consumer_count)
        return consumer

    def unsubscribe(self, consumer: LiveConsumer) -> None:
        consumer.close()
        if self._consumers.pop(consumer.id, None) is not None:
            logger.debug("Live consumer {} disconnected (total={})", consumer.id, self.consumer_count)

    def broadcast(self, event: str, data: Optional[dict[str, Any]] = None) -> int:
        """Push *event* to every consumer; returns how many received it.

        A consumer whose queue is full is closed and removed so its
        transport ends the connection and the client reconnects.
        """
        message = {"event": event, "data": data or {}}
        stale: list[LiveConsumer] = []
        delivered = 0
        for consumer in list(self._consumers.values()):
            try:
                consumer.queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                stale.append(consumer)
        for consumer in stale:
            self._consumers.pop(consumer.id, None)
            consumer.close()
            logger.debug("Dropped live consumer {}: queue full", consumer.id)
        return delivered

    # ------------------------------------------------------------------
    # Notifications (any thread)
    # ------------------------------------------------------------------

    def notify(self) -> None:
        """Request a ``data-changed`` broadcast once the board goes quiet.

        Each call restarts the coalescing window.  Without an attached loop
        there is nobody to notify and the call is a no-op.
        """
        with self._lock:
            loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._restart_timer()
            return
        try:
            loop.call_soon_threadsafe(self._restart_timer)
        except RuntimeError:
            # Loop closed between the check and the call.
            logger.debug("Live hub loop closed; notification skipped")

    def _restart_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.coalesce_seconds, self._flush)

    def _flush(self) -> None:
        self._timer = None
        self.broadcast(DATA_CHANGED, {"ts": now_iso()})

    async def _heartbeat_loop(self) -> None:
        while self._consumers:
            await asyncio.sleep(self.heartbeat_seconds)
            self.broadcast(KEEP_ALIVE, {"ts": now_iso()})

    def close(self) -> None:
        """Cancel pending timers and close every consumer."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._heartbeat is not None:
            self._heartbeat.cancel()
            self._heartbeat = None
        for consumer in self._consumers.values():
            consumer.close()
        self._consumers.clear()
