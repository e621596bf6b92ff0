"""Server-Sent Events publisher for live state updates."""

from __future__ import annotations

import asyncio
import copy
import threading
import time
from typing import Any, Set

STATE_CHANGE_EVENT = "state-change"


class StateEventBus:
    """In-process publisher that fans out state events to SSE clients."""

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop | None = None,
        max_queue_size: int = 32,
    ) -> None:
        if max_queue_size <= 0:
            raise ValueError("max_queue_size must be positive")
        self._loop: asyncio.AbstractEventLoop | None = loop
        self._max_queue_size = max_queue_size
        self._subscribers: Set[asyncio.Queue] = set()
        self._seq = 0
        self._lock = threading.Lock()

    def set_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        with self._lock:
            self._loop = loop

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def subscribe(self, *, initial: tuple[str, Any] | None = None) -> asyncio.Queue:
        """Register a subscriber queue, optionally primed with one event."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue_size)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None:
            self.set_loop(loop)

        with self._lock:
            self._subscribers.add(queue)
            if initial is not None:
                event = self._make_event(*initial)
            else:
                event = None
        if event is not None:
            self._enqueue_nowait(queue, event)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        with self._lock:
            self._subscribers.discard(queue)

    def _make_event(self, event_type: str, payload: Any) -> dict[str, Any]:
        self._seq += 1
        seq = self._seq
        event_payload = copy.deepcopy(payload) if isinstance(payload, (dict, list)) else payload
        return {
            "id": str(seq),
            "seq": seq,
            "type": event_type,
            "timestamp": time.time(),
            "payload": event_payload,
        }

    def publish(self, event_type: str, payload: Any) -> str:
        if not event_type or not isinstance(event_type, str):
            raise ValueError("event_type must be a non-empty string")
        with self._lock:
            event = self._make_event(event_type, payload)
            loop = self._loop
            subscribers = list(self._subscribers)

        if not subscribers:
            return event["id"]

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if loop is None or loop is running:
            for queue in subscribers:
                self._enqueue_nowait(queue, event)
            return event["id"]

        def _deliver() -> None:
            for queue in subscribers:
                self._enqueue_nowait(queue, event)

        loop.call_soon_threadsafe(_deliver)
        return event["id"]

    def close(self) -> None:
        """Wake every subscriber with a ``None`` sentinel so streams can end."""
        with self._lock:
            subscribers = list(self._subscribers)
        for queue in subscribers:
            try:
                queue.put_nowait(None)
            except asyncio.QueueFull:
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
                queue.put_nowait(None)

    def _enqueue_nowait(self, queue: asyncio.Queue, event: dict[str, Any]) -> None:
        try:
            queue.put_nowait(event)
        except asyncio.QueueFull:
            try:
                queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                # Slow consumer; drop newest event for this subscriber.
                pass


__all__ = ["STATE_CHANGE_EVENT", "StateEventBus"]
