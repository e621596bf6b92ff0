"""Timer scheduling used by the pollers, retries and the persistence debounce.

Everything time-based in the daemon goes through a :class:`Scheduler` so the
retry and debounce policies can be driven by :class:`ManualScheduler` in tests
instead of real timers. Callbacks may be plain functions or coroutine
functions; awaitable results are run to completion by the scheduler.
"""

from __future__ import annotations

import asyncio
import heapq
import inspect
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol


class Cancellable(Protocol):
    def cancel(self) -> None: ...


class Scheduler:
    """Minimal timer interface shared by the production and test schedulers."""

    def time(self) -> float:
        raise NotImplementedError

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> Cancellable:
        raise NotImplementedError

    def call_soon(self, callback: Callable[..., Any], *args: Any) -> Cancellable:
        return self.call_later(0.0, callback, *args)

    def call_every(
        self, interval: float, callback: Callable[..., Any], *args: Any
    ) -> "PeriodicCall":
        """Invoke ``callback`` every ``interval`` seconds, first run after one interval."""
        periodic = PeriodicCall(self, interval, callback, args)
        periodic.start()
        return periodic


class PeriodicCall:
    """Self-rescheduling timer returned by :meth:`Scheduler.call_every`."""

    def __init__(
        self,
        scheduler: Scheduler,
        interval: float,
        callback: Callable[..., Any],
        args: tuple[Any, ...],
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._scheduler = scheduler
        self._interval = float(interval)
        self._callback = callback
        self._args = args
        self._handle: Cancellable | None = None
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def start(self) -> None:
        self._handle = self._scheduler.call_later(self._interval, self._tick)

    def _tick(self) -> Any:
        if self._cancelled:
            return None
        # Re-armed first; a failing callback does not end the cycle.
        self._handle = self._scheduler.call_later(self._interval, self._tick)
        return self._callback(*self._args)

    def cancel(self) -> None:
        self._cancelled = True
        handle = self._handle
        self._handle = None
        if handle is not None:
            handle.cancel()


class LoopScheduler(Scheduler):
    """Scheduler backed by the running asyncio event loop."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop | None = None,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self._loop = loop
        self._tasks: set[asyncio.Task] = set()
        self._log = logger or logging.getLogger("soundstate.scheduler")

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def time(self) -> float:
        return self.loop.time()

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> Cancellable:
        return self.loop.call_later(max(0.0, float(delay)), self._invoke, callback, args)

    def _invoke(self, callback: Callable[..., Any], args: tuple[Any, ...]) -> None:
        try:
            result = callback(*args)
        except Exception:  # noqa: BLE001 - a timer callback must not break the loop
            self._log.exception("Scheduled callback %r failed", callback)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result, loop=self.loop)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._log.error(
                "Scheduled task failed: %s", exc, exc_info=(type(exc), exc, exc.__traceback__)
            )

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    async def close(self) -> None:
        tasks = list(self._tasks)
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


@dataclass(order=True)
class _ScheduledCall:
    when: float
    seq: int
    callback: Callable[..., Any] = field(compare=False)
    args: tuple[Any, ...] = field(compare=False, default=())
    cancelled: bool = field(compare=False, default=False)

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler(Scheduler):
    """Virtual-time scheduler: a priority queue of due times advanced explicitly.

    Due callbacks run in due-time order (ties in scheduling order) and
    awaitable results are awaited inline, so a whole retry chain can be
    replayed deterministically with ``await scheduler.advance(...)``.
    """

    def __init__(self, start: float = 0.0) -> None:
        self._now = float(start)
        self._queue: list[_ScheduledCall] = []
        self._counter = itertools.count()

    def time(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> Cancellable:
        call = _ScheduledCall(
            when=self._now + max(0.0, float(delay)),
            seq=next(self._counter),
            callback=callback,
            args=args,
        )
        heapq.heappush(self._queue, call)
        return call

    def pending(self) -> list[tuple[float, Callable[..., Any], tuple[Any, ...]]]:
        """Return ``(due_time, callback, args)`` for every live timer, soonest first."""
        live = sorted(call for call in self._queue if not call.cancelled)
        return [(call.when, call.callback, call.args) for call in live]

    async def advance(self, seconds: float = 0.0) -> None:
        target = self._now + max(0.0, float(seconds))
        while self._queue and self._queue[0].when <= target:
            call = heapq.heappop(self._queue)
            if call.cancelled:
                continue
            self._now = max(self._now, call.when)
            result = call.callback(*call.args)
            if inspect.isawaitable(result):
                await result
        self._now = target


__all__ = [
    "Cancellable",
    "LoopScheduler",
    "ManualScheduler",
    "PeriodicCall",
    "Scheduler",
]
