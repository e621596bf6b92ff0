"""Debounced, best-effort JSON snapshots of the in-memory state."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Callable

from .scheduler import Cancellable, Scheduler

DEFAULT_DEBOUNCE_SECONDS = 2.0


def write_json_atomic(path: str | os.PathLike[str], payload: Any) -> None:
    target = Path(path)
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
    except OSError:
        pass
    # Unique temp name per write; concurrent writers never share a temp file.
    with tempfile.NamedTemporaryFile(
        "w",
        encoding="utf-8",
        dir=target.parent,
        prefix=f".{target.name}.",
        suffix=".tmp",
        delete=False,
    ) as handle:
        tmp_path = Path(handle.name)
        try:
            json.dump(payload, handle, indent=2)
            handle.write("\n")
        except (TypeError, ValueError):
            handle.close()
            tmp_path.unlink(missing_ok=True)
            raise
    try:
        os.replace(tmp_path, target)
    except OSError:
        tmp_path.unlink(missing_ok=True)
        raise


class DebouncedWriter:
    """Coalesce bursts of changes into one write after a quiet period.

    ``schedule()`` replaces any pending timer, so at most one write is ever
    outstanding. The payload is taken from ``snapshot`` when the timer fires,
    which means the file always reflects the state after the last change.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        snapshot: Callable[[], Any],
        write: Callable[[Any], None],
        *,
        delay: float = DEFAULT_DEBOUNCE_SECONDS,
        logger: logging.Logger | None = None,
    ) -> None:
        self._scheduler = scheduler
        self._snapshot = snapshot
        self._write = write
        self._delay = max(0.0, float(delay))
        self._handle: Cancellable | None = None
        self._write_lock = asyncio.Lock()
        self._log = logger or logging.getLogger("soundstate.persistence")
        self.write_count = 0

    @classmethod
    def for_path(
        cls,
        scheduler: Scheduler,
        snapshot: Callable[[], Any],
        path: str | os.PathLike[str],
        **kwargs: Any,
    ) -> "DebouncedWriter":
        target = Path(path)
        return cls(scheduler, snapshot, lambda payload: write_json_atomic(target, payload), **kwargs)

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def schedule(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
        self._handle = self._scheduler.call_later(self._delay, self._fire)

    async def _fire(self) -> None:
        self._handle = None
        await self._write_snapshot()

    async def flush(self) -> bool:
        """Write immediately if a write is pending. Returns ``True`` if one ran."""
        handle = self._handle
        if handle is None:
            return False
        handle.cancel()
        self._handle = None
        await self._write_snapshot()
        return True

    async def _write_snapshot(self) -> None:
        # One write at a time; the snapshot is taken once the previous write is done.
        async with self._write_lock:
            payload = self._snapshot()
            try:
                await asyncio.to_thread(self._write, payload)
            except (OSError, TypeError, ValueError) as exc:
                # Memory stays authoritative; the next change retries the write.
                self._log.debug("State snapshot write failed: %s", exc)
                return
            self.write_count += 1


__all__ = ["DEFAULT_DEBOUNCE_SECONDS", "DebouncedWriter", "write_json_atomic"]
