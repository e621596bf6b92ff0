"""Mutual exclusion for the external audio tools.

SoundVolumeView and HeadsetControl both talk to the Windows audio stack and
must never run at the same time. The gate is non-blocking: callers either skip
their turn or ask for the same call to be retried later.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from .scheduler import Scheduler


class GateNotHeldError(RuntimeError):
    """Raised when releasing a gate that nobody holds."""


class ResourceGate:
    def __init__(self, name: str = "audio-tools") -> None:
        self.name = name
        self._holder: str | None = None
        self._log = logging.getLogger("soundstate.gate")

    @property
    def busy(self) -> bool:
        return self._holder is not None

    @property
    def holder(self) -> str | None:
        return self._holder

    def try_acquire(self, holder: str = "anonymous") -> bool:
        """Take the gate if it is free. Never waits."""
        if self._holder is not None:
            return False
        self._holder = holder
        return True

    def acquire_or_defer(
        self,
        scheduler: Scheduler,
        delay: float,
        callback: Callable[..., Any],
        *args: Any,
        holder: str = "anonymous",
    ) -> bool:
        """Take the gate, or schedule ``callback(*args)`` again after ``delay``.

        Returns ``True`` when the gate was acquired. On ``False`` the retry is
        already queued and the caller should return without doing any work.
        """
        if self.try_acquire(holder):
            return True
        self._log.debug(
            "%s busy (held by %s); retrying %s in %.1fs",
            self.name,
            self._holder,
            holder,
            delay,
        )
        scheduler.call_later(delay, callback, *args)
        return False

    def release(self) -> None:
        if self._holder is None:
            raise GateNotHeldError(f"{self.name} gate released while not held")
        self._holder = None


__all__ = ["GateNotHeldError", "ResourceGate"]
