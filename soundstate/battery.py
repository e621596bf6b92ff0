"""Headset battery polling with busy-requeue and bounded retries."""

from __future__ import annotations

import logging
from typing import Protocol

from .gate import ResourceGate
from .gateway import BatteryResult
from .scheduler import Scheduler
from .state import StateStore

DEFAULT_MAX_ATTEMPTS = 10
DEFAULT_BUSY_RETRY_SECONDS = 1.0
DEFAULT_RETRY_SECONDS = 20.0

NOT_APPLICABLE = "not-applicable"
DEFERRED = "deferred"
RETRY_SCHEDULED = "retry-scheduled"
GAVE_UP = "gave-up"
UPDATED = "updated"
UNCHANGED = "unchanged"
NO_READING = "no-reading"


class Reader(Protocol):
    async def query(self) -> BatteryResult: ...


class BatteryPoller:
    """Runs attempt sequences against HeadsetControl.

    A sequence starts at attempt 0. A busy gate requeues the same attempt
    after ``busy_retry_delay`` without using up an attempt; an unavailable
    reading schedules the next attempt after ``retry_delay`` until
    ``max_attempts`` readings have failed.
    """

    def __init__(
        self,
        store: StateStore,
        gate: ResourceGate,
        reader: Reader,
        scheduler: Scheduler,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        busy_retry_delay: float = DEFAULT_BUSY_RETRY_SECONDS,
        retry_delay: float = DEFAULT_RETRY_SECONDS,
        logger: logging.Logger | None = None,
    ) -> None:
        if max_attempts <= 0:
            raise ValueError("max_attempts must be positive")
        self._store = store
        self._gate = gate
        self._reader = reader
        self._scheduler = scheduler
        self.max_attempts = int(max_attempts)
        self.busy_retry_delay = float(busy_retry_delay)
        self.retry_delay = float(retry_delay)
        self._log = logger or logging.getLogger("soundstate.battery")

    def trigger(self) -> None:
        """Start a fresh sequence on the next loop turn."""
        self._scheduler.call_soon(self.check, 0)

    async def check(self, attempt: int = 0) -> str:
        if not self._store.is_battery_device():
            return NOT_APPLICABLE

        if attempt == 0:
            self._log.info("Checking battery for %s", self._store.current_device)

        acquired = self._gate.acquire_or_defer(
            self._scheduler,
            self.busy_retry_delay,
            self.check,
            attempt,
            holder="battery-query",
        )
        if not acquired:
            self._log.info(
                "System busy; retrying battery check in %.0fs", self.busy_retry_delay
            )
            return DEFERRED

        try:
            result = await self._reader.query()
        except Exception as exc:  # noqa: BLE001 - treated like an unavailable reading
            self._log.error("Battery query failed: %s", exc)
            result = BatteryResult(False, detail=str(exc))
        finally:
            self._gate.release()

        if not result.available:
            return self._handle_unavailable(attempt, result)

        if result.level is None:
            self._log.info("HeadsetControl reported no battery level; ending check")
            return NO_READING
        if attempt > 0:
            self._log.info("Battery read succeeded on attempt %d", attempt + 1)
        if self._store.set_battery_level(result.level):
            return UPDATED
        self._log.info("Battery level unchanged (%s%%)", result.level)
        return UNCHANGED

    def _handle_unavailable(self, attempt: int, result: BatteryResult) -> str:
        self._log.warning(
            "[Attempt %d/%d] Battery unavailable (%s)",
            attempt + 1,
            self.max_attempts,
            result.detail or "no detail",
        )
        if attempt + 1 < self.max_attempts:
            self._log.info("Retrying battery check in %.0fs", self.retry_delay)
            self._scheduler.call_later(self.retry_delay, self.check, attempt + 1)
            return RETRY_SCHEDULED
        self._log.warning(
            "Max retries (%d) reached; giving up until next scheduled cycle",
            self.max_attempts,
        )
        return GAVE_UP


__all__ = [
    "BatteryPoller",
    "DEFERRED",
    "GAVE_UP",
    "NOT_APPLICABLE",
    "NO_READING",
    "RETRY_SCHEDULED",
    "UNCHANGED",
    "UPDATED",
]
