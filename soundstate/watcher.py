"""Periodic default-playback-device detection."""

from __future__ import annotations

import logging
from typing import Callable, Iterable, Protocol

from .devices import CANONICAL_NAMES, DeviceRecord, clean_name
from .gate import ResourceGate
from .state import StateStore

SKIPPED = "skipped"
UNCHANGED = "unchanged"
CHANGED = "changed"
ERROR = "error"

IDLE = "idle"
SCANNING = "scanning"


class Scanner(Protocol):
    async def scan(self) -> DeviceRecord | None: ...


class DeviceWatcher:
    def __init__(
        self,
        store: StateStore,
        gate: ResourceGate,
        scanner: Scanner,
        *,
        on_battery_device: Callable[[], None] | None = None,
        canonical_names: Iterable[str] = CANONICAL_NAMES,
        logger: logging.Logger | None = None,
    ) -> None:
        self._store = store
        self._gate = gate
        self._scanner = scanner
        self._on_battery_device = on_battery_device
        self._canonical_names = tuple(canonical_names)
        self._log = logger or logging.getLogger("soundstate.watcher")
        self.state = IDLE
        self.last_outcome: str | None = None

    async def check(self) -> str:
        """Run one scan cycle; skipped entirely when the gate is busy."""
        if not self._gate.try_acquire("device-scan"):
            self._log.debug("Audio tools busy; skipping device scan")
            return SKIPPED

        self.state = SCANNING
        try:
            record = await self._scanner.scan()
            outcome = self._apply(record)
        except Exception as exc:  # noqa: BLE001 - a bad scan must not stop polling
            self._log.error("Error in device scan: %s", exc, exc_info=True)
            outcome = ERROR
        finally:
            self._gate.release()
            self.state = IDLE

        self.last_outcome = outcome
        return outcome

    def _apply(self, record: DeviceRecord | None) -> str:
        if record is None:
            return UNCHANGED
        identity = clean_name(record.display_name, self._canonical_names)
        if identity is None or identity == self._store.current_device:
            return UNCHANGED

        battery_device = self._store.is_battery_device(identity)
        self._store.switch_device(identity)
        if battery_device and self._on_battery_device is not None:
            self._log.info("Battery-capable device detected; triggering battery check")
            self._on_battery_device()
        return CHANGED


__all__ = ["CHANGED", "DeviceWatcher", "ERROR", "SKIPPED", "UNCHANGED"]
