"""Wires the gate, pollers, state store and persistence into one owner."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict

from . import config as config_module
from .battery import BatteryPoller
from .devices import BATTERY_MARKERS, CANONICAL_NAMES
from .events import StateEventBus
from .gate import ResourceGate
from .gateway import BatteryReader, DeviceScanner, cleanup_stale_dumps
from .persistence import DebouncedWriter
from .scheduler import LoopScheduler, PeriodicCall, Scheduler
from .state import Memory, StateStore, load_memory
from .watcher import DeviceWatcher


@dataclass(frozen=True)
class PollingSettings:
    startup_delay: float = 5.0
    device_interval: float = 3.0
    battery_interval: float = 600.0
    battery_stagger: float = 1.5
    battery_busy_retry: float = 1.0
    battery_retry: float = 20.0
    battery_max_attempts: int = 10
    debounce: float = 2.0

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "PollingSettings":
        polling = cfg.get("polling", {})
        persistence = cfg.get("persistence", {})
        return cls(
            startup_delay=float(polling.get("startup_delay_sec", cls.startup_delay)),
            device_interval=float(polling.get("device_interval_sec", cls.device_interval)),
            battery_interval=float(polling.get("battery_interval_sec", cls.battery_interval)),
            battery_stagger=float(polling.get("battery_stagger_sec", cls.battery_stagger)),
            battery_busy_retry=float(
                polling.get("battery_busy_retry_sec", cls.battery_busy_retry)
            ),
            battery_retry=float(polling.get("battery_retry_sec", cls.battery_retry)),
            battery_max_attempts=int(
                polling.get("battery_max_attempts", cls.battery_max_attempts)
            ),
            debounce=float(persistence.get("debounce_sec", cls.debounce)),
        )


class Coordinator:
    """Single owner of the daemon's mutable state and timers."""

    def __init__(
        self,
        *,
        scheduler: Scheduler,
        scanner: Any,
        reader: Any,
        state_path: Path | None = None,
        memory: Memory | None = None,
        bus: StateEventBus | None = None,
        settings: PollingSettings | None = None,
        dump_dir: Path | None = None,
        canonical_names: tuple[str, ...] = CANONICAL_NAMES,
        battery_markers: tuple[str, ...] = BATTERY_MARKERS,
        writer: DebouncedWriter | None = None,
    ) -> None:
        self.log = logging.getLogger("soundstate.coordinator")
        self.scheduler = scheduler
        self.settings = settings or PollingSettings()
        self.bus = bus or StateEventBus()
        self.gate = ResourceGate()
        self.dump_dir = dump_dir
        self.state_path = state_path

        if memory is None:
            memory = load_memory(state_path) if state_path is not None else Memory()
        self.store = StateStore(memory, battery_markers=battery_markers)

        if writer is None and state_path is not None:
            writer = DebouncedWriter.for_path(
                scheduler,
                lambda: self.store.memory.to_payload(),
                state_path,
                delay=self.settings.debounce,
            )
        self.writer = writer
        self.store.bind(
            publish=self.bus.publish,
            persist=writer.schedule if writer is not None else None,
        )

        self.poller = BatteryPoller(
            self.store,
            self.gate,
            reader,
            scheduler,
            max_attempts=self.settings.battery_max_attempts,
            busy_retry_delay=self.settings.battery_busy_retry,
            retry_delay=self.settings.battery_retry,
        )
        self.watcher = DeviceWatcher(
            self.store,
            self.gate,
            scanner,
            on_battery_device=self.poller.trigger,
            canonical_names=canonical_names,
        )
        self._periodic: list[PeriodicCall] = []
        self._started = False

    @classmethod
    def from_config(
        cls,
        cfg: Dict[str, Any],
        *,
        scheduler: Scheduler | None = None,
    ) -> "Coordinator":
        paths = cfg.get("paths", {})
        tools = cfg.get("tools", {})
        devices = cfg.get("devices", {})
        timeout = float(tools.get("timeout_sec", 15.0))
        dump_dir = config_module.resolve_path(cfg, paths.get("dump_dir") or ".")
        scanner = DeviceScanner(
            config_module.resolve_path(cfg, tools.get("sound_volume_view") or "SoundVolumeView.exe"),
            dump_dir,
            timeout=timeout,
        )
        reader = BatteryReader(
            config_module.resolve_path(cfg, tools.get("headset_control") or "HeadsetControl.exe"),
            timeout=timeout,
        )
        return cls(
            scheduler=scheduler or LoopScheduler(),
            scanner=scanner,
            reader=reader,
            state_path=config_module.resolve_path(
                cfg, paths.get("data_file") or "volume_data.json"
            ),
            settings=PollingSettings.from_config(cfg),
            dump_dir=dump_dir,
            canonical_names=tuple(
                config_module.string_list(devices.get("canonical_names"), list(CANONICAL_NAMES))
            ),
            battery_markers=tuple(
                config_module.string_list(devices.get("battery_markers"), list(BATTERY_MARKERS))
            ),
        )

    def current_state(self) -> dict[str, Any]:
        return self.store.current_state()

    def update_profile(self, *, volume: Any = None, mute: Any = None) -> bool:
        return self.store.update_profile(volume=volume, mute=mute)

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        if self.dump_dir is not None:
            cleanup_stale_dumps(self.dump_dir, self.log)
        # The long battery cycle counts from process start, not from the startup delay.
        self._periodic.append(
            self.scheduler.call_every(self.settings.battery_interval, self.poller.check, 0)
        )
        self.scheduler.call_later(self.settings.startup_delay, self._begin_polling)

    def _begin_polling(self) -> None:
        if not self._started:
            return
        self.log.info("Starting device polling")
        self._periodic.append(
            self.scheduler.call_every(self.settings.device_interval, self.watcher.check)
        )
        self.scheduler.call_soon(self.watcher.check)
        self.scheduler.call_later(self.settings.battery_stagger, self.poller.check, 0)

    async def stop(self) -> None:
        self._started = False
        for periodic in self._periodic:
            periodic.cancel()
        self._periodic.clear()
        if self.writer is not None and await self.writer.flush():
            self.log.info("Flushed pending state to %s", self.state_path)
        if isinstance(self.scheduler, LoopScheduler):
            await self.scheduler.close()


__all__ = ["Coordinator", "PollingSettings"]
