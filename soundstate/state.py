"""Authoritative in-memory state: current device, battery level and profiles."""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable

from .devices import BATTERY_MARKERS, is_battery_capable
from .events import STATE_CHANGE_EVENT

DEFAULT_DEVICE = "Detecting..."
BATTERY_PLACEHOLDER = "--"
ACTIVE_DEFAULT_VOLUME = 50
MUTATION_DEFAULT_VOLUME = 0
DEFAULT_MUTE = "Off"

_INT_TEXT = re.compile(r"^-?\d+$")

log = logging.getLogger("soundstate.state")


@dataclass(slots=True)
class Profile:
    volume: Any = MUTATION_DEFAULT_VOLUME
    mute: str = DEFAULT_MUTE

    def to_payload(self) -> dict[str, Any]:
        return {"vol": self.volume, "mute": self.mute}

    @classmethod
    def from_payload(cls, raw: Any) -> "Profile | None":
        if not isinstance(raw, dict):
            return None
        volume = raw.get("vol", raw.get("volume", MUTATION_DEFAULT_VOLUME))
        mute = raw.get("mute", DEFAULT_MUTE)
        if isinstance(volume, (list, dict)) or volume is None:
            volume = MUTATION_DEFAULT_VOLUME
        return cls(coerce_volume(volume), str(mute) if mute is not None else DEFAULT_MUTE)


@dataclass(slots=True)
class Memory:
    """Snapshot shape persisted to ``volume_data.json``."""

    current_device: str = DEFAULT_DEVICE
    battery: str = BATTERY_PLACEHOLDER
    profiles: dict[str, Profile] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {
            "currentDev": self.current_device,
            "battery": self.battery,
            "profiles": {name: profile.to_payload() for name, profile in self.profiles.items()},
        }

    @classmethod
    def from_payload(cls, data: Any) -> "Memory":
        if not isinstance(data, dict):
            raise ValueError("state document must be a JSON object")
        current = data.get("currentDev")
        if not isinstance(current, str) or not current.strip():
            current = DEFAULT_DEVICE
        battery = data.get("battery")
        if isinstance(battery, (int, float)) and not isinstance(battery, bool):
            battery = str(int(battery))
        if not isinstance(battery, str) or not battery:
            battery = BATTERY_PLACEHOLDER
        profiles: dict[str, Profile] = {}
        raw_profiles = data.get("profiles")
        if isinstance(raw_profiles, dict):
            for name, raw in raw_profiles.items():
                profile = Profile.from_payload(raw)
                if profile is not None and isinstance(name, str) and name:
                    profiles[name] = profile
        return cls(current, battery, profiles)


def coerce_volume(value: Any) -> Any:
    """Store numeric text as a number; anything else is kept verbatim."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value
    text = str(value).strip()
    if _INT_TEXT.match(text):
        return int(text)
    try:
        number = float(text)
    except ValueError:
        return text
    if number != number or number in (float("inf"), float("-inf")):
        return text
    return number


def values_equal(current: Any, candidate: Any) -> bool:
    """Loose comparison so ``30`` and ``"30"`` count as the same value."""
    if current == candidate:
        return True
    left = str(current).strip()
    right = str(candidate).strip()
    if left == right:
        return True
    try:
        return float(left) == float(right)
    except ValueError:
        return False


def load_memory(path: str | os.PathLike[str]) -> Memory:
    """Load the persisted snapshot, falling back to defaults on any problem."""
    candidate = Path(path)
    try:
        with candidate.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
    except FileNotFoundError:
        log.info("No saved state at %s; starting with defaults", candidate)
        return Memory()
    except (json.JSONDecodeError, UnicodeDecodeError, OSError) as exc:
        log.error("Unable to read saved state %s: %s", candidate, exc)
        return Memory()
    try:
        return Memory.from_payload(data)
    except ValueError as exc:
        log.error("Ignoring malformed saved state %s: %s", candidate, exc)
        return Memory()


class StateStore:
    """Owns :class:`Memory` and turns observable changes into notifications.

    Every method that changes something a client can see publishes the new
    projection and then asks the persistence hook to schedule a write. Calls
    that change nothing do neither.
    """

    def __init__(
        self,
        memory: Memory | None = None,
        *,
        publish: Callable[[str, Any], Any] | None = None,
        persist: Callable[[], None] | None = None,
        battery_markers: Iterable[str] = BATTERY_MARKERS,
    ) -> None:
        self.memory = memory if memory is not None else Memory()
        self._publish = publish
        self._persist = persist
        self.battery_markers = tuple(battery_markers)

    def bind(
        self,
        *,
        publish: Callable[[str, Any], Any] | None = None,
        persist: Callable[[], None] | None = None,
    ) -> None:
        if publish is not None:
            self._publish = publish
        if persist is not None:
            self._persist = persist

    @property
    def current_device(self) -> str:
        return self.memory.current_device

    @property
    def battery_level(self) -> str:
        return self.memory.battery

    def is_battery_device(self, device: str | None = None) -> bool:
        target = self.memory.current_device if device is None else device
        return is_battery_capable(target, self.battery_markers)

    def profile_for(self, device: str) -> Profile:
        """Return the stored profile or a detached default; never stores one."""
        profile = self.memory.profiles.get(device)
        if profile is None:
            return Profile(MUTATION_DEFAULT_VOLUME, DEFAULT_MUTE)
        return profile

    def ensure_profile(self, device: str, *, volume: Any = MUTATION_DEFAULT_VOLUME) -> Profile:
        profile = self.memory.profiles.get(device)
        if profile is None:
            profile = Profile(volume, DEFAULT_MUTE)
            self.memory.profiles[device] = profile
        return profile

    def current_state(self) -> dict[str, Any]:
        device = self.memory.current_device
        profile = self.profile_for(device)
        return {
            "device": device,
            "volume": profile.volume,
            "mute": profile.mute,
            "battery": self.memory.battery if self.is_battery_device(device) else BATTERY_PLACEHOLDER,
        }

    def switch_device(self, device: str) -> bool:
        if not device or device == self.memory.current_device:
            return False
        previous = self.memory.current_device
        self.memory.current_device = device
        self.ensure_profile(device, volume=ACTIVE_DEFAULT_VOLUME)
        log.info("SWITCHED: %s -> %s", previous, device)
        self._changed()
        return True

    def set_battery_level(self, level: str) -> bool:
        if not level or level == self.memory.battery:
            return False
        self.memory.battery = level
        log.info("BATTERY UPDATE: %s%%", level)
        self._changed()
        return True

    def update_profile(self, *, volume: Any = None, mute: Any = None) -> bool:
        """Apply a volume/mute change to the current device's profile."""
        profile = self.ensure_profile(self.memory.current_device)
        changed = False
        if volume is not None and not values_equal(profile.volume, volume):
            profile.volume = coerce_volume(volume)
            changed = True
        if mute is not None and not values_equal(profile.mute, mute):
            profile.mute = str(mute)
            changed = True
        if changed:
            self._changed()
        return changed

    def _changed(self) -> None:
        if self._publish is not None:
            self._publish(STATE_CHANGE_EVENT, self.current_state())
        if self._persist is not None:
            self._persist()


__all__ = [
    "BATTERY_PLACEHOLDER",
    "DEFAULT_DEVICE",
    "Memory",
    "Profile",
    "StateStore",
    "coerce_volume",
    "load_memory",
    "values_equal",
]
