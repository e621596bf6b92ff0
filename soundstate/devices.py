"""Device identity rules and SoundVolumeView dump parsing."""

from __future__ import annotations

import csv
import io
import re
from dataclasses import dataclass
from typing import Iterable

CANONICAL_NAMES: tuple[str, ...] = ("Logitech G560", "Audeze Maxwell")
BATTERY_MARKERS: tuple[str, ...] = ("Maxwell", "Audeze")

_SPEAKERS_NAME = re.compile(r"^Speakers \((.*)\)$")

RECORD_TYPE_DEVICE = "Device"
DIRECTION_RENDER = "Render"
_MIN_FIELDS = 5


@dataclass(frozen=True)
class DeviceRecord:
    """One row of a ``SoundVolumeView /scomma`` dump."""

    name: str
    record_type: str
    direction: str
    device_name: str
    default_roles: str

    @property
    def display_name(self) -> str:
        return self.device_name or self.name

    @property
    def is_default_render(self) -> bool:
        return (
            self.record_type == RECORD_TYPE_DEVICE
            and self.direction == DIRECTION_RENDER
            and DIRECTION_RENDER in self.default_roles
        )


def clean_name(raw_name: str | None, canonical_names: Iterable[str] = CANONICAL_NAMES) -> str | None:
    """Collapse a raw endpoint name into the identity used for profiles.

    Returns ``None`` for names that cannot identify a device.
    """
    if not raw_name or len(raw_name) < 2:
        return None
    for canonical in canonical_names:
        if canonical in raw_name:
            return canonical
    cleaned = _SPEAKERS_NAME.sub(r"\1", raw_name).strip()
    return cleaned or None


def is_battery_capable(device: str | None, markers: Iterable[str] = BATTERY_MARKERS) -> bool:
    if not device:
        return False
    return any(marker in device for marker in markers)


def parse_records(content: str) -> list[DeviceRecord]:
    records: list[DeviceRecord] = []
    if not content:
        return records
    reader = csv.reader(io.StringIO(content.lstrip("\ufeff")))
    for row in reader:
        if len(row) < _MIN_FIELDS:
            continue
        records.append(
            DeviceRecord(
                name=row[0],
                record_type=row[1],
                direction=row[2],
                device_name=row[3],
                default_roles=row[4],
            )
        )
    return records


def find_default_render(content: str) -> DeviceRecord | None:
    """Return the first record marked as the default playback device."""
    for record in parse_records(content):
        if record.is_default_render:
            return record
    return None


__all__ = [
    "BATTERY_MARKERS",
    "CANONICAL_NAMES",
    "DeviceRecord",
    "clean_name",
    "find_default_render",
    "is_battery_capable",
    "parse_records",
]
