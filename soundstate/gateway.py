"""Adapters around the two external command-line tools.

``DeviceScanner`` drives SoundVolumeView (``/scomma <file>``) and
``BatteryReader`` drives HeadsetControl (``-b``). Neither knows about the
resource gate or retry policy; they run one invocation and report what they
saw.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
import secrets
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Sequence

from .devices import DeviceRecord, find_default_render

DUMP_PREFIX = "dump_"
DUMP_SUFFIX = ".csv"
DEFAULT_TOOL_TIMEOUT = 15.0

BATTERY_LEVEL_PATTERN = re.compile(r"Level:\s*(\d+)%")
BATTERY_UNAVAILABLE_MARKERS: tuple[str, ...] = ("BATTERY_UNAVAILABLE", "Error")

EXIT_NOT_FOUND = 127
EXIT_TIMEOUT = 124


@dataclass(frozen=True)
class ToolResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


ToolRunner = Callable[[Sequence[str]], Awaitable[ToolResult]]


async def run_tool(args: Sequence[str], *, timeout: float = DEFAULT_TOOL_TIMEOUT) -> ToolResult:
    """Run ``args`` as a subprocess and capture its text output."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        return ToolResult(EXIT_NOT_FOUND, "", f"{args[0]} not found")
    except OSError as exc:
        return ToolResult(1, "", str(exc))

    try:
        stdout_raw, stderr_raw = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        # The process may exit on its own between the timeout and the kill.
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()
        return ToolResult(EXIT_TIMEOUT, "", f"{args[0]} timed out after {timeout:.0f}s")

    stdout = stdout_raw.decode("utf-8", errors="replace")
    stderr = stderr_raw.decode("utf-8", errors="replace")
    return ToolResult(proc.returncode if proc.returncode is not None else 1, stdout, stderr)


def make_dump_path(dump_dir: Path) -> Path:
    """Unique temp target: millisecond timestamp plus a random suffix."""
    stamp = int(time.time() * 1000)
    return dump_dir / f"{DUMP_PREFIX}{stamp}_{secrets.token_hex(3)}{DUMP_SUFFIX}"


def cleanup_stale_dumps(dump_dir: Path, logger: logging.Logger | None = None) -> int:
    """Remove dump files left behind by a previous run. Returns the count removed."""
    log = logger or logging.getLogger("soundstate.gateway")
    removed = 0
    try:
        candidates = sorted(dump_dir.glob(f"{DUMP_PREFIX}*{DUMP_SUFFIX}"))
    except OSError as exc:
        log.warning("Unable to list %s for stale dumps: %s", dump_dir, exc)
        return 0
    for candidate in candidates:
        try:
            candidate.unlink()
        except FileNotFoundError:
            continue
        except OSError as exc:
            log.warning("Unable to remove stale dump %s: %s", candidate, exc)
            continue
        removed += 1
    if removed:
        log.info("Removed %d stale dump file(s) from %s", removed, dump_dir)
    return removed


def _remove_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as exc:
        logging.getLogger("soundstate.gateway").debug("Unable to remove %s: %s", path, exc)


class DeviceScanner:
    """Find the default playback device through a SoundVolumeView dump."""

    def __init__(
        self,
        executable: str | Path,
        dump_dir: Path,
        *,
        runner: ToolRunner | None = None,
        timeout: float = DEFAULT_TOOL_TIMEOUT,
        logger: logging.Logger | None = None,
    ) -> None:
        self.executable = str(executable)
        self.dump_dir = Path(dump_dir)
        self._runner = runner
        self._timeout = timeout
        self._log = logger or logging.getLogger("soundstate.gateway")

    async def _run(self, args: Sequence[str]) -> ToolResult:
        if self._runner is not None:
            return await self._runner(args)
        return await run_tool(args, timeout=self._timeout)

    async def scan(self) -> DeviceRecord | None:
        dump_path = make_dump_path(self.dump_dir)
        try:
            result = await self._run([self.executable, "/scomma", str(dump_path)])
            if not result.ok:
                self._log.warning(
                    "SoundVolumeView exited with %s: %s",
                    result.returncode,
                    result.stderr.strip(),
                )
                return None
            try:
                content = dump_path.read_text(encoding="utf-8-sig", errors="replace")
            except FileNotFoundError:
                self._log.warning("SoundVolumeView produced no dump at %s", dump_path)
                return None
            record = find_default_render(content)
            if record is None:
                self._log.debug("No default render device in scan output")
            return record
        finally:
            _remove_quietly(dump_path)


@dataclass(frozen=True)
class BatteryResult:
    available: bool
    level: str | None = None
    detail: str = ""


def parse_battery_output(result: ToolResult) -> BatteryResult:
    stdout = result.stdout or ""
    for marker in BATTERY_UNAVAILABLE_MARKERS:
        if marker in stdout:
            return BatteryResult(False, detail=marker)
    if not result.ok:
        detail = (result.stderr or "").strip() or f"exit status {result.returncode}"
        return BatteryResult(False, detail=detail)
    match = BATTERY_LEVEL_PATTERN.search(stdout)
    if not match:
        # Tool ran cleanly but reported no level: nothing to retry.
        return BatteryResult(True, detail="no battery level in output")
    return BatteryResult(True, level=match.group(1))


class BatteryReader:
    """Query headset battery level through HeadsetControl."""

    def __init__(
        self,
        executable: str | Path,
        *,
        runner: ToolRunner | None = None,
        timeout: float = DEFAULT_TOOL_TIMEOUT,
    ) -> None:
        self.executable = str(executable)
        self._runner = runner
        self._timeout = timeout

    async def query(self) -> BatteryResult:
        args = [self.executable, "-b"]
        if self._runner is not None:
            result = await self._runner(args)
        else:
            result = await run_tool(args, timeout=self._timeout)
        return parse_battery_output(result)


__all__ = [
    "BatteryReader",
    "BatteryResult",
    "DeviceScanner",
    "ToolResult",
    "cleanup_stale_dumps",
    "make_dump_path",
    "parse_battery_output",
    "run_tool",
]
