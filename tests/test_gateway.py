import asyncio
import sys
from pathlib import Path

import pytest

from soundstate import gateway
from soundstate.gateway import (
    BatteryReader,
    DeviceScanner,
    ToolResult,
    cleanup_stale_dumps,
    make_dump_path,
    parse_battery_output,
    run_tool,
)

DUMP = "\n".join(
    [
        "Speakers,Device,Render,Realtek(R) Audio,,",
        "Speakers,Device,Render,Logitech G560 Gaming Speaker,Render,Render",
    ]
)


def _dump_writer(content, returncode=0):
    calls = []

    async def runner(args):
        calls.append(list(args))
        if content is not None:
            Path(args[2]).write_text(content, encoding="utf-8")
        return ToolResult(returncode, "", "" if returncode == 0 else "failed")

    return runner, calls


def test_make_dump_path_is_unique(tmp_path):
    paths = {make_dump_path(tmp_path) for _ in range(50)}
    assert len(paths) == 50
    for path in paths:
        assert path.parent == tmp_path
        assert path.name.startswith("dump_")
        assert path.suffix == ".csv"


def test_cleanup_stale_dumps(tmp_path):
    (tmp_path / "dump_1700000000000_abc123.csv").write_text("x")
    (tmp_path / "dump_1700000000001_def456.csv").write_text("y")
    keep = tmp_path / "volume_data.json"
    keep.write_text("{}")

    assert cleanup_stale_dumps(tmp_path) == 2
    assert sorted(p.name for p in tmp_path.iterdir()) == ["volume_data.json"]
    assert cleanup_stale_dumps(tmp_path) == 0


@pytest.mark.asyncio
async def test_scan_reads_and_deletes_dump(tmp_path):
    runner, calls = _dump_writer(DUMP)
    scanner = DeviceScanner("SoundVolumeView.exe", tmp_path, runner=runner)

    record = await scanner.scan()

    assert record is not None
    assert record.display_name == "Logitech G560 Gaming Speaker"
    assert calls[0][:2] == ["SoundVolumeView.exe", "/scomma"]
    assert Path(calls[0][2]).parent == tmp_path
    assert list(tmp_path.glob("dump_*.csv")) == []


@pytest.mark.asyncio
async def test_scan_failure_removes_partial_dump(tmp_path):
    runner, _ = _dump_writer(DUMP, returncode=3)
    scanner = DeviceScanner("SoundVolumeView.exe", tmp_path, runner=runner)

    assert await scanner.scan() is None
    assert list(tmp_path.glob("dump_*.csv")) == []


@pytest.mark.asyncio
async def test_scan_without_dump_file(tmp_path):
    runner, _ = _dump_writer(None)
    scanner = DeviceScanner("SoundVolumeView.exe", tmp_path, runner=runner)
    assert await scanner.scan() is None


@pytest.mark.asyncio
async def test_scan_cleans_up_when_runner_raises(tmp_path):
    async def runner(args):
        Path(args[2]).write_text(DUMP, encoding="utf-8")
        raise RuntimeError("tool crashed")

    scanner = DeviceScanner("SoundVolumeView.exe", tmp_path, runner=runner)
    with pytest.raises(RuntimeError):
        await scanner.scan()
    assert list(tmp_path.glob("dump_*.csv")) == []


@pytest.mark.parametrize(
    ("result", "available", "level"),
    [
        (ToolResult(0, "Found Audeze Maxwell!\nBattery:\n  Status: BATTERY_AVAILABLE\n  Level: 85%\n", ""), True, "85"),
        (ToolResult(0, "Battery: Level:7%", ""), True, "7"),
        (ToolResult(0, "Status: BATTERY_UNAVAILABLE\n", ""), False, None),
        (ToolResult(0, "Error: Could not open device\n", ""), False, None),
        (ToolResult(1, "Level: 50%", "usb failure"), False, None),
        (ToolResult(0, "Found device, no battery line\n", ""), True, None),
        (ToolResult(127, "", "HeadsetControl.exe not found"), False, None),
    ],
)
def test_parse_battery_output(result, available, level):
    parsed = parse_battery_output(result)
    assert parsed.available is available
    assert parsed.level == level


@pytest.mark.asyncio
async def test_battery_reader_passes_flag():
    seen = []

    async def runner(args):
        seen.append(list(args))
        return ToolResult(0, "Level: 42%", "")

    reader = BatteryReader("HeadsetControl.exe", runner=runner)
    result = await reader.query()
    assert seen == [["HeadsetControl.exe", "-b"]]
    assert result.available and result.level == "42"


@pytest.mark.asyncio
async def test_run_tool_missing_executable(tmp_path):
    result = await run_tool([str(tmp_path / "missing-tool.exe")])
    assert result.returncode == gateway.EXIT_NOT_FOUND
    assert not result.ok


@pytest.mark.asyncio
async def test_run_tool_captures_output():
    result = await run_tool([sys.executable, "-c", "print('Level: 61%')"])
    assert result.ok
    assert "Level: 61%" in result.stdout


@pytest.mark.asyncio
async def test_run_tool_timeout_kills_process():
    result = await run_tool(
        [sys.executable, "-c", "import time; time.sleep(5)"],
        timeout=0.2,
    )
    assert result.returncode == gateway.EXIT_TIMEOUT


@pytest.mark.asyncio
async def test_battery_reader_output_without_level_is_not_a_failure():
    async def runner(args):
        return ToolResult(0, "Found Audeze Maxwell\n", "")

    result = await BatteryReader("HeadsetControl.exe", runner=runner).query()
    assert result.available is True
    assert result.level is None
    assert result.detail == "no battery level in output"


class _ExitedDuringKill:
    returncode = None

    def __init__(self):
        self.waited = False

    async def communicate(self):
        await asyncio.sleep(10)
        return b"", b""

    def kill(self):
        raise ProcessLookupError()

    async def wait(self):
        self.waited = True
        self.returncode = 0
        return 0


@pytest.mark.asyncio
async def test_run_tool_timeout_tolerates_process_already_gone(monkeypatch):
    proc = _ExitedDuringKill()

    async def fake_exec(*args, **kwargs):
        return proc

    monkeypatch.setattr(gateway.asyncio, "create_subprocess_exec", fake_exec)

    result = await run_tool(["HeadsetControl.exe", "-b"], timeout=0.05)
    assert result.returncode == gateway.EXIT_TIMEOUT
    assert proc.waited
