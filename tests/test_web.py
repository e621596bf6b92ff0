import asyncio
import json

import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from soundstate.coordinator import Coordinator
from soundstate.scheduler import ManualScheduler
from soundstate.state import Memory, Profile
from soundstate.web import build_app


class IdleScanner:
    async def scan(self):
        return None


class IdleReader:
    async def query(self):
        raise AssertionError("battery reader should not run in web tests")


@pytest.fixture
def web_env(tmp_path):
    scheduler = ManualScheduler()
    memory = Memory(
        current_device="Audeze Maxwell",
        battery="70",
        profiles={"Audeze Maxwell": Profile(40, "Off")},
    )
    coordinator = Coordinator(
        scheduler=scheduler,
        scanner=IdleScanner(),
        reader=IdleReader(),
        state_path=tmp_path / "volume_data.json",
        memory=memory,
    )
    static_dir = tmp_path / "public"
    static_dir.mkdir()
    (static_dir / "index.html").write_text("<html>control</html>", encoding="utf-8")
    (static_dir / "app.js").write_text("console.log('ok');", encoding="utf-8")
    return coordinator, static_dir


async def _start_client(app: web.Application) -> tuple[TestClient, TestServer]:
    server = TestServer(app)
    client = TestClient(server)
    await client.start_server()
    return client, server


async def _read_event(resp) -> tuple[str, dict]:
    event_type = None
    data_lines = []
    while True:
        raw = await asyncio.wait_for(resp.content.readline(), timeout=5)
        line = raw.decode("utf-8").rstrip("\n")
        if not line:
            if event_type is not None:
                return event_type, json.loads("\n".join(data_lines))
            continue
        if line.startswith("event: "):
            event_type = line[len("event: "):]
        elif line.startswith("data: "):
            data_lines.append(line[len("data: "):])


def test_update_unchanged_value_is_a_no_op(web_env):
    coordinator, static_dir = web_env

    async def runner():
        client, server = await _start_client(
            build_app(coordinator, static_dir=static_dir, start_background=False)
        )
        queue = coordinator.bus.subscribe()
        try:
            resp = await client.get("/update?volume=40&mute=Off")
            assert resp.status == 200
            assert await resp.text() == "OK"
            assert queue.empty()
            assert coordinator.writer.pending is False
        finally:
            await client.close()
            await server.close()

    asyncio.run(runner())


def test_update_changes_profile_and_schedules_write(web_env):
    coordinator, static_dir = web_env

    async def runner():
        client, server = await _start_client(
            build_app(coordinator, static_dir=static_dir, start_background=False)
        )
        queue = coordinator.bus.subscribe()
        try:
            resp = await client.get("/update?volume=65")
            assert await resp.text() == "OK"
            assert coordinator.current_state()["volume"] == 65
            assert coordinator.writer.pending is True
            event = queue.get_nowait()
            assert event["type"] == "state-change"
            assert event["payload"] == {
                "device": "Audeze Maxwell",
                "volume": 65,
                "mute": "Off",
                "battery": "70",
            }
        finally:
            await client.close()
            await server.close()

    asyncio.run(runner())


def test_update_accepts_legacy_vol_and_post_form(web_env):
    coordinator, static_dir = web_env

    async def runner():
        client, server = await _start_client(
            build_app(coordinator, static_dir=static_dir, start_background=False)
        )
        try:
            resp = await client.get("/update?vol=20")
            assert await resp.text() == "OK"
            assert coordinator.current_state()["volume"] == 20

            resp = await client.post("/update", data={"mute": "On"})
            assert resp.status == 200
            assert coordinator.current_state()["mute"] == "On"
        finally:
            await client.close()
            await server.close()

    asyncio.run(runner())


def test_state_and_health_endpoints(web_env):
    coordinator, static_dir = web_env

    async def runner():
        client, server = await _start_client(
            build_app(coordinator, static_dir=static_dir, start_background=False)
        )
        try:
            resp = await client.get("/api/state")
            assert resp.status == 200
            assert resp.headers["Cache-Control"] == "no-store"
            assert await resp.json() == {
                "device": "Audeze Maxwell",
                "volume": 40,
                "mute": "Off",
                "battery": "70",
            }

            resp = await client.get("/healthz")
            assert resp.status == 200
            assert (await resp.text()).strip() == "ok"
        finally:
            await client.close()
            await server.close()

    asyncio.run(runner())


def test_event_stream_sends_snapshot_then_changes(web_env):
    coordinator, static_dir = web_env

    async def runner():
        client, server = await _start_client(
            build_app(coordinator, static_dir=static_dir, start_background=False)
        )
        try:
            resp = await client.get("/api/events")
            assert resp.status == 200
            assert resp.headers["Content-Type"].startswith("text/event-stream")

            event_type, payload = await _read_event(resp)
            assert event_type == "state-change"
            assert payload["volume"] == 40

            coordinator.update_profile(mute="On")
            event_type, payload = await _read_event(resp)
            assert event_type == "state-change"
            assert payload["mute"] == "On"
            resp.close()
        finally:
            await client.close()
            await server.close()

    asyncio.run(runner())


def test_static_page_and_cors_headers(web_env):
    coordinator, static_dir = web_env

    async def runner():
        client, server = await _start_client(
            build_app(coordinator, static_dir=static_dir, start_background=False)
        )
        try:
            resp = await client.get("/")
            assert resp.status == 200
            assert "control" in await resp.text()

            resp = await client.get("/app.js")
            assert resp.status == 200

            resp = await client.get("/api/state", headers={"Origin": "http://example.test"})
            assert resp.headers["Access-Control-Allow-Origin"] == "*"

            resp = await client.options("/update", headers={"Origin": "http://example.test"})
            assert resp.status == 204
            assert "POST" in resp.headers["Access-Control-Allow-Methods"]
        finally:
            await client.close()
            await server.close()

    asyncio.run(runner())


def test_missing_static_dir_still_serves_api(tmp_path, web_env):
    coordinator, _ = web_env

    async def runner():
        client, server = await _start_client(
            build_app(coordinator, static_dir=tmp_path / "missing", start_background=False)
        )
        try:
            resp = await client.get("/")
            assert resp.status == 404
            resp = await client.get("/api/state")
            assert resp.status == 200
        finally:
            await client.close()
            await server.close()

    asyncio.run(runner())


def test_background_polling_starts_and_stops_with_app(web_env):
    coordinator, static_dir = web_env
    scheduler = coordinator.scheduler

    async def runner():
        client, server = await _start_client(build_app(coordinator, static_dir=static_dir))
        try:
            assert scheduler.pending()
            await client.get("/update?volume=10")
            assert coordinator.writer.pending is True
        finally:
            await client.close()
            await server.close()

    asyncio.run(runner())
    assert coordinator.writer.pending is False
    saved = json.loads((static_dir.parent / "volume_data.json").read_text(encoding="utf-8"))
    assert saved["profiles"]["Audeze Maxwell"] == {"vol": 10, "mute": "Off"}


@pytest.mark.asyncio
async def test_update_via_client_fixture(aiohttp_client, web_env):
    coordinator, static_dir = web_env
    client = await aiohttp_client(
        build_app(coordinator, static_dir=static_dir, start_background=False)
    )

    response = await client.get("/update?volume=30&mute=On")
    assert response.status == 200
    assert await response.text() == "OK"

    response = await client.get("/api/state")
    payload = await response.json()
    assert payload["volume"] == 30
    assert payload["mute"] == "On"

    # Loose comparison: the string form of the stored number is not a change.
    events = coordinator.bus.subscribe()
    response = await client.get("/update?volume=30")
    assert await response.text() == "OK"
    assert events.empty()
