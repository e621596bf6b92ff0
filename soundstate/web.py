"""
aiohttp server for the soundstate control page.

Endpoints:
  GET  /              -> index.html from the static directory (if present)
  GET  /update        -> Set volume/mute for the active device (?volume=&mute=)
  POST /update        -> Same as GET; form or query parameters
  GET  /api/state     -> JSON {device, volume, mute, battery}
  GET  /api/events    -> Server-Sent Events; "state-change" on connect and on change
  GET  /healthz       -> "ok"
  Static /*           -> Files from the static directory
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from pathlib import Path
from typing import Any, Mapping

from aiohttp import web
from aiohttp.web import AppKey

from .coordinator import Coordinator
from .events import STATE_CHANGE_EVENT

EVENT_STREAM_HEARTBEAT_SECONDS = 20.0
EVENT_STREAM_RETRY_MILLIS = 5000

COORDINATOR_KEY: AppKey[Coordinator] = web.AppKey("coordinator", Coordinator)
SHUTDOWN_EVENT_KEY: AppKey[asyncio.Event] = web.AppKey("shutdown_event", asyncio.Event)

log = logging.getLogger("soundstate.web")


def _first_param(params: Mapping[str, Any], *names: str) -> str | None:
    for name in names:
        if name in params:
            return str(params[name])
    return None


def build_app(
    coordinator: Coordinator,
    *,
    static_dir: Path | None = None,
    start_background: bool = True,
) -> web.Application:
    @web.middleware
    async def _cors_middleware(request: web.Request, handler):
        if request.method == "OPTIONS":
            response = web.Response(status=204)
        else:
            response = await handler(request)

        if request.headers.get("Origin"):
            response.headers.setdefault("Access-Control-Allow-Origin", "*")
            response.headers.setdefault("Access-Control-Allow-Methods", "GET,POST,OPTIONS")
            response.headers.setdefault("Access-Control-Allow-Headers", "Content-Type")
            response.headers.setdefault("Access-Control-Max-Age", "86400")

        return response

    app = web.Application(middlewares=[_cors_middleware])
    app[COORDINATOR_KEY] = coordinator
    app[SHUTDOWN_EVENT_KEY] = asyncio.Event()

    async def _init_event_bus(_: web.Application) -> None:
        coordinator.bus.set_loop(asyncio.get_running_loop())

    async def _start_coordinator(_: web.Application) -> None:
        coordinator.start()

    async def _stop_coordinator(_: web.Application) -> None:
        await coordinator.stop()

    async def _signal_shutdown(app: web.Application) -> None:
        app[SHUTDOWN_EVENT_KEY].set()
        coordinator.bus.close()

    app.on_startup.append(_init_event_bus)
    app.on_shutdown.append(_signal_shutdown)
    if start_background:
        app.on_startup.append(_start_coordinator)
        app.on_cleanup.append(_stop_coordinator)

    async def update_profile(request: web.Request) -> web.Response:
        params: dict[str, Any] = dict(request.query)
        if request.method == "POST" and request.can_read_body:
            with contextlib.suppress(ValueError):
                form = await request.post()
                params.update({key: value for key, value in form.items() if isinstance(value, str)})
        volume = _first_param(params, "volume", "vol")
        mute = _first_param(params, "mute")
        if coordinator.update_profile(volume=volume, mute=mute):
            log.debug("Profile for %s updated: %s", coordinator.store.current_device, params)
        return web.Response(text="OK")

    async def current_state(_: web.Request) -> web.Response:
        return web.json_response(
            coordinator.current_state(), headers={"Cache-Control": "no-store"}
        )

    async def state_events(request: web.Request) -> web.StreamResponse:
        bus = coordinator.bus
        queue = bus.subscribe(initial=(STATE_CHANGE_EVENT, coordinator.current_state()))

        response = web.StreamResponse(
            status=200,
            headers={
                "Cache-Control": "no-store",
                "Content-Type": "text/event-stream",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )
        await response.prepare(request)

        shutdown = request.app[SHUTDOWN_EVENT_KEY]
        heartbeat_deadline = time.monotonic() + EVENT_STREAM_HEARTBEAT_SECONDS
        heartbeat_chunk = b"event: heartbeat\ndata: {}\n\n"

        try:
            await response.write(f"retry: {EVENT_STREAM_RETRY_MILLIS}\n\n".encode("utf-8"))
            while not shutdown.is_set():
                remaining = heartbeat_deadline - time.monotonic()
                if remaining <= 0:
                    try:
                        await response.write(heartbeat_chunk)
                    except ConnectionResetError:
                        break
                    heartbeat_deadline = time.monotonic() + EVENT_STREAM_HEARTBEAT_SECONDS
                    continue

                try:
                    event = await asyncio.wait_for(queue.get(), timeout=remaining)
                except asyncio.TimeoutError:
                    continue

                if event is None:
                    break

                try:
                    data_text = json.dumps(
                        event.get("payload"), separators=(",", ":"), ensure_ascii=False
                    )
                except (TypeError, ValueError) as exc:
                    log.warning("Failed to serialize event %s: %s", event.get("type"), exc)
                    continue

                buffer_parts = [f"id: {event['id']}\n", f"event: {event['type']}\n"]
                lines = data_text.splitlines() or [""]
                buffer_parts.extend(f"data: {line}\n" for line in lines)
                buffer_parts.append("\n")

                try:
                    await response.write("".join(buffer_parts).encode("utf-8"))
                except ConnectionResetError:
                    break

                heartbeat_deadline = time.monotonic() + EVENT_STREAM_HEARTBEAT_SECONDS
        finally:
            bus.unsubscribe(queue)
            with contextlib.suppress(Exception):
                await response.write_eof()

        return response

    async def healthz(_: web.Request) -> web.Response:
        return web.Response(text="ok\n")

    app.router.add_get("/update", update_profile)
    app.router.add_post("/update", update_profile)
    app.router.add_get("/api/state", current_state)
    app.router.add_get("/api/events", state_events)
    app.router.add_get("/healthz", healthz)

    if static_dir is not None and static_dir.is_dir():
        index_path = static_dir / "index.html"

        async def index(_: web.Request) -> web.StreamResponse:
            if not index_path.is_file():
                raise web.HTTPNotFound()
            return web.FileResponse(index_path)

        app.router.add_get("/", index)
        app.router.add_static("/", static_dir, show_index=False)
    elif static_dir is not None:
        log.info("Static directory %s not found; control page disabled", static_dir)

    return app


__all__ = ["COORDINATOR_KEY", "build_app"]
