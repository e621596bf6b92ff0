#!/usr/bin/env python3
"""
soundstate daemon launcher.

- Loads config (YAML + env overrides)
- Mirrors log output to the configured log file with a startup banner
- Serves the control page, /update and the /api/events push channel
- Polls SoundVolumeView and HeadsetControl until interrupted
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict

from aiohttp import web

from . import config as config_module
from .coordinator import Coordinator
from .web import build_app

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def _write_startup_banner(log_file: Path) -> None:
    banner = (
        "\n========================================\n"
        f"SERVER START: {datetime.now():%Y-%m-%d %H:%M:%S}\n"
        "========================================\n"
    )
    with log_file.open("a", encoding="utf-8") as handle:
        handle.write(banner)


def configure_logging(cfg: Dict[str, Any], log_level: str | None = None) -> None:
    logging_cfg = cfg.get("logging", {})
    if log_level:
        level_name = log_level
    elif logging_cfg.get("dev_mode"):
        level_name = "DEBUG"
    else:
        level_name = str(logging_cfg.get("level") or "INFO")
    level = getattr(logging, level_name.upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    log_file_raw = cfg.get("paths", {}).get("log_file")
    if log_file_raw:
        log_file = config_module.resolve_path(cfg, log_file_raw)
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            _write_startup_banner(log_file)
            handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
        except OSError as exc:
            print(f"[soundstate] WARN: unable to open log file {log_file}: {exc}", file=sys.stderr)

    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)


async def serve(
    cfg: Dict[str, Any],
    *,
    host: str,
    port: int,
    access_log: bool = False,
) -> None:
    log = logging.getLogger("soundstate")
    coordinator = Coordinator.from_config(cfg)
    static_raw = cfg.get("paths", {}).get("static_dir")
    static_dir = config_module.resolve_path(cfg, static_raw) if static_raw else None
    app = build_app(coordinator, static_dir=static_dir)

    runner = web.AppRunner(app, access_log=logging.getLogger("aiohttp.access") if access_log else None)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    log.info("Server running on %s:%s", host, port)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no signal handler support.
            pass

    try:
        await stop_event.wait()
    finally:
        log.info("Shutting down")
        await runner.cleanup()


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Audio device profile and headset battery daemon.")
    parser.add_argument("--config", type=Path, help="Path to config.yaml (overrides SOUNDSTATE_CONFIG).")
    parser.add_argument("--host", help="Override bind host (defaults to config).")
    parser.add_argument("--port", type=int, help="Override bind port (defaults to config).")
    parser.add_argument("--access-log", action="store_true", help="Enable aiohttp access logs.")
    parser.add_argument("--log-level", default=None, help="Python logging level (default: from config).")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    if args.config is not None:
        os.environ["SOUNDSTATE_CONFIG"] = str(args.config)
    cfg = config_module.reload_cfg()
    configure_logging(cfg, args.log_level)

    web_cfg = cfg.get("web_server", {})
    host = args.host or str(web_cfg.get("listen_host") or "0.0.0.0")
    port = args.port or int(web_cfg.get("listen_port") or 8085)

    try:
        asyncio.run(serve(cfg, host=host, port=port, access_log=args.access_log))
    except KeyboardInterrupt:
        pass
    except OSError as exc:
        logging.getLogger("soundstate").error("Unable to start server: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
