"""Build the service object graph from settings and expose a small CLI."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable

from .audio_devices import DeviceCatalog
from .config import as_bool, as_float, as_int, get_cfg, section, state_dir
from .device_guard import DeviceConflictGuard
from .diagnostics import DiagnosticsEngine, format_message
from .errors import DiagnosedFailureError, RelayError
from .events import StreamEventBus
from .orchestrator import StreamOrchestrator
from .process_inspector import ProcessInspector
from .relay_config import ConfigurationAuthority
from .relay_supervisor import DEFAULT_PROCESS_NAMES, RelaySupervisor
from .retention import RetentionSweeper
from .stream_store import StreamStore
from .watchdog import RelayWatchdog
from .watchers import PollingFileWatcher

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_log = logging.getLogger("lanrelay")


@dataclass
class Services:
    authority: ConfigurationAuthority
    inspector: ProcessInspector
    diagnostics: DiagnosticsEngine
    guard: DeviceConflictGuard
    supervisor: RelaySupervisor
    devices: DeviceCatalog
    store: StreamStore
    events: StreamEventBus
    orchestrator: StreamOrchestrator
    sweeper: RetentionSweeper
    watchdog: RelayWatchdog
    watch_poll_interval: float = 1.0
    watcher: PollingFileWatcher | None = None


def configure_logging(cfg: Dict[str, Any]) -> None:
    logging_cfg = section(cfg, "logging")
    level_name = str(logging_cfg.get("level") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    if as_bool(logging_cfg.get("dev_mode"), False):
        level = logging.DEBUG
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


def _optional_path(value: Any) -> Path | None:
    text = str(value or "").strip()
    return Path(text).expanduser() if text else None


def build_services(cfg: Dict[str, Any] | None = None) -> Services:
    cfg = cfg if cfg is not None else get_cfg()
    relay_cfg = section(cfg, "relay")
    encoder_cfg = section(cfg, "encoder")
    streams_cfg = section(cfg, "streams")
    base_dir = state_dir(cfg)

    process_names = relay_cfg.get("process_names") or list(DEFAULT_PROCESS_NAMES)
    if isinstance(process_names, str):
        process_names = [process_names]

    authority = ConfigurationAuthority(
        record_path=_optional_path(relay_cfg.get("install_record_path")) or base_dir / "device-config.json",
        config_path=_optional_path(relay_cfg.get("config_path")),
        executable=_optional_path(relay_cfg.get("executable")),
        executable_names=[str(name) for name in process_names],
    )
    inspector = ProcessInspector()
    diagnostics = DiagnosticsEngine()
    guard = DeviceConflictGuard()
    supervisor = RelaySupervisor(
        authority,
        inspector,
        diagnostics=diagnostics,
        process_names=[str(name) for name in process_names],
        startup_timeout=as_float(relay_cfg.get("startup_timeout_sec"), 8.0, minimum=0.5),
        stop_timeout=as_float(relay_cfg.get("stop_timeout_sec"), 5.0, minimum=0.5),
        restart_wait=as_float(relay_cfg.get("restart_wait_sec"), 10.0, minimum=0.5),
        probe_timeout=as_float(relay_cfg.get("probe_timeout_sec"), 3.0, minimum=0.5),
        intentional_stop_window=as_float(relay_cfg.get("intentional_stop_window_sec"), 30.0, minimum=0.0),
    )

    ffmpeg_path = str(encoder_cfg.get("ffmpeg_path") or "ffmpeg")
    devices = DeviceCatalog(ffmpeg_path=ffmpeg_path)
    store = StreamStore(_optional_path(streams_cfg.get("store_path")) or base_dir / "streams.json")
    events = StreamEventBus()
    orchestrator = StreamOrchestrator(
        authority,
        supervisor,
        devices,
        guard=guard,
        diagnostics=diagnostics,
        store=store,
        events=events,
        ffmpeg_path=ffmpeg_path,
        spawn_timeout=as_float(encoder_cfg.get("spawn_timeout_sec"), 10.0, minimum=0.5),
        grace_period=as_float(encoder_cfg.get("grace_period_sec"), 2.0, minimum=0.1),
        stop_timeout=as_float(encoder_cfg.get("stop_timeout_sec"), 5.0, minimum=0.5),
        verify_devices=as_bool(encoder_cfg.get("verify_devices"), True),
        default_bitrate=as_int(encoder_cfg.get("default_bitrate"), 192),
        sample_rate=as_int(encoder_cfg.get("sample_rate"), 44100),
        channels=as_int(encoder_cfg.get("channels"), 2),
    )
    sweeper = RetentionSweeper(
        orchestrator,
        max_age=as_float(streams_cfg.get("retention_hours"), 24.0, minimum=0.01) * 3600.0,
        interval=as_float(streams_cfg.get("retention_sweep_interval_sec"), 6 * 3600.0, minimum=1.0),
    )
    watchdog = RelayWatchdog(
        orchestrator,
        supervisor,
        interval=as_float(relay_cfg.get("watchdog_interval_sec"), 10.0, minimum=0.5),
        grace=as_float(relay_cfg.get("outage_grace_sec"), 30.0, minimum=0.0),
    )
    return Services(
        authority=authority,
        inspector=inspector,
        diagnostics=diagnostics,
        guard=guard,
        supervisor=supervisor,
        devices=devices,
        store=store,
        events=events,
        orchestrator=orchestrator,
        sweeper=sweeper,
        watchdog=watchdog,
        watch_poll_interval=as_float(relay_cfg.get("watch_poll_interval_sec"), 1.0, minimum=0.1),
    )


async def start_services(services: Services) -> None:
    services.events.set_loop(asyncio.get_running_loop())
    await services.authority.initialize()
    watch_path = services.authority.config_path or services.authority.record_path.parent / "icecast.xml"
    services.watcher = PollingFileWatcher(watch_path, poll_interval=services.watch_poll_interval)
    await services.authority.watch(services.watcher)
    await services.orchestrator.load()
    await services.sweeper.start()
    await services.watchdog.start()
    _log.info("lanrelay services started")


async def stop_services(services: Services, *, stop_relay: bool = False) -> None:
    await services.watchdog.stop()
    await services.sweeper.stop()
    await services.orchestrator.shutdown()
    await services.authority.unwatch()
    services.watcher = None
    if stop_relay:
        await services.supervisor.stop()
    await services.supervisor.cleanup()
    _log.info("lanrelay services stopped")


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


async def _status(services: Services) -> int:
    await services.authority.initialize()
    await services.orchestrator.load()
    _print_json(
        {
            "relay": await services.orchestrator.get_relay_status(),
            "config": services.authority.snapshot().snapshot(),
            "streams": services.orchestrator.get_stream_status(),
        }
    )
    return 0


async def _relay(services: Services, action: str) -> int:
    await services.authority.initialize()
    operations = {
        "start": services.supervisor.start,
        "stop": services.supervisor.stop,
        "restart": services.supervisor.restart,
    }
    try:
        result = await operations[action]()
    except DiagnosedFailureError as exc:
        print(format_message(exc.diagnosis), file=sys.stderr)
        return 1
    except RelayError as exc:
        print(f"{exc.code}: {exc.message}", file=sys.stderr)
        return 1
    _print_json(result)
    return 0 if result.get("success", True) else 1


async def _serve(services: Services, *, autostart: bool) -> int:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Not available on Windows event loops or outside the main thread.
            pass

    await start_services(services)
    try:
        if autostart:
            result = await services.orchestrator.start_all_stopped()
            for failure in result["failed"]:
                _log.warning("autostart of %s failed: %s", failure["streamId"], failure["error"]["message"])
        await stop_event.wait()
        _log.info("shutdown requested")
    finally:
        await stop_services(services)
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="LAN audio relay orchestration")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("status", help="Print relay and stream status as JSON")

    relay_parser = subparsers.add_parser("relay", help="Control the relay server process")
    relay_parser.add_argument("action", choices=["start", "stop", "restart"])

    serve_parser = subparsers.add_parser("serve", help="Run until SIGINT/SIGTERM")
    serve_parser.add_argument(
        "--autostart",
        action="store_true",
        help="Start every stored stream once services are up",
    )
    return parser


def main(argv: Iterable[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    cfg = get_cfg()
    configure_logging(cfg)
    services = build_services(cfg)

    if args.command == "status":
        return asyncio.run(_status(services))
    if args.command == "relay":
        return asyncio.run(_relay(services, args.action))
    if args.command == "serve":
        with contextlib.suppress(KeyboardInterrupt):
            return asyncio.run(_serve(services, autostart=args.autostart))
        return 0

    parser.error("no command specified")
    return 1


if __name__ == "__main__":  # pragma: no cover - CLI entry
    raise SystemExit(main())
