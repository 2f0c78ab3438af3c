from __future__ import annotations

import copy
import json
import logging
from pathlib import Path

import pytest

from lanrelay import service
from lanrelay.config import _DEFAULTS


def _cfg(tmp_path: Path, **encoder) -> dict:
    cfg = copy.deepcopy(_DEFAULTS)
    cfg["paths"]["state_dir"] = str(tmp_path / "state")
    cfg["relay"]["config_path"] = str(tmp_path / "icecast.xml")
    cfg["relay"]["watch_poll_interval_sec"] = 0.05
    cfg["encoder"].update(encoder)
    return cfg


def test_build_services_wires_state_paths(tmp_path: Path):
    services = service.build_services(_cfg(tmp_path, default_bitrate="160"))

    assert services.store.path == tmp_path / "state" / "streams.json"
    assert services.authority.record_path == tmp_path / "state" / "device-config.json"
    assert services.authority.config_path == tmp_path / "icecast.xml"
    assert services.orchestrator.guard is services.guard
    assert services.orchestrator.events is services.events
    assert services.watch_poll_interval == 0.05
    assert services.watchdog.down_since is None


def test_build_services_honours_explicit_store(tmp_path: Path):
    cfg = _cfg(tmp_path)
    cfg["streams"]["store_path"] = str(tmp_path / "elsewhere.json")

    services = service.build_services(cfg)

    assert services.store.path == tmp_path / "elsewhere.json"


def test_parser_commands():
    parser = service._build_parser()

    assert parser.parse_args(["serve", "--autostart"]).autostart is True
    assert parser.parse_args(["relay", "restart"]).action == "restart"
    with pytest.raises(SystemExit):
        parser.parse_args(["relay", "explode"])
    with pytest.raises(SystemExit):
        parser.parse_args([])


def test_configure_logging_respects_dev_mode(monkeypatch):
    calls = []
    monkeypatch.setattr(logging, "basicConfig", lambda **kwargs: calls.append(kwargs))

    service.configure_logging({"logging": {"level": "warning", "dev_mode": False}})
    service.configure_logging({"logging": {"level": "warning", "dev_mode": True}})

    assert calls[0]["level"] == logging.WARNING
    assert calls[1]["level"] == logging.DEBUG
    assert calls[0]["format"] == service.LOG_FORMAT


@pytest.mark.asyncio
async def test_start_and_stop_services(tmp_path: Path):
    (tmp_path / "icecast.xml").write_text(
        "<icecast><listen-socket><port>8411</port></listen-socket></icecast>", encoding="utf-8"
    )
    services = service.build_services(_cfg(tmp_path))

    await service.start_services(services)
    try:
        assert services.authority.get_port() == 8411
        assert services.watcher is not None and services.watcher.running
        assert services.sweeper.running
        assert services.watchdog.running
    finally:
        await service.stop_services(services)

    assert services.watcher is None
    assert not services.sweeper.running
    assert not services.watchdog.running


@pytest.mark.asyncio
async def test_status_command_prints_json(tmp_path: Path, capsys):
    (tmp_path / "icecast.xml").write_text(
        "<icecast><hostname>studio.lan</hostname><listen-socket><port>8412</port></listen-socket></icecast>",
        encoding="utf-8",
    )
    services = service.build_services(_cfg(tmp_path))

    assert await service._status(services) == 0

    payload = json.loads(capsys.readouterr().out)
    assert payload["config"]["port"] == 8412
    assert payload["config"]["hostname"] == "studio.lan"
    assert payload["streams"] == []
    assert payload["relay"]["port"] == 8412
