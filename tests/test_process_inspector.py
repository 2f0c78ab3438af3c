from __future__ import annotations

import asyncio
import os
import socket
import subprocess
import sys

import psutil
import pytest
from aiohttp import web

from lanrelay.process_inspector import ProcessInspector


def _stats_app() -> web.Application:
    async def stats(request: web.Request) -> web.Response:
        auth = request.headers.get("Authorization")
        if auth is None:
            return web.Response(status=401, text="unauthorized")
        return web.Response(text="<icestats><listeners>5</listeners></icestats>", content_type="text/xml")

    app = web.Application()
    app.router.add_get("/admin/stats.xml", stats)
    return app


@pytest.mark.asyncio
async def test_probe_http_sends_basic_auth(aiohttp_server):
    server = await aiohttp_server(_stats_app())
    inspector = ProcessInspector()

    result = await inspector.probe_http(
        str(server.make_url("/admin/stats.xml")), username="admin", password="hackme"
    )

    assert result.ok
    assert result.status == 200
    assert "<listeners>5</listeners>" in result.body


@pytest.mark.asyncio
async def test_probe_http_reports_rejection(aiohttp_server):
    server = await aiohttp_server(_stats_app())

    result = await ProcessInspector().probe_http(str(server.make_url("/admin/stats.xml")))

    assert not result.ok
    assert result.status == 401


@pytest.mark.asyncio
async def test_probe_http_unreachable():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]

    result = await ProcessInspector().probe_http(f"http://127.0.0.1:{port}/admin/stats.xml", timeout=1.0)

    assert not result.ok
    assert result.status is None
    assert result.error


@pytest.mark.asyncio
async def test_is_port_bound_sees_listener():
    inspector = ProcessInspector()
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        sock.listen()
        port = sock.getsockname()[1]
        assert await inspector.is_port_bound(port)
    assert not await inspector.is_port_bound(port)


@pytest.mark.asyncio
async def test_is_port_bound_falls_back_to_connect(monkeypatch):
    def denied(kind="inet"):
        raise psutil.AccessDenied()

    monkeypatch.setattr(psutil, "net_connections", denied)
    inspector = ProcessInspector()
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        sock.listen()
        port = sock.getsockname()[1]
        assert await inspector.is_port_bound(port)


@pytest.mark.asyncio
async def test_list_by_name_matches_current_interpreter():
    inspector = ProcessInspector()
    own_name = psutil.Process(os.getpid()).name()

    found = await inspector.list_by_name([own_name.upper()])

    assert os.getpid() in [info.pid for info in found]
    assert await inspector.list_by_name([]) == []


@pytest.mark.asyncio
async def test_terminate_pids_stops_child():
    child = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
    try:
        survivors = await ProcessInspector().terminate_pids([child.pid], timeout=5.0)
        assert survivors == []
        assert child.wait(timeout=5) is not None
    finally:
        if child.poll() is None:
            child.kill()
            child.wait()


@pytest.mark.asyncio
async def test_terminate_pids_ignores_vanished_pids():
    child = subprocess.Popen([sys.executable, "-c", "pass"])
    child.wait()
    await asyncio.sleep(0)

    assert await ProcessInspector().terminate_pids([child.pid], timeout=0.5) == []
    assert await ProcessInspector().terminate_pids([]) == []
