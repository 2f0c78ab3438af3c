"""Shared fakes for orchestrator and supervisor tests."""

from __future__ import annotations

import asyncio
import itertools
from pathlib import Path

import pytest

from lanrelay.events import StreamEventBus
from lanrelay.orchestrator import StreamOrchestrator
from lanrelay.process_inspector import ProbeResult, ProcessInfo
from lanrelay.relay_supervisor import RelayHealth, RelayStatus
from lanrelay.stream_store import StreamStore

_PIDS = itertools.count(4000)


class FakeProcess:
    """Stand-in for ``asyncio.subprocess.Process`` driven by the test."""

    def __init__(
        self,
        *,
        argv=(),
        exit_code: int | None = None,
        exit_after: float = 0.0,
        stderr_text: str = "",
        stdout_text: str = "",
        ignore_terminate: bool = False,
    ) -> None:
        self.pid = next(_PIDS)
        self.argv = list(argv)
        self.returncode: int | None = None
        self.stderr = asyncio.StreamReader()
        self.stdout = asyncio.StreamReader()
        self.terminated = False
        self.killed = False
        self._ignore_terminate = ignore_terminate
        self._exited = asyncio.Event()
        if stderr_text:
            self.stderr.feed_data(stderr_text.encode("utf-8"))
        if stdout_text:
            self.stdout.feed_data(stdout_text.encode("utf-8"))
        if exit_code is not None:
            asyncio.get_running_loop().call_later(exit_after, self.exit, exit_code)

    @property
    def alive(self) -> bool:
        return self.returncode is None

    def exit(self, code: int) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stderr.feed_eof()
        self.stdout.feed_eof()
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        assert self.returncode is not None
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        if not self._ignore_terminate:
            self.exit(255)

    def kill(self) -> None:
        self.killed = True
        self.exit(-9)


class FakeSpawner:
    """Replacement for ``asyncio.create_subprocess_exec``.

    Each call pops the next behaviour (``FakeProcess`` keyword arguments or an
    exception to raise); once they run out every process keeps running.
    """

    def __init__(self, behaviours=None) -> None:
        self.behaviours = list(behaviours or [])
        self.calls: list[list[str]] = []
        self.kwargs: list[dict] = []
        self.processes: list[FakeProcess] = []
        self.max_live = 0

    async def __call__(self, *argv, **kwargs):
        self.calls.append([str(part) for part in argv])
        self.kwargs.append(kwargs)
        behaviour = self.behaviours.pop(0) if self.behaviours else {}
        if isinstance(behaviour, BaseException):
            raise behaviour
        proc = FakeProcess(argv=argv, **behaviour)
        self.processes.append(proc)
        self.max_live = max(self.max_live, len(self.live()))
        return proc

    def live(self) -> list[FakeProcess]:
        return [proc for proc in self.processes if proc.alive]


class FakeAuthority:
    def __init__(self, *, port: int = 8000, source_password: str = "hackme", source_limit: int = 32) -> None:
        self.port = port
        self.source_password = source_password
        self.admin_password = "hackme"
        self.hostname = "localhost"
        self.source_limit = source_limit

    def get_port(self) -> int:
        return self.port

    def get_hostname(self) -> str:
        return self.hostname

    def get_source_password(self) -> str:
        return self.source_password

    def get_admin_password(self) -> str:
        return self.admin_password

    def get_source_limit(self) -> int:
        return self.source_limit


class FakeSupervisor:
    def __init__(self, health: RelayHealth = RelayHealth.HEALTHY) -> None:
        self.health = health

    async def get_status(self) -> RelayStatus:
        running = self.health is not RelayHealth.CRITICAL
        return RelayStatus(
            health=self.health,
            process_running=running,
            port_bound=self.health is RelayHealth.HEALTHY,
            probe_ok=self.health is RelayHealth.HEALTHY,
            port=8000,
            hostname="localhost",
            listener_count=0 if running else None,
            pids=(1234,) if running else (),
        )


class FakeDevices:
    def __init__(self, known=None, *, reachable: bool = True, aliases=None) -> None:
        self.known = dict(
            known
            if known is not None
            else {
                "usb-mic": "hw:CARD=Mic,DEV=0",
                "line-in": "hw:CARD=Line,DEV=0",
            }
        )
        self.reachable = reachable
        self.tested: list[str] = []
        # alias -> listed id
        self.aliases = dict(aliases or {})

    async def canonical_id(self, device_id: str) -> str:
        return self.aliases.get(device_id, device_id)

    async def resolve(self, device_id: str) -> str | None:
        return self.known.get(self.aliases.get(device_id, device_id))

    async def test(self, device_id: str) -> bool:
        self.tested.append(device_id)
        return self.reachable and self.aliases.get(device_id, device_id) in self.known


class FakeInspector:
    def __init__(self, *, processes=(), port_bound: bool = False, probe: ProbeResult | None = None) -> None:
        self.processes = [ProcessInfo(pid=pid, name="icecast") for pid in processes]
        self.port_bound = port_bound
        self.probe = probe or ProbeResult(ok=False, error="connection refused")
        self.probed: list[tuple[str, str | None, str | None]] = []
        self.terminated: list[list[int]] = []

    async def list_by_name(self, names):
        return list(self.processes)

    async def is_port_bound(self, port: int) -> bool:
        return self.port_bound

    async def probe_http(self, url, *, username=None, password=None, timeout=3.0):
        self.probed.append((url, username, password))
        return self.probe

    async def terminate_pids(self, pids, *, timeout=5.0):
        self.terminated.append(list(pids))
        self.processes = [info for info in self.processes if info.pid not in pids]
        return []


@pytest.fixture
def spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture
def authority() -> FakeAuthority:
    return FakeAuthority()


@pytest.fixture
def supervisor() -> FakeSupervisor:
    return FakeSupervisor()


@pytest.fixture
def devices() -> FakeDevices:
    return FakeDevices()


@pytest.fixture
def store_path(tmp_path: Path) -> Path:
    return tmp_path / "state" / "streams.json"


@pytest.fixture
def build_orchestrator(spawner, authority, supervisor, devices, store_path):
    """Factory so a test can build a second orchestrator over the same store."""

    def _build(**overrides) -> StreamOrchestrator:
        options = dict(
            store=StreamStore(store_path),
            events=StreamEventBus(),
            spawn=spawner,
            which=lambda name: "/usr/bin/ffmpeg",
            grace_period=0.05,
            spawn_timeout=1.0,
            stop_timeout=0.5,
            platform="linux",
        )
        options.update(overrides)
        return StreamOrchestrator(authority, supervisor, devices, **options)

    return _build


@pytest.fixture
def orchestrator(build_orchestrator) -> StreamOrchestrator:
    return build_orchestrator()


async def wait_for_status(orchestrator: StreamOrchestrator, stream_id: str, status: str, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        snapshot = orchestrator.get_stream_status(stream_id)
        if snapshot["status"] == status:
            return snapshot
        await asyncio.sleep(0.01)
    raise AssertionError(f"{stream_id} never reached {status}: {orchestrator.get_stream_status(stream_id)}")
