"""Lifecycle and health of the relay server process."""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
import time
import xml.etree.ElementTree as ET
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Sequence

from .diagnostics import DiagnosisContext, DiagnosticsEngine
from .errors import DiagnosedFailureError, PersistenceError, ProcessLaunchError
from .process_inspector import ProcessInspector, ProbeResult
from .relay_config import ConfigurationAuthority

DEFAULT_PROCESS_NAMES = ("icecast", "icecast2", "icecast.exe")

SpawnFn = Callable[..., Awaitable[asyncio.subprocess.Process]]


class RelayHealth(str, enum.Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"


@dataclass(frozen=True)
class RelayStatus:
    health: RelayHealth
    process_running: bool
    port_bound: bool
    probe_ok: bool
    port: int
    hostname: str
    listener_count: int | None = None
    pids: tuple[int, ...] = field(default_factory=tuple)
    probe_error: str | None = None

    @property
    def running(self) -> bool:
        return self.process_running

    def snapshot(self) -> dict[str, Any]:
        return {
            "running": self.process_running,
            "port": self.port,
            "hostname": self.hostname,
            "listenerCount": self.listener_count,
            "health": self.health.value,
            "checks": {
                "process": self.process_running,
                "port": self.port_bound,
                "probe": self.probe_ok,
            },
            "pids": list(self.pids),
        }


def classify_health(process_running: bool, port_bound: bool, probe_ok: bool) -> RelayHealth:
    if not process_running:
        return RelayHealth.CRITICAL
    if port_bound and probe_ok:
        return RelayHealth.HEALTHY
    return RelayHealth.DEGRADED


def parse_listener_count(xml_text: str) -> int | None:
    """Total listeners from an ``/admin/stats.xml`` body."""

    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError:
        return None
    node = root.find("listeners")
    if node is not None and node.text and node.text.strip().isdigit():
        return int(node.text.strip())
    total = 0
    found = False
    for source in root.findall("source"):
        listeners = source.findtext("listeners")
        if listeners and listeners.strip().isdigit():
            total += int(listeners.strip())
            found = True
    return total if found else None


def parse_mountpoints(xml_text: str) -> list[dict[str, Any]]:
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError:
        return []
    mounts: list[dict[str, Any]] = []
    for source in root.findall("source"):
        mount = source.get("mount")
        if not mount:
            continue
        listeners_raw = (source.findtext("listeners") or "").strip()
        mounts.append(
            {
                "mount": mount,
                "listeners": int(listeners_raw) if listeners_raw.isdigit() else 0,
                "contentType": (source.findtext("content-type") or "").strip() or None,
            }
        )
    return mounts


class RelaySupervisor:
    """Start, stop and health-check the relay server.

    The process table is ground truth: a relay started or killed outside this
    service is reported as such, and ``start`` will not launch a second copy.
    """

    def __init__(
        self,
        authority: ConfigurationAuthority,
        inspector: ProcessInspector,
        *,
        diagnostics: DiagnosticsEngine | None = None,
        process_names: Sequence[str] = DEFAULT_PROCESS_NAMES,
        startup_timeout: float = 8.0,
        stop_timeout: float = 5.0,
        restart_wait: float = 10.0,
        probe_timeout: float = 3.0,
        intentional_stop_window: float = 30.0,
        poll_interval: float = 0.25,
        spawn: SpawnFn | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._authority = authority
        self._inspector = inspector
        self._diagnostics = diagnostics or DiagnosticsEngine()
        self._process_names = tuple(process_names)
        self._startup_timeout = float(startup_timeout)
        self._stop_timeout = float(stop_timeout)
        self._restart_wait = float(restart_wait)
        self._probe_timeout = float(probe_timeout)
        self._intentional_stop_window = float(intentional_stop_window)
        self._poll_interval = max(0.01, float(poll_interval))
        self._spawn: SpawnFn = spawn or asyncio.create_subprocess_exec
        self._log = logger or logging.getLogger("relay_supervisor")

        self._lock = asyncio.Lock()
        self._proc: asyncio.subprocess.Process | None = None
        self._output_task: asyncio.Task | None = None
        self._exit_task: asyncio.Task | None = None
        self._output_tail: Deque[str] = deque(maxlen=200)
        self._stopped_at: float | None = None

    # --- state ---

    @property
    def managed_pid(self) -> int | None:
        proc = self._proc
        if proc is None or proc.returncode is not None:
            return None
        return proc.pid

    @property
    def recently_stopped(self) -> bool:
        """True while an intentional stop should suppress auto-restart."""

        stopped_at = self._stopped_at
        if stopped_at is None:
            return False
        return (time.monotonic() - stopped_at) < self._intentional_stop_window

    async def is_running(self) -> bool:
        return bool(await self._inspector.list_by_name(self._process_names))

    # --- lifecycle ---

    async def start(self) -> dict[str, Any]:
        async with self._lock:
            return await self._start_locked()

    async def stop(self) -> dict[str, Any]:
        async with self._lock:
            return await self._stop_locked()

    async def restart(self) -> dict[str, Any]:
        async with self._lock:
            stop_result: dict[str, Any] | None = None
            if await self.is_running() or self.managed_pid is not None:
                stop_result = await self._stop_locked()
                await self._wait_for_shutdown()
            start_result = await self._start_locked()
        start_result = dict(start_result)
        start_result["restarted"] = stop_result is not None and bool(stop_result.get("wasRunning"))
        return start_result

    async def _start_locked(self) -> dict[str, Any]:
        running = await self._inspector.list_by_name(self._process_names)
        if running:
            pid = running[0].pid
            self._log.info("relay already running (pid %s)", pid)
            return {
                "success": True,
                "alreadyRunning": True,
                "pid": pid,
                "message": f"Relay server is already running (pid {pid})",
            }

        installation = self._authority.installation
        if installation is None:
            raise ProcessLaunchError(
                "Relay executable not found; install the relay server or set relay.executable"
            )
        try:
            config_path = await self._authority.ensure_config_file()
        except PersistenceError as exc:
            raise ProcessLaunchError(
                f"Relay config is not available: {exc.message}", details=exc.details
            ) from exc

        command = [str(installation.executable), "-c", str(config_path)]
        self._log.info("starting relay: %s", " ".join(command))
        try:
            proc = await self._spawn(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=str(installation.executable.parent),
            )
        except OSError as exc:
            raise ProcessLaunchError(
                f"Failed to launch relay: {exc}",
                details={"executable": str(installation.executable)},
            ) from exc

        self._proc = proc
        self._stopped_at = None
        self._output_tail.clear()
        self._output_task = asyncio.get_running_loop().create_task(self._drain_output(proc))

        port = self._authority.get_port()
        ready = await self._wait_until_ready(proc, port)
        if proc.returncode is not None:
            await self._settle_output()
            self._proc = None
            output = "\n".join(self._output_tail)
            diagnosis = self._diagnostics.diagnose(output, proc.returncode, DiagnosisContext(port=port))
            self._log.error(
                "relay exited during startup with code %s (%s)", proc.returncode, diagnosis.category
            )
            raise DiagnosedFailureError(diagnosis, details={"exitCode": proc.returncode})

        if ready:
            self._log.info("relay started (pid %s) on port %s", proc.pid, port)
            message = f"Relay server started on port {port}"
        else:
            self._log.warning(
                "relay pid %s has not bound port %s after %.1fs", proc.pid, port, self._startup_timeout
            )
            message = f"Relay server launched but port {port} is not listening yet"
        self._exit_task = asyncio.get_running_loop().create_task(self._watch_exit(proc))
        return {
            "success": True,
            "alreadyRunning": False,
            "pid": proc.pid,
            "portBound": ready,
            "message": message,
        }

    async def _wait_until_ready(self, proc: asyncio.subprocess.Process, port: int) -> bool:
        deadline = time.monotonic() + self._startup_timeout
        while time.monotonic() < deadline:
            if proc.returncode is not None:
                return False
            if await self._inspector.is_port_bound(port):
                return True
            await asyncio.sleep(self._poll_interval)
        return False

    async def _stop_locked(self) -> dict[str, Any]:
        running = await self._inspector.list_by_name(self._process_names)
        proc = self._proc
        managed_alive = proc is not None and proc.returncode is None
        if not running and not managed_alive:
            self._proc = None
            return {"success": True, "wasRunning": False, "message": "Relay server is not running"}

        self._stopped_at = time.monotonic()
        if managed_alive:
            assert proc is not None
            await self._terminate_managed(proc)
        self._proc = None

        managed_pid = proc.pid if proc is not None else None
        external = [info.pid for info in running if info.pid != managed_pid]
        survivors: list[int] = []
        if external:
            self._log.info("stopping relay processes not started here: %s", external)
            survivors = await self._inspector.terminate_pids(external, timeout=self._stop_timeout)
        if survivors:
            self._log.error("relay processes still alive after kill: %s", survivors)
            return {
                "success": False,
                "wasRunning": True,
                "message": f"Relay processes could not be stopped: {survivors}",
            }
        self._log.info("relay stopped")
        return {"success": True, "wasRunning": True, "message": "Relay server stopped"}

    async def _terminate_managed(self, proc: asyncio.subprocess.Process) -> None:
        with contextlib.suppress(ProcessLookupError):
            proc.terminate()
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._stop_timeout)
        except asyncio.TimeoutError:
            self._log.warning("relay pid %s did not exit after terminate; killing", proc.pid)
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
        await self._settle_output()

    async def _wait_for_shutdown(self) -> None:
        deadline = time.monotonic() + self._restart_wait
        while time.monotonic() < deadline:
            if not await self.is_running():
                return
            await asyncio.sleep(self._poll_interval)
        raise ProcessLaunchError(
            f"Relay server did not shut down within {self._restart_wait:.0f}s"
        )

    async def _drain_output(self, proc: asyncio.subprocess.Process) -> None:
        stream = proc.stdout
        if stream is None:
            return
        try:
            while True:
                line = await stream.readline()
                if not line:
                    break
                text = line.decode("utf-8", errors="replace").rstrip()
                if text:
                    self._output_tail.append(text)
                    self._log.debug("relay: %s", text)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # pragma: no cover - pipe errors are unexpected
            self._log.debug("relay output reader stopped: %s", exc)

    async def _settle_output(self, timeout: float = 1.0) -> None:
        task = self._output_task
        if task is None:
            return
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        except asyncio.TimeoutError:
            task.cancel()
        except asyncio.CancelledError:
            raise
        self._output_task = None

    async def _watch_exit(self, proc: asyncio.subprocess.Process) -> None:
        try:
            code = await proc.wait()
        except asyncio.CancelledError:
            raise
        if self._proc is proc:
            self._proc = None
        if self.recently_stopped:
            self._log.info("relay exited with code %s after stop request", code)
            return
        self._log.warning("relay exited unexpectedly with code %s", code)

    async def cleanup(self) -> None:
        """Cancel background readers; an externally owned relay keeps running."""

        for task in (self._exit_task, self._output_task):
            if task is None:
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._exit_task = None
        self._output_task = None

    # --- health ---

    def _admin_url(self, path: str) -> str:
        return f"http://127.0.0.1:{self._authority.get_port()}{path}"

    async def _probe(self, path: str) -> ProbeResult:
        return await self._inspector.probe_http(
            self._admin_url(path),
            username="admin",
            password=self._authority.get_admin_password(),
            timeout=self._probe_timeout,
        )

    async def get_status(self) -> RelayStatus:
        port = self._authority.get_port()
        processes, port_bound, probe = await asyncio.gather(
            self._inspector.list_by_name(self._process_names),
            self._inspector.is_port_bound(port),
            self._probe("/admin/stats.xml"),
        )
        process_running = bool(processes)
        health = classify_health(process_running, port_bound, probe.ok)
        listener_count = parse_listener_count(probe.body) if probe.ok else None
        return RelayStatus(
            health=health,
            process_running=process_running,
            port_bound=port_bound,
            probe_ok=probe.ok,
            port=port,
            hostname=self._authority.get_hostname(),
            listener_count=listener_count,
            pids=tuple(info.pid for info in processes),
            probe_error=probe.error or (None if probe.ok else f"HTTP {probe.status}"),
        )

    async def get_mountpoints(self) -> list[dict[str, Any]]:
        probe = await self._probe("/admin/listmounts.xml")
        if not probe.ok:
            return []
        return parse_mountpoints(probe.body)


__all__ = [
    "DEFAULT_PROCESS_NAMES",
    "RelayHealth",
    "RelayStatus",
    "RelaySupervisor",
    "classify_health",
    "parse_listener_count",
    "parse_mountpoints",
]
