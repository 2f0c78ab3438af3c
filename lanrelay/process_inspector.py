"""Process table, socket and HTTP checks behind one swappable capability."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Iterable, Sequence

import aiohttp
import psutil


@dataclass(frozen=True)
class ProcessInfo:
    pid: int
    name: str


@dataclass(frozen=True)
class ProbeResult:
    ok: bool
    status: int | None = None
    body: str = ""
    error: str | None = None


def _normalise_name(name: str) -> str:
    lowered = name.strip().lower()
    if lowered.endswith(".exe"):
        lowered = lowered[:-4]
    return lowered


class ProcessInspector:
    """Default inspector built on psutil and aiohttp.

    Every blocking psutil call runs in a worker thread so a slow process table
    scan never stalls the event loop.
    """

    def __init__(self, *, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger("process_inspector")

    async def list_by_name(self, names: Iterable[str]) -> list[ProcessInfo]:
        wanted = {_normalise_name(name) for name in names if name}
        if not wanted:
            return []
        return await asyncio.to_thread(self._scan, wanted)

    def _scan(self, wanted: set[str]) -> list[ProcessInfo]:
        found: list[ProcessInfo] = []
        for proc in psutil.process_iter(["pid", "name"]):
            try:
                name = proc.info.get("name") or ""
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
            if _normalise_name(name) in wanted:
                found.append(ProcessInfo(pid=int(proc.info["pid"]), name=name))
        found.sort(key=lambda info: info.pid)
        return found

    async def is_port_bound(self, port: int) -> bool:
        try:
            return await asyncio.to_thread(self._port_listening, int(port))
        except psutil.AccessDenied:
            # macOS and hardened Linux refuse global socket enumeration.
            return await self._port_accepts(int(port))

    @staticmethod
    def _port_listening(port: int) -> bool:
        for conn in psutil.net_connections(kind="inet"):
            if conn.status != psutil.CONN_LISTEN or not conn.laddr:
                continue
            if conn.laddr.port == port:
                return True
        return False

    async def _port_accepts(self, port: int, timeout: float = 1.0) -> bool:
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection("127.0.0.1", port), timeout=timeout
            )
        except (OSError, asyncio.TimeoutError):
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True

    async def probe_http(
        self,
        url: str,
        *,
        username: str | None = None,
        password: str | None = None,
        timeout: float = 3.0,
    ) -> ProbeResult:
        auth = aiohttp.BasicAuth(username, password or "") if username else None
        client_timeout = aiohttp.ClientTimeout(total=timeout)
        try:
            async with aiohttp.ClientSession(timeout=client_timeout) as session:
                async with session.get(url, auth=auth) as response:
                    body = await response.text()
                    return ProbeResult(ok=response.status == 200, status=response.status, body=body)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            self._logger.debug("http probe %s failed: %s", url, exc)
            return ProbeResult(ok=False, error=str(exc) or exc.__class__.__name__)

    async def terminate_pids(self, pids: Sequence[int], *, timeout: float = 5.0) -> list[int]:
        """Terminate ``pids``, kill whatever survives ``timeout``; returns pids still alive."""

        if not pids:
            return []
        return await asyncio.to_thread(self._terminate, list(pids), float(timeout))

    def _terminate(self, pids: list[int], timeout: float) -> list[int]:
        procs: list[psutil.Process] = []
        denied: list[int] = []
        for pid in pids:
            try:
                proc = psutil.Process(pid)
                proc.terminate()
                procs.append(proc)
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied as exc:
                self._logger.warning("not allowed to terminate pid %s: %s", pid, exc)
                denied.append(pid)
        _, alive = psutil.wait_procs(procs, timeout=timeout)
        for proc in alive:
            self._logger.warning("pid %s ignored terminate; killing", proc.pid)
            try:
                proc.kill()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        if not alive:
            return denied
        _, still_alive = psutil.wait_procs(alive, timeout=timeout)
        return denied + [proc.pid for proc in still_alive]


__all__ = ["ProbeResult", "ProcessInfo", "ProcessInspector"]
