"""Stop dependent streams when the relay server stays down.

Every encoder pushes into the relay, so a relay that disappears leaves the
encoders talking to nothing. The watchdog polls relay health and, once the
relay has been absent for longer than the grace period, stops every running
stream and marks it with a relay-outage diagnosis. A relay that is merely
degraded (process up, port or admin probe failing) still counts as up; it may
be restarting.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import TYPE_CHECKING, Callable

from .relay_supervisor import RelayHealth

if TYPE_CHECKING:  # pragma: no cover - imports for type checkers
    from .orchestrator import StreamOrchestrator
    from .relay_supervisor import RelaySupervisor

DEFAULT_INTERVAL_SEC = 10.0
DEFAULT_GRACE_SEC = 30.0


class RelayWatchdog:
    def __init__(
        self,
        orchestrator: "StreamOrchestrator",
        supervisor: "RelaySupervisor",
        *,
        interval: float = DEFAULT_INTERVAL_SEC,
        grace: float = DEFAULT_GRACE_SEC,
        clock: Callable[[], float] = time.monotonic,
        logger: logging.Logger | None = None,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        if grace < 0:
            raise ValueError("grace must not be negative")
        self._orchestrator = orchestrator
        self._supervisor = supervisor
        self._interval = float(interval)
        self._grace = float(grace)
        self._clock = clock
        self._log = logger or logging.getLogger("relay_watchdog")
        self._down_since: float | None = None
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None

    @property
    def down_since(self) -> float | None:
        return self._down_since

    async def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        self._log.info(
            "relay watchdog started; streams stop after %.0fs of relay downtime", self._grace
        )

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def check_once(self) -> list[str]:
        """Poll the relay once; returns the ids stopped by this check."""

        status = await self._supervisor.get_status()
        now = self._clock()
        if status.health is not RelayHealth.CRITICAL:
            if self._down_since is not None:
                self._log.info("relay is back after %.0fs", now - self._down_since)
                self._down_since = None
            return []

        if self._down_since is None:
            self._down_since = now
            self._log.warning(
                "relay server went down; waiting %.0fs before stopping streams", self._grace
            )
            return []

        down_for = now - self._down_since
        if down_for < self._grace:
            self._log.debug("relay down for %.0fs of %.0fs grace", down_for, self._grace)
            return []
        return await self._orchestrator.stop_for_relay_outage(down_for)

    async def _run(self) -> None:
        try:
            while True:
                try:
                    await self.check_once()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    self._log.warning("relay health check failed: %s", exc)
                await asyncio.sleep(self._interval)
        finally:
            self._task = None


__all__ = ["RelayWatchdog"]
