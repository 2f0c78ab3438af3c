"""Periodic removal of stream definitions that have been idle too long."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - imports for type checkers
    from .orchestrator import StreamOrchestrator

DEFAULT_MAX_AGE_SEC = 24 * 3600.0
DEFAULT_INTERVAL_SEC = 6 * 3600.0


class RetentionSweeper:
    """Run ``StreamOrchestrator.sweep_retention`` on a fixed interval."""

    def __init__(
        self,
        orchestrator: "StreamOrchestrator",
        *,
        max_age: float = DEFAULT_MAX_AGE_SEC,
        interval: float = DEFAULT_INTERVAL_SEC,
        logger: logging.Logger | None = None,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        if max_age <= 0:
            raise ValueError("max_age must be positive")
        self._orchestrator = orchestrator
        self._max_age = float(max_age)
        self._interval = float(interval)
        self._logger = logger or logging.getLogger("retention")
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None

    async def start(self) -> None:
        if self._task is not None:
            return
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run())

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def sweep_once(self) -> list[str]:
        removed = await self._orchestrator.sweep_retention(self._max_age)
        if removed:
            self._logger.info("retention sweep removed %d streams", len(removed))
        return removed

    async def _run(self) -> None:
        try:
            while True:
                try:
                    await self.sweep_once()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    self._logger.warning("retention sweep failed: %s", exc)
                await asyncio.sleep(self._interval)
        finally:
            self._task = None


__all__ = ["RetentionSweeper"]
