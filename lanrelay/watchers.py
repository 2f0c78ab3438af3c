"""File change event sources used to keep cached settings in sync."""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import logging
import os
from pathlib import Path
from typing import Awaitable, Callable

ChangeCallback = Callable[[Path], Awaitable[None]]
Signature = tuple[int, int, bytes | None]

# Files up to this size are also hashed, so a same-size rewrite within one
# mtime tick is still seen.
DIGEST_MAX_BYTES = 256 * 1024


class ConfigChangeSource:
    """Something that eventually reports modifications of one file.

    Subscribers are awaited one at a time, so a callback never overlaps with
    the next notification from the same source.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._callbacks: list[ChangeCallback] = []

    def subscribe(self, callback: ChangeCallback) -> None:
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def unsubscribe(self, callback: ChangeCallback) -> None:
        with contextlib.suppress(ValueError):
            self._callbacks.remove(callback)

    async def start(self) -> None:
        raise NotImplementedError

    async def stop(self) -> None:
        raise NotImplementedError

    async def _notify(self) -> None:
        for callback in list(self._callbacks):
            await callback(self.path)


class PollingFileWatcher(ConfigChangeSource):
    """Poll ``stat()`` on a file and notify subscribers when it changes."""

    def __init__(
        self,
        path: Path,
        *,
        poll_interval: float = 1.0,
        logger: logging.Logger | None = None,
    ) -> None:
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        super().__init__(path)
        self._poll_interval = float(poll_interval)
        self._logger = logger or logging.getLogger("relay_config")
        self._task: asyncio.Task | None = None
        self._last_signature: Signature | None = None
        self._primed = False

    @property
    def running(self) -> bool:
        return self._task is not None

    async def start(self) -> None:
        if self._task is not None:
            return
        if not self._primed:
            self._last_signature = await asyncio.to_thread(self._signature)
            self._primed = True
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

    async def poll_once(self) -> bool:
        """Check the file once; returns ``True`` when subscribers were notified."""

        signature = await asyncio.to_thread(self._signature)
        if self._primed and signature == self._last_signature:
            return False
        self._last_signature = signature
        self._primed = True
        await self._notify()
        return True

    async def _run(self) -> None:
        try:
            while True:
                try:
                    await asyncio.sleep(self._poll_interval)
                    await self.poll_once()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    self._logger.warning("config watch poll failed for %s: %s", self.path, exc)
        finally:
            self._task = None

    def _signature(self) -> Signature | None:
        try:
            stat = os.stat(self.path)
        except FileNotFoundError:
            return None
        except OSError as exc:
            self._logger.debug("stat failed for %s: %s", self.path, exc)
            return self._last_signature
        digest = None
        if stat.st_size <= DIGEST_MAX_BYTES:
            try:
                digest = hashlib.blake2b(self.path.read_bytes(), digest_size=16).digest()
            except FileNotFoundError:
                return None
            except OSError as exc:
                self._logger.debug("read failed for %s: %s", self.path, exc)
                return self._last_signature
        return (stat.st_mtime_ns, stat.st_size, digest)


__all__ = ["ChangeCallback", "ConfigChangeSource", "PollingFileWatcher"]
