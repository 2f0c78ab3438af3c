"""Exclusive reservation table for capture devices."""

from __future__ import annotations

import logging
import threading

from .errors import ConflictError


class DeviceConflictGuard:
    """Track which stream currently holds each capture device.

    ``reserve`` is a check-and-set under one lock so start, stop and restart
    paths can race on the same device key without double-booking it.
    """

    def __init__(self, *, logger: logging.Logger | None = None) -> None:
        self._holders: dict[str, str] = {}
        self._lock = threading.Lock()
        self._logger = logger or logging.getLogger("device_guard")

    def reserve(self, device_id: str, stream_id: str) -> None:
        if not device_id:
            raise ValueError("device_id must be a non-empty string")
        with self._lock:
            holder = self._holders.get(device_id)
            if holder is not None and holder != stream_id:
                raise ConflictError(
                    f"Device {device_id} is already in use by stream {holder}",
                    details={"deviceId": device_id, "heldBy": holder, "streamId": stream_id},
                )
            self._holders[device_id] = stream_id
        if holder is None:
            self._logger.debug("device %s reserved by %s", device_id, stream_id)

    def release(self, device_id: str | None, stream_id: str | None = None) -> bool:
        """Drop a reservation; returns ``True`` when one was removed.

        With ``stream_id`` the reservation is only dropped if that stream holds
        it, so a late release from a replaced stream cannot free a device that
        was handed to someone else.
        """

        if not device_id:
            return False
        with self._lock:
            holder = self._holders.get(device_id)
            if holder is None:
                return False
            if stream_id is not None and holder != stream_id:
                return False
            del self._holders[device_id]
        self._logger.debug("device %s released by %s", device_id, holder)
        return True

    def release_held_by(self, stream_id: str) -> list[str]:
        """Drop every reservation ``stream_id`` holds; returns the device keys."""

        with self._lock:
            keys = [key for key, holder in self._holders.items() if holder == stream_id]
            for key in keys:
                del self._holders[key]
        for key in keys:
            self._logger.debug("device %s released by %s", key, stream_id)
        return keys

    def holder(self, device_id: str) -> str | None:
        with self._lock:
            return self._holders.get(device_id)

    def snapshot(self) -> dict[str, str]:
        with self._lock:
            return dict(self._holders)

    def __len__(self) -> int:
        with self._lock:
            return len(self._holders)


__all__ = ["DeviceConflictGuard"]
