"""Enumerate capture devices and map device ids to platform capture names."""

from __future__ import annotations

import asyncio
import logging
import re
import sys
import time
from dataclasses import dataclass
from typing import Iterable, List

from .ffmpeg_io import capture_input_args

_ALSA_LINE = re.compile(
    r"card\s+(?P<card_index>\d+):\s*"
    r"(?P<card_id>[^\[]+)\[(?P<card_name>[^\]]+)\],\s*"
    r"device\s+(?P<device_index>\d+):\s*"
    r"(?P<device_id>[^\[]+)\[(?P<device_name>[^\]]+)\]",
    re.IGNORECASE,
)
_DSHOW_AUDIO = re.compile(r'\[dshow @ [^\]]*\]\s+"(?P<name>[^"]+)"\s+\(audio\)', re.IGNORECASE)
_AVF_DEVICE = re.compile(r'\[AVFoundation[^\]]*\]\s+\[(?P<index>\d+)\]\s+"?(?P<name>[^"]+?)"?\s*$')
_ALSA_PASSTHROUGH = re.compile(r"^(default|sysdefault|pulse|pipewire|dsnoop|(plug)?hw:)", re.IGNORECASE)


@dataclass(frozen=True)
class CaptureDevice:
    identifier: str
    label: str
    capture_name: str
    backend: str

    def to_dict(self) -> dict[str, str]:
        return {
            "id": self.identifier,
            "label": self.label,
            "captureName": self.capture_name,
            "backend": self.backend,
        }


def sanitize_device_id(label: str) -> str:
    cleaned = re.sub(r"[^a-z0-9]", "-", label.lower())
    cleaned = re.sub(r"-+", "-", cleaned)
    return cleaned.strip("-")


def parse_alsa_listing(output: str) -> List[CaptureDevice]:
    """Parse ``arecord -l`` output."""

    devices: List[CaptureDevice] = []
    for line in output.splitlines():
        match = _ALSA_LINE.search(line)
        if not match:
            continue
        card_id = match.group("card_id").strip()
        device_index = int(match.group("device_index"))
        device_name = match.group("device_name").strip() or match.group("device_id").strip()
        card_name = match.group("card_name").strip() or card_id
        identifier = f"hw:CARD={card_id},DEV={device_index}"
        devices.append(
            CaptureDevice(
                identifier=identifier,
                label=f"{card_name}, device {device_index}: {device_name}",
                capture_name=identifier,
                backend="alsa",
            )
        )
    return devices


def parse_dshow_listing(output: str) -> List[CaptureDevice]:
    devices: List[CaptureDevice] = []
    for line in output.splitlines():
        match = _DSHOW_AUDIO.search(line)
        if not match:
            continue
        name = match.group("name").strip()
        devices.append(
            CaptureDevice(
                identifier=sanitize_device_id(name),
                label=name,
                capture_name=name,
                backend="dshow",
            )
        )
    return devices


def parse_avfoundation_listing(output: str) -> List[CaptureDevice]:
    devices: List[CaptureDevice] = []
    in_audio = False
    for line in output.splitlines():
        lowered = line.lower()
        if "avfoundation audio devices" in lowered:
            in_audio = True
            continue
        if "avfoundation video devices" in lowered:
            in_audio = False
            continue
        if not in_audio:
            continue
        match = _AVF_DEVICE.search(line)
        if not match:
            continue
        name = match.group("name").strip()
        devices.append(
            CaptureDevice(
                identifier=sanitize_device_id(name),
                label=name,
                capture_name=f":{match.group('index')}",
                backend="avfoundation",
            )
        )
    return devices


class DeviceCatalog:
    """Resolve stream device ids to the names the encoder's capture backend expects."""

    def __init__(
        self,
        *,
        ffmpeg_path: str = "ffmpeg",
        platform: str = sys.platform,
        cache_ttl: float = 30.0,
        listing_timeout: float = 5.0,
        test_timeout: float = 5.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self._ffmpeg_path = ffmpeg_path
        self._platform = platform
        self._cache_ttl = float(cache_ttl)
        self._listing_timeout = float(listing_timeout)
        self._test_timeout = float(test_timeout)
        self._logger = logger or logging.getLogger("audio_devices")
        self._cache: List[CaptureDevice] | None = None
        self._cached_at = 0.0
        self._lock = asyncio.Lock()

    async def list_devices(self, *, refresh: bool = False) -> List[CaptureDevice]:
        async with self._lock:
            fresh = (time.monotonic() - self._cached_at) < self._cache_ttl
            if self._cache is not None and fresh and not refresh:
                return list(self._cache)
            devices = await self._discover()
            self._cache = devices
            self._cached_at = time.monotonic()
            self._logger.debug("discovered %d capture devices", len(devices))
            return list(devices)

    async def _discover(self) -> List[CaptureDevice]:
        if self._platform.startswith("win"):
            output = await self._run_listing(
                [self._ffmpeg_path, "-hide_banner", "-list_devices", "true", "-f", "dshow", "-i", "dummy"]
            )
            return parse_dshow_listing(output)
        if self._platform == "darwin":
            output = await self._run_listing(
                [self._ffmpeg_path, "-hide_banner", "-f", "avfoundation", "-list_devices", "true", "-i", ""]
            )
            return parse_avfoundation_listing(output)

        seen: set[str] = set()
        discovered: List[CaptureDevice] = []
        for command in (["arecord", "-l"], ["aplay", "-l"]):
            for device in parse_alsa_listing(await self._run_listing(command)):
                if device.identifier in seen:
                    continue
                seen.add(device.identifier)
                discovered.append(device)
        return discovered

    async def _run_listing(self, command: Iterable[str]) -> str:
        argv = list(command)
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError:
            return ""
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self._listing_timeout)
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            self._logger.warning("device listing timed out: %s", argv[0])
            return ""
        output = stdout.decode("utf-8", errors="replace").strip()
        if not output:
            # ffmpeg prints device lists on stderr.
            output = stderr.decode("utf-8", errors="replace").strip()
        return output

    async def resolve(self, device_id: str) -> str | None:
        """Platform capture name for ``device_id``, or ``None`` when unknown."""

        if not device_id:
            return None
        match = self._match(await self.list_devices(), device_id)
        if match is not None:
            return match
        if not self._platform.startswith("win") and self._platform != "darwin":
            if _ALSA_PASSTHROUGH.match(device_id):
                return device_id
        # Device may have been plugged in since the last listing.
        return self._match(await self.list_devices(refresh=True), device_id)

    @staticmethod
    def _find(devices: Iterable[CaptureDevice], device_id: str) -> CaptureDevice | None:
        wanted = sanitize_device_id(device_id)
        for device in devices:
            if device_id in (device.identifier, device.capture_name, device.label):
                return device
            if wanted and wanted == device.identifier:
                return device
        return None

    @classmethod
    def _match(cls, devices: Iterable[CaptureDevice], device_id: str) -> str | None:
        device = cls._find(devices, device_id)
        return device.capture_name if device is not None else None

    async def canonical_id(self, device_id: str) -> str:
        """Stable identifier for ``device_id``, whichever alias it was given as.

        Ids, labels and capture names of one listed device all map to the
        listed identifier. Unlisted ids come back unchanged.
        """

        if not device_id:
            return device_id
        device = self._find(await self.list_devices(), device_id)
        return device.identifier if device is not None else device_id

    async def test(self, device_id: str) -> bool:
        """Capture one second from the device and discard it."""

        capture_name = await self.resolve(device_id)
        if capture_name is None:
            return False
        command = [
            self._ffmpeg_path,
            "-hide_banner",
            "-nostdin",
            "-loglevel",
            "error",
            *capture_input_args(capture_name, self._platform),
            "-t",
            "1",
            "-f",
            "null",
            "-",
        ]
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            self._logger.warning("device test could not launch ffmpeg: %s", exc)
            return False
        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=self._test_timeout)
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            self._logger.warning("device test for %s timed out", device_id)
            return False
        if proc.returncode != 0:
            self._logger.info(
                "device %s not reachable: %s",
                device_id,
                stderr.decode("utf-8", errors="replace").strip()[-300:],
            )
            return False
        return True


__all__ = [
    "CaptureDevice",
    "DeviceCatalog",
    "parse_alsa_listing",
    "parse_avfoundation_listing",
    "parse_dshow_listing",
    "sanitize_device_id",
]
