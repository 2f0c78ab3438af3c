"""Stream definitions, runtime state and payload validation."""

from __future__ import annotations

import enum
import re
import time
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Deque, Mapping

from .errors import ValidationError

if TYPE_CHECKING:  # pragma: no cover - imports for type checkers
    import asyncio

    from .diagnostics import DiagnosisResult
    from .ffmpeg_io import AudioFormat

DEFAULT_BITRATE = 192
DEFAULT_SAMPLE_RATE = 44100
DEFAULT_CHANNELS = 2
MIN_BITRATE = 32
MAX_BITRATE = 320
MAX_NAME_LENGTH = 100

STDERR_TAIL_CHARS = 4000

_STREAM_ID = re.compile(r"^[A-Za-z0-9_.-]{1,64}$")
_NAME_CLEAN = re.compile(r"[^a-z0-9 ]")

UPDATABLE_FIELDS = frozenset({"name", "deviceId", "inputFile", "bitrate"})


class StreamStatus(str, enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"

    @property
    def active(self) -> bool:
        return self in (StreamStatus.STARTING, StreamStatus.RUNNING, StreamStatus.STOPPING)


@dataclass(frozen=True)
class StreamDefinition:
    id: str
    name: str
    device_id: str | None = None
    input_file: str | None = None
    bitrate: int = DEFAULT_BITRATE
    sample_rate: int = DEFAULT_SAMPLE_RATE
    channels: int = DEFAULT_CHANNELS
    created_at: float = field(default_factory=time.time)
    last_active_at: float | None = None

    @property
    def source(self) -> str:
        return self.device_id if self.device_id is not None else f"file:{self.input_file}"

    def identity(self) -> tuple[str | None, str | None, str]:
        return (self.device_id, self.input_file, self.name)

    def touched(self, when: float | None = None) -> "StreamDefinition":
        return replace(self, last_active_at=time.time() if when is None else when)

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "deviceId": self.device_id,
            "inputFile": self.input_file,
            "name": self.name,
            "config": {
                "bitrate": self.bitrate,
                "sampleRate": self.sample_rate,
                "channels": self.channels,
            },
            "createdAt": self.created_at,
            "lastActiveAt": self.last_active_at,
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "StreamDefinition":
        """Rebuild a definition from its stored form; raises ``ValidationError``."""

        config = record.get("config")
        if not isinstance(config, Mapping):
            config = {}
        created_at = _as_timestamp(record.get("createdAt"))
        return cls(
            id=_require_stream_id(record.get("id")),
            name=str(record.get("name") or record.get("id")),
            device_id=_optional_text(record.get("deviceId"), "deviceId"),
            input_file=_optional_text(record.get("inputFile"), "inputFile"),
            bitrate=_coerce_bitrate(config.get("bitrate", DEFAULT_BITRATE)),
            sample_rate=_positive_int(config.get("sampleRate"), DEFAULT_SAMPLE_RATE),
            channels=_positive_int(config.get("channels"), DEFAULT_CHANNELS),
            created_at=created_at if created_at is not None else time.time(),
            last_active_at=_as_timestamp(record.get("lastActiveAt")),
        )


@dataclass
class StreamRuntimeState:
    status: StreamStatus = StreamStatus.STOPPED
    process: "asyncio.subprocess.Process | None" = None
    pid: int | None = None
    started_at: float | None = None
    audio_format: "AudioFormat | None" = None
    intentional_stop: bool = False
    diagnosis: "DiagnosisResult | None" = None
    exit_code: int | None = None
    status_changed_at: float = field(default_factory=time.time)
    stderr_tail: Deque[str] = field(default_factory=lambda: deque(maxlen=200))
    monitor_task: "asyncio.Task | None" = None
    reader_task: "asyncio.Task | None" = None

    def set_status(self, status: StreamStatus) -> None:
        self.status = status
        self.status_changed_at = time.time()

    def stderr_text(self) -> str:
        text = "\n".join(self.stderr_tail)
        return text[-STDERR_TAIL_CHARS:]


def generate_stream_id(name: str | None = None, *, now: float | None = None) -> str:
    """Mount-safe id derived from ``name`` plus a millisecond timestamp."""

    stamp = int((time.time() if now is None else now) * 1000)
    if name:
        cleaned = _NAME_CLEAN.sub("", name.lower()).strip()
        cleaned = re.sub(r"\s+", "_", cleaned)[:20].strip("_")
        if cleaned:
            return f"{cleaned}_{stamp}"
    return f"stream_{stamp}"


def validate_definition(
    payload: Mapping[str, Any],
    *,
    default_bitrate: int = DEFAULT_BITRATE,
    sample_rate: int = DEFAULT_SAMPLE_RATE,
    channels: int = DEFAULT_CHANNELS,
    now: float | None = None,
) -> StreamDefinition:
    """Turn an API payload into a definition or raise ``ValidationError``.

    Exactly one of ``deviceId`` and ``inputFile`` must be given. A missing id
    is generated from the name.
    """

    if not isinstance(payload, Mapping):
        raise ValidationError("Stream definition must be an object")
    device_id = _optional_text(payload.get("deviceId"), "deviceId")
    input_file = _optional_text(payload.get("inputFile"), "inputFile")
    if (device_id is None) == (input_file is None):
        raise ValidationError(
            "Exactly one of deviceId or inputFile is required",
            details={"deviceId": device_id, "inputFile": input_file},
        )

    name = _optional_text(payload.get("name"), "name")
    if name is not None and len(name) > MAX_NAME_LENGTH:
        raise ValidationError(f"Stream name must be at most {MAX_NAME_LENGTH} characters")

    raw_id = payload.get("id")
    created_at = time.time() if now is None else now
    if raw_id in (None, ""):
        stream_id = generate_stream_id(name, now=created_at)
    else:
        stream_id = _require_stream_id(raw_id)

    bitrate_raw = payload.get("bitrate")
    bitrate = default_bitrate if bitrate_raw in (None, "") else _coerce_bitrate(bitrate_raw)

    return StreamDefinition(
        id=stream_id,
        name=name or f"Stream {stream_id}",
        device_id=device_id,
        input_file=input_file,
        bitrate=bitrate,
        sample_rate=sample_rate,
        channels=channels,
        created_at=created_at,
    )


def validate_changes(changes: Mapping[str, Any]) -> dict[str, Any]:
    if not isinstance(changes, Mapping):
        raise ValidationError("Stream update must be an object")
    unknown = sorted(set(changes) - UPDATABLE_FIELDS)
    if unknown:
        raise ValidationError(
            f"Unsupported stream fields: {', '.join(unknown)}", details={"fields": unknown}
        )
    cleaned: dict[str, Any] = {}
    if "name" in changes:
        name = _optional_text(changes["name"], "name")
        if name is None:
            raise ValidationError("Stream name cannot be empty")
        if len(name) > MAX_NAME_LENGTH:
            raise ValidationError(f"Stream name must be at most {MAX_NAME_LENGTH} characters")
        cleaned["name"] = name
    for key in ("deviceId", "inputFile"):
        if key in changes:
            cleaned[key] = _optional_text(changes[key], key)
    if "bitrate" in changes:
        cleaned["bitrate"] = _coerce_bitrate(changes["bitrate"])
    return cleaned


def iso_timestamp(value: float | None) -> str | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).isoformat()


def _require_stream_id(value: Any) -> str:
    if not isinstance(value, str) or not _STREAM_ID.match(value):
        raise ValidationError(
            "Stream id must be 1-64 characters of letters, digits, '_', '-' or '.'",
            details={"id": value},
        )
    return value


def _optional_text(value: Any, field_name: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a string", details={field_name: value})
    value = value.strip()
    return value or None


def _coerce_bitrate(value: Any) -> int:
    if isinstance(value, bool):
        raise ValidationError("bitrate must be a number")
    if isinstance(value, str):
        value = value.strip().lower().rstrip("k")
    try:
        bitrate = int(value)
    except (TypeError, ValueError):
        raise ValidationError("bitrate must be a number", details={"bitrate": value}) from None
    if not MIN_BITRATE <= bitrate <= MAX_BITRATE:
        raise ValidationError(
            f"bitrate must be between {MIN_BITRATE} and {MAX_BITRATE} kbps",
            details={"bitrate": bitrate},
        )
    return bitrate


def _positive_int(value: Any, default: int) -> int:
    try:
        result = int(value)
    except (TypeError, ValueError):
        return default
    return result if result > 0 else default


def _as_timestamp(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        # Millisecond epochs from older stores.
        return float(value) / 1000.0 if value > 1e11 else float(value)
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
        except ValueError:
            return None
    return None


__all__ = [
    "DEFAULT_BITRATE",
    "StreamDefinition",
    "StreamRuntimeState",
    "StreamStatus",
    "UPDATABLE_FIELDS",
    "generate_stream_id",
    "iso_timestamp",
    "validate_changes",
    "validate_definition",
]
