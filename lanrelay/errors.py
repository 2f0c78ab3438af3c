"""Typed failures raised by the orchestration core."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Mapping, Sequence

if TYPE_CHECKING:  # pragma: no cover - imports for type checkers
    from .diagnostics import DiagnosisResult


class RelayError(Exception):
    """Base class for every failure surfaced at an operation boundary."""

    code = "RELAY_ERROR"

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = dict(details or {})

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = dict(self.details)
        return payload


class ValidationError(RelayError):
    """Raised when a stream definition or update payload is malformed."""

    code = "VALIDATION_ERROR"


class StreamNotFoundError(ValidationError):
    code = "STREAM_NOT_FOUND"

    def __init__(self, stream_id: str) -> None:
        super().__init__(f"Stream {stream_id} not found", details={"streamId": stream_id})
        self.stream_id = stream_id


class NotRunningError(RelayError):
    """Raised when the relay server is not available for encoders."""

    code = "RELAY_NOT_RUNNING"


class ConflictError(RelayError):
    """Raised when a device, id, name or relay source slot is already claimed."""

    code = "CONFLICT"


class ProcessLaunchError(RelayError):
    """Raised when an executable is missing or cannot be spawned."""

    code = "PROCESS_LAUNCH_FAILED"


class DiagnosedFailureError(RelayError):
    code = "DIAGNOSED_FAILURE"

    def __init__(
        self,
        diagnosis: "DiagnosisResult",
        *,
        attempts: Sequence[Mapping[str, Any]] = (),
        details: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(diagnosis.title, details=details)
        self.diagnosis = diagnosis
        self.attempts = [dict(item) for item in attempts]

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["diagnosis"] = self.diagnosis.to_dict()
        if self.attempts:
            payload["attempts"] = list(self.attempts)
        return payload


class PersistenceError(RelayError):
    """Raised when a durable store cannot be read or written."""

    code = "PERSISTENCE_ERROR"


__all__ = [
    "ConflictError",
    "DiagnosedFailureError",
    "NotRunningError",
    "PersistenceError",
    "ProcessLaunchError",
    "RelayError",
    "StreamNotFoundError",
    "ValidationError",
]
