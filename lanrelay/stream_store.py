"""Flat JSON store of stream definitions keyed by id."""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Mapping

from .errors import PersistenceError, ValidationError
from .streams import StreamDefinition


class StreamStore:
    """Full-read at start-up, full atomic rewrite after every mutation.

    The file is replaced via a temporary sibling and ``os.replace`` so readers
    never observe a partially written store.
    """

    def __init__(self, path: Path, *, logger: logging.Logger | None = None) -> None:
        self.path = Path(path)
        self._write_lock = threading.Lock()
        self._logger = logger or logging.getLogger("stream_store")

    def load(self) -> dict[str, StreamDefinition]:
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as exc:
            raise PersistenceError(
                f"Unable to read stream store {self.path}: {exc}", details={"path": str(self.path)}
            ) from exc

        records = data.get("streams", data) if isinstance(data, dict) else data
        if isinstance(records, dict):
            records = list(records.values())
        if not isinstance(records, list):
            raise PersistenceError(
                f"Stream store {self.path} has an unexpected layout", details={"path": str(self.path)}
            )

        definitions: dict[str, StreamDefinition] = {}
        for record in records:
            if not isinstance(record, dict):
                continue
            try:
                definition = StreamDefinition.from_record(record)
            except ValidationError as exc:
                self._logger.warning("skipping invalid stored stream %r: %s", record.get("id"), exc.message)
                continue
            if (definition.device_id is None) == (definition.input_file is None):
                self._logger.warning("skipping stored stream %s without a single source", definition.id)
                continue
            definitions[definition.id] = definition
        return definitions

    def save(self, definitions: Mapping[str, StreamDefinition]) -> None:
        payload = {
            "version": 1,
            "streams": [definitions[key].to_record() for key in sorted(definitions)],
        }
        tmp_path = f"{self.path}.tmp"
        with self._write_lock:
            try:
                directory = os.path.dirname(self.path)
                if directory:
                    os.makedirs(directory, exist_ok=True)
                with open(tmp_path, "w", encoding="utf-8") as handle:
                    json.dump(payload, handle, indent=2)
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(tmp_path, self.path)
            except (OSError, TypeError, ValueError) as exc:
                try:
                    os.remove(tmp_path)
                except OSError:
                    pass
                raise PersistenceError(
                    f"Unable to write stream store {self.path}: {exc}",
                    details={"path": str(self.path)},
                ) from exc


__all__ = ["StreamStore"]
