"""Stream lifecycle state machine: spawn, supervise and stop encoder processes."""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
import os
import shutil
import sys
import time
from typing import Any, Awaitable, Callable, Dict, Mapping, Sequence

from .audio_devices import DeviceCatalog
from .device_guard import DeviceConflictGuard
from .diagnostics import DiagnosisContext, DiagnosisResult, DiagnosticsEngine, format_notification
from .errors import (
    ConflictError,
    DiagnosedFailureError,
    NotRunningError,
    PersistenceError,
    ProcessLaunchError,
    RelayError,
    StreamNotFoundError,
    ValidationError,
)
from .events import StreamEventBus
from .ffmpeg_io import (
    CANDIDATE_FORMATS,
    AudioFormat,
    build_encoder_command,
    capture_input_args,
    file_input_args,
    redact_command,
)
from .relay_config import ConfigurationAuthority
from .relay_supervisor import RelayHealth, RelaySupervisor
from .stream_store import StreamStore
from .streams import (
    DEFAULT_BITRATE,
    DEFAULT_CHANNELS,
    DEFAULT_SAMPLE_RATE,
    StreamDefinition,
    StreamRuntimeState,
    StreamStatus,
    generate_stream_id,
    iso_timestamp,
    validate_changes,
    validate_definition,
)

SpawnFn = Callable[..., Awaitable[asyncio.subprocess.Process]]

_READ_CHUNK = 4096
_READER_SETTLE_SEC = 1.0


class StreamOrchestrator:
    """Own every stream definition and the encoder process behind it.

    All mutating operations on one stream id are serialized by a per-id
    ``asyncio.Lock``; different ids proceed concurrently. Exit monitors never
    take the lock, so ``stop`` can wait on a process while its monitor runs.
    """

    def __init__(
        self,
        authority: ConfigurationAuthority,
        supervisor: RelaySupervisor,
        devices: DeviceCatalog,
        *,
        guard: DeviceConflictGuard | None = None,
        diagnostics: DiagnosticsEngine | None = None,
        store: StreamStore | None = None,
        events: StreamEventBus | None = None,
        ffmpeg_path: str = "ffmpeg",
        formats: Sequence[AudioFormat] = CANDIDATE_FORMATS,
        spawn_timeout: float = 10.0,
        grace_period: float = 2.0,
        stop_timeout: float = 5.0,
        verify_devices: bool = True,
        default_bitrate: int = DEFAULT_BITRATE,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        channels: int = DEFAULT_CHANNELS,
        platform: str = sys.platform,
        spawn: SpawnFn | None = None,
        which: Callable[[str], str | None] = shutil.which,
        logger: logging.Logger | None = None,
    ) -> None:
        if not formats:
            raise ValueError("at least one candidate format is required")
        self._authority = authority
        self._supervisor = supervisor
        self._devices = devices
        self._guard = guard or DeviceConflictGuard()
        self._diagnostics = diagnostics or DiagnosticsEngine()
        self._store = store
        self._events = events or StreamEventBus()
        self._ffmpeg_path = ffmpeg_path
        self._formats = tuple(formats)
        self._spawn_timeout = float(spawn_timeout)
        self._grace_period = float(grace_period)
        self._stop_timeout = float(stop_timeout)
        self._verify_devices = bool(verify_devices)
        self._default_bitrate = int(default_bitrate)
        self._sample_rate = int(sample_rate)
        self._channels = int(channels)
        self._platform = platform
        self._spawn: SpawnFn = spawn or asyncio.create_subprocess_exec
        self._which = which
        self._log = logger or logging.getLogger("stream_orchestrator")

        self._definitions: Dict[str, StreamDefinition] = {}
        self._runtime: Dict[str, StreamRuntimeState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._persist_lock = asyncio.Lock()

    @property
    def guard(self) -> DeviceConflictGuard:
        return self._guard

    @property
    def events(self) -> StreamEventBus:
        return self._events

    def definitions(self) -> dict[str, StreamDefinition]:
        return dict(self._definitions)

    # --- start-up ---

    async def load(self) -> int:
        """Read persisted definitions; every loaded stream starts out Stopped."""

        if self._store is None:
            return 0
        try:
            stored = await asyncio.to_thread(self._store.load)
        except PersistenceError as exc:
            self._log.warning("could not load stream definitions: %s", exc.message)
            return 0
        loaded = 0
        for stream_id, definition in stored.items():
            if stream_id in self._definitions:
                continue
            self._definitions[stream_id] = definition
            self._runtime[stream_id] = StreamRuntimeState()
            loaded += 1
        self._log.info("loaded %d stream definitions", loaded)
        return loaded

    # --- public operations ---

    async def create_or_start(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        definition = validate_definition(
            payload,
            default_bitrate=self._default_bitrate,
            sample_rate=self._sample_rate,
            channels=self._channels,
        )
        existing = self._definitions.get(definition.id)
        if existing is not None:
            definition = self._merge_existing(existing, definition, payload)
        self._check_unique_name(definition.name, exclude=definition.id)
        self._check_not_active(definition.id)

        async with self._lock_for(definition.id):
            current = self._definitions.get(definition.id)
            if existing is not None and current is None:
                # Deleted while this call waited on the lock.
                raise StreamNotFoundError(definition.id)
            return await self._start_locked(definition, is_new=current is None)

    async def stop(self, stream_id: str) -> dict[str, Any]:
        self._require(stream_id)
        async with self._lock_for(stream_id):
            self._require(stream_id)
            return await self._stop_locked(stream_id)

    async def restart(self, stream_id: str) -> dict[str, Any]:
        self._require(stream_id)
        async with self._lock_for(stream_id):
            definition = self._require(stream_id)
            runtime = self._runtime.setdefault(stream_id, StreamRuntimeState())
            if runtime.process is not None or runtime.status.active:
                await self._stop_locked(stream_id)
            return await self._start_locked(definition, is_new=False)

    async def update(self, stream_id: str, changes: Mapping[str, Any]) -> dict[str, Any]:
        definition = self._require(stream_id)
        cleaned = validate_changes(changes)

        device_id, input_file = definition.device_id, definition.input_file
        if "deviceId" in cleaned:
            device_id = cleaned["deviceId"]
            if device_id is not None and "inputFile" not in cleaned:
                input_file = None
        if "inputFile" in cleaned:
            input_file = cleaned["inputFile"]
            if input_file is not None and "deviceId" not in cleaned:
                device_id = None
        if (device_id is None) == (input_file is None):
            raise ValidationError(
                "Exactly one of deviceId or inputFile is required",
                details={"deviceId": device_id, "inputFile": input_file},
            )
        name = cleaned.get("name", definition.name)
        self._check_unique_name(name, exclude=stream_id)
        bitrate = cleaned.get("bitrate", definition.bitrate)

        async with self._lock_for(stream_id):
            definition = self._require(stream_id)
            runtime = self._runtime.setdefault(stream_id, StreamRuntimeState())

            if (device_id, input_file, name) == definition.identity():
                updated = dataclasses.replace(definition, bitrate=bitrate)
                self._definitions[stream_id] = updated
                if runtime.status is StreamStatus.ERROR:
                    runtime.set_status(StreamStatus.STOPPED)
                    runtime.diagnosis = None
                await self._persist()
                self._log.info("stream %s updated in place", stream_id)
                return {
                    "oldStreamId": stream_id,
                    "newStreamId": stream_id,
                    "stream": self._snapshot(stream_id),
                }

            was_active = runtime.process is not None or runtime.status.active
            if was_active:
                await self._stop_locked(stream_id)

            new_id = self._fresh_id(name)
            replacement = StreamDefinition(
                id=new_id,
                name=name,
                device_id=device_id,
                input_file=input_file,
                bitrate=bitrate,
                sample_rate=definition.sample_rate,
                channels=definition.channels,
                created_at=time.time(),
            )
            self._purge(stream_id)
            self._definitions[new_id] = replacement
            self._runtime[new_id] = StreamRuntimeState()
            await self._persist()
            self._events.publish("deleted", stream_id, {"replacedBy": new_id})
            self._events.publish("created", new_id, self._snapshot(new_id))
            self._log.info("stream %s replaced by %s", stream_id, new_id)

        self._locks.pop(stream_id, None)
        return {
            "oldStreamId": stream_id,
            "newStreamId": new_id,
            "wasRunning": was_active,
            "stream": self._snapshot(new_id),
        }

    async def delete(self, stream_id: str) -> dict[str, Any]:
        self._require(stream_id)
        async with self._lock_for(stream_id):
            self._require(stream_id)
            runtime = self._runtime.get(stream_id)
            if runtime is not None and (runtime.process is not None or runtime.status.active):
                await self._stop_locked(stream_id)
            self._purge(stream_id)
            await self._persist()
            self._events.publish("deleted", stream_id, {"reason": "deleted"})
            self._log.info("stream %s deleted", stream_id)
        self._locks.pop(stream_id, None)
        return {"streamId": stream_id, "deleted": True}

    def get_stream_status(self, stream_id: str | None = None) -> dict[str, Any] | list[dict[str, Any]]:
        if stream_id is None:
            return [self._snapshot(key) for key in sorted(self._definitions)]
        self._require(stream_id)
        return self._snapshot(stream_id)

    async def get_relay_status(self) -> dict[str, Any]:
        status = await self._supervisor.get_status()
        return status.snapshot()

    async def stop_all(self) -> dict[str, Any]:
        stopped: list[str] = []
        failed: list[dict[str, Any]] = []
        for stream_id in list(self._definitions):
            runtime = self._runtime.get(stream_id)
            if runtime is None or (runtime.process is None and not runtime.status.active):
                continue
            try:
                await self.stop(stream_id)
            except RelayError as exc:
                failed.append({"streamId": stream_id, "error": exc.to_dict()})
            else:
                stopped.append(stream_id)
        return {"stopped": stopped, "failed": failed}

    async def start_all_stopped(self) -> dict[str, Any]:
        started: list[str] = []
        failed: list[dict[str, Any]] = []
        for stream_id in list(self._definitions):
            runtime = self._runtime.get(stream_id)
            if runtime is not None and runtime.status is not StreamStatus.STOPPED:
                continue
            try:
                await self.restart(stream_id)
            except RelayError as exc:
                self._log.warning("could not start %s: %s", stream_id, exc.message)
                failed.append({"streamId": stream_id, "error": exc.to_dict()})
            else:
                started.append(stream_id)
        return {"started": started, "failed": failed}

    async def get_stats(self) -> dict[str, int]:
        for stream_id, runtime in list(self._runtime.items()):
            proc = runtime.process
            if runtime.status is StreamStatus.RUNNING and proc is not None and proc.returncode is not None:
                await self._handle_exit(stream_id, proc, proc.returncode)

        counts = {"total": len(self._definitions), "running": 0, "stopped": 0, "error": 0}
        for stream_id in self._definitions:
            status = self._runtime.get(stream_id, StreamRuntimeState()).status
            if status is StreamStatus.RUNNING:
                counts["running"] += 1
            elif status is StreamStatus.ERROR:
                counts["error"] += 1
            elif status is StreamStatus.STOPPED:
                counts["stopped"] += 1
        counts["devices"] = len(self._guard)
        return counts

    async def sweep_retention(self, max_age_seconds: float, now: float | None = None) -> list[str]:
        """Drop inactive definitions whose last activity is older than the window."""

        now = time.time() if now is None else now
        removed: list[str] = []
        for stream_id, definition in list(self._definitions.items()):
            if not self._is_expired(stream_id, definition, max_age_seconds, now):
                continue
            lock = self._lock_for(stream_id)
            if lock.locked():
                continue
            async with lock:
                definition = self._definitions.get(stream_id)
                if definition is None or not self._is_expired(stream_id, definition, max_age_seconds, now):
                    continue
                self._purge(stream_id)
                removed.append(stream_id)
            self._locks.pop(stream_id, None)

        if removed:
            await self._persist()
            for stream_id in removed:
                self._events.publish("deleted", stream_id, {"reason": "retention"})
            self._log.info("retention removed %d stale streams: %s", len(removed), ", ".join(removed))
        return removed

    async def stop_for_relay_outage(self, down_seconds: float) -> list[str]:
        """Stop every running stream because the relay has been gone too long.

        Each stopped stream lands in Error carrying a relay-outage diagnosis,
        so it is not picked up by ``start_all_stopped`` until the operator
        restarts it.
        """

        halted: list[str] = []
        for stream_id in list(self._definitions):
            runtime = self._runtime.get(stream_id)
            if runtime is None or runtime.status is not StreamStatus.RUNNING:
                continue
            async with self._lock_for(stream_id):
                runtime = self._runtime.get(stream_id)
                definition = self._definitions.get(stream_id)
                if runtime is None or definition is None or runtime.status is not StreamStatus.RUNNING:
                    continue
                await self._stop_locked(stream_id)
                diagnosis = self._relay_outage(definition, down_seconds)
                runtime.diagnosis = diagnosis
                runtime.set_status(StreamStatus.ERROR)
                self._events.publish("error", stream_id, self._error_payload(stream_id, diagnosis))
            halted.append(stream_id)

        if halted:
            self._log.warning(
                "relay down for %.0fs; stopped %d streams: %s",
                down_seconds,
                len(halted),
                ", ".join(halted),
            )
        return halted

    async def shutdown(self) -> None:
        result = await self.stop_all()
        for failure in result["failed"]:
            self._log.warning("stream %s did not stop cleanly: %s", failure["streamId"], failure["error"])
        for runtime in self._runtime.values():
            for task in (runtime.monitor_task, runtime.reader_task):
                if task is not None and not task.done():
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task

    # --- start path ---

    async def _start_locked(self, definition: StreamDefinition, *, is_new: bool) -> dict[str, Any]:
        stream_id = definition.id
        runtime = self._runtime.get(stream_id)
        if runtime is not None and runtime.status in (StreamStatus.RUNNING, StreamStatus.STARTING):
            raise ConflictError(f"Stream {stream_id} is already running", details={"streamId": stream_id})

        relay = await self._supervisor.get_status()
        if relay.health is RelayHealth.CRITICAL:
            raise NotRunningError(
                "Relay server is not running; start it before starting streams",
                details={"streamId": stream_id, "health": relay.health.value},
            )
        device_key = await self._devices.canonical_id(definition.device_id) if definition.device_id else None

        limit = self._authority.get_source_limit()
        active = self._active_count(exclude=stream_id)
        if limit > 0 and active >= limit:
            raise ConflictError(
                f"Relay source limit reached ({active}/{limit})",
                details={"streamId": stream_id, "limit": limit, "active": active},
            )

        if device_key:
            self._guard.reserve(device_key, stream_id)
        try:
            encoder = self._resolve_encoder()
        except ProcessLaunchError:
            self._release_device(definition)
            raise

        self._definitions[stream_id] = definition
        if is_new:
            self._runtime[stream_id] = StreamRuntimeState()
        runtime = self._runtime.setdefault(stream_id, StreamRuntimeState())
        runtime.set_status(StreamStatus.STARTING)
        runtime.intentional_stop = False
        runtime.diagnosis = None
        runtime.exit_code = None
        if is_new:
            self._events.publish("created", stream_id, self._snapshot(stream_id))

        try:
            proc, audio_format = await self._launch(definition, encoder, runtime)
        except DiagnosedFailureError as exc:
            self._release_device(definition)
            runtime.diagnosis = exc.diagnosis
            runtime.set_status(StreamStatus.ERROR)
            self._definitions[stream_id] = definition.touched()
            await self._persist()
            self._log.error("stream %s failed to start: %s", stream_id, exc.diagnosis.title)
            self._events.publish("error", stream_id, self._error_payload(stream_id, exc.diagnosis))
            raise
        except BaseException:
            self._release_device(definition)
            runtime.set_status(StreamStatus.STOPPED)
            raise

        runtime.process = proc
        runtime.pid = proc.pid
        runtime.audio_format = audio_format
        runtime.started_at = time.time()
        runtime.set_status(StreamStatus.RUNNING)
        runtime.monitor_task = asyncio.create_task(self._monitor(stream_id, proc))
        self._definitions[stream_id] = definition.touched(runtime.started_at)
        await self._persist()
        self._log.info("stream %s running as %s (pid %s)", stream_id, audio_format.name, proc.pid)
        snapshot = self._snapshot(stream_id)
        self._events.publish("started", stream_id, snapshot)
        return snapshot

    async def _launch(
        self,
        definition: StreamDefinition,
        encoder: str,
        runtime: StreamRuntimeState,
    ) -> tuple[asyncio.subprocess.Process, AudioFormat]:
        ctx = self._context(definition)
        if self._verify_devices and definition.device_id:
            if not await self._devices.test(definition.device_id):
                raise DiagnosedFailureError(
                    self._unreachable_device(definition, ctx),
                    details={"streamId": definition.id, "deviceId": definition.device_id},
                )

        attempts: list[dict[str, Any]] = []
        last: DiagnosisResult | None = None
        for audio_format in self._formats:
            outcome = await self._try_format(definition, audio_format, encoder, runtime, ctx)
            if isinstance(outcome, DiagnosisResult):
                attempts.append(
                    {
                        "format": audio_format.name,
                        "category": outcome.category,
                        "exitCode": runtime.exit_code,
                    }
                )
                last = outcome
                self._log.warning(
                    "stream %s: %s encoder failed (%s)", definition.id, audio_format.name, outcome.category
                )
                continue
            return outcome, audio_format

        assert last is not None
        raise DiagnosedFailureError(last, attempts=attempts, details={"streamId": definition.id})

    async def _try_format(
        self,
        definition: StreamDefinition,
        audio_format: AudioFormat,
        encoder: str,
        runtime: StreamRuntimeState,
        ctx: DiagnosisContext,
    ) -> asyncio.subprocess.Process | DiagnosisResult:
        """Spawn one candidate; a process that outlives the grace window wins."""

        runtime.exit_code = None
        runtime.stderr_tail.clear()
        if definition.device_id:
            capture_name = await self._devices.resolve(definition.device_id)
            if capture_name is None:
                return self._unreachable_device(definition, ctx)
            ctx = dataclasses.replace(ctx, device_name=capture_name)
            input_args = capture_input_args(capture_name, self._platform)
        else:
            input_args = file_input_args(definition.input_file or "")

        command = build_encoder_command(
            encoder,
            input_args,
            audio_format,
            stream_id=definition.id,
            port=self._authority.get_port(),
            source_password=self._authority.get_source_password(),
            bitrate=definition.bitrate,
            sample_rate=definition.sample_rate,
            channels=definition.channels,
            stream_name=definition.name,
        )
        self._log.debug("launching encoder for %s: %s", definition.id, redact_command(command))

        try:
            proc = await asyncio.wait_for(
                self._spawn(
                    *command,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.DEVNULL,
                    stderr=asyncio.subprocess.PIPE,
                ),
                timeout=self._spawn_timeout,
            )
        except asyncio.TimeoutError:
            return self._diagnostics.for_category(
                "timeout", f"encoder launch exceeded {self._spawn_timeout:.0f}s", None, ctx
            )
        except OSError as exc:
            return self._diagnostics.diagnose(str(exc), None, ctx)

        reader = asyncio.create_task(self._read_stderr(definition.id, proc, runtime))
        try:
            exit_code = await asyncio.wait_for(proc.wait(), timeout=self._grace_period)
        except asyncio.TimeoutError:
            runtime.reader_task = reader
            return proc
        except BaseException:
            await self._kill(proc)
            reader.cancel()
            raise

        await self._settle_reader(reader)
        runtime.exit_code = exit_code
        return self._diagnostics.diagnose(runtime.stderr_text(), exit_code, ctx)

    def _resolve_encoder(self) -> str:
        path = self._ffmpeg_path
        if os.path.isabs(path) and os.path.isfile(path) and os.access(path, os.X_OK):
            return path
        resolved = self._which(path)
        if not resolved:
            raise ProcessLaunchError(
                f"Encoder executable not found: {path}", details={"ffmpegPath": path}
            )
        return resolved

    def _unreachable_device(self, definition: StreamDefinition, ctx: DiagnosisContext) -> DiagnosisResult:
        device_id = definition.device_id or ""
        category = "device_not_found"
        if self._diagnostics.match_category(device_id) == "virtual_audio":
            category = "virtual_audio"
        return self._diagnostics.for_category(
            category, f"capture device {device_id!r} could not be opened", None, ctx
        )

    def _relay_outage(self, definition: StreamDefinition, down_seconds: float) -> DiagnosisResult:
        source = "Audio device" if definition.device_id else "Input file"
        base = self._diagnostics.for_category("connectivity", None, None, self._context(definition))
        return dataclasses.replace(
            base,
            title="Stream stopped: relay server is down",
            description=(
                f"The relay server has been down for {down_seconds:.0f}s, so stream "
                f"{definition.id} was stopped."
            ),
            solutions=("Start the relay server", "Restart this stream once the relay is up")
            + base.solutions,
            technical_details=(
                f"Dependency chain broken: {source} -> encoder -> relay (down {down_seconds:.0f}s) -> listeners"
            ),
        )

    # --- stop path ---

    async def _stop_locked(self, stream_id: str) -> dict[str, Any]:
        definition = self._definitions[stream_id]
        runtime = self._runtime.setdefault(stream_id, StreamRuntimeState())
        proc = runtime.process

        if proc is None or proc.returncode is not None:
            previous = runtime.status
            runtime.process = None
            runtime.pid = None
            runtime.started_at = None
            runtime.audio_format = None
            runtime.diagnosis = None
            self._release_device(definition)
            if previous is not StreamStatus.STOPPED:
                runtime.set_status(StreamStatus.STOPPED)
                self._events.publish("stopped", stream_id, self._snapshot(stream_id))
            return self._snapshot(stream_id)

        runtime.intentional_stop = True
        runtime.set_status(StreamStatus.STOPPING)
        self._log.info("stopping stream %s (pid %s)", stream_id, proc.pid)
        await self._terminate(proc, stream_id)

        monitor = runtime.monitor_task
        if monitor is not None and not monitor.done():
            with contextlib.suppress(asyncio.CancelledError):
                await asyncio.wait({monitor}, timeout=_READER_SETTLE_SEC)
        if runtime.reader_task is not None:
            await self._settle_reader(runtime.reader_task)

        runtime.exit_code = proc.returncode
        runtime.process = None
        runtime.pid = None
        runtime.started_at = None
        runtime.audio_format = None
        runtime.diagnosis = None
        runtime.monitor_task = None
        runtime.reader_task = None
        runtime.set_status(StreamStatus.STOPPED)
        self._release_device(definition)
        self._definitions[stream_id] = definition.touched()
        await self._persist()
        snapshot = self._snapshot(stream_id)
        self._events.publish("stopped", stream_id, snapshot)
        return snapshot

    async def _terminate(self, proc: asyncio.subprocess.Process, stream_id: str) -> None:
        with contextlib.suppress(ProcessLookupError):
            proc.terminate()
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._stop_timeout)
        except asyncio.TimeoutError:
            self._log.warning("encoder for %s ignored terminate; killing", stream_id)
            await self._kill(proc)

    @staticmethod
    async def _kill(proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
        await proc.wait()

    # --- exit monitoring ---

    async def _monitor(self, stream_id: str, proc: asyncio.subprocess.Process) -> None:
        try:
            exit_code = await proc.wait()
            await self._handle_exit(stream_id, proc, exit_code)
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001 - log and continue
            self._log.exception("exit monitor for %s failed", stream_id)

    async def _handle_exit(self, stream_id: str, proc: asyncio.subprocess.Process, exit_code: int) -> None:
        runtime = self._runtime.get(stream_id)
        definition = self._definitions.get(stream_id)
        if runtime is None or definition is None or runtime.process is not proc:
            return
        if runtime.intentional_stop:
            # stop() owns the transition to Stopped.
            return

        reader = runtime.reader_task
        runtime.process = None
        runtime.pid = None
        runtime.started_at = None
        runtime.audio_format = None
        runtime.monitor_task = None
        runtime.reader_task = None
        runtime.exit_code = exit_code
        if reader is not None:
            await self._settle_reader(reader)
        self._release_device(definition)
        self._definitions[stream_id] = definition.touched()

        if exit_code == 0 and definition.input_file:
            runtime.diagnosis = None
            runtime.set_status(StreamStatus.STOPPED)
            await self._persist()
            self._log.info("stream %s finished its input file", stream_id)
            self._events.publish("stopped", stream_id, self._snapshot(stream_id))
            return

        diagnosis = self._diagnostics.diagnose(runtime.stderr_text(), exit_code, self._context(definition))
        runtime.diagnosis = diagnosis
        runtime.set_status(StreamStatus.ERROR)
        await self._persist()
        self._log.error(
            "stream %s encoder exited with %s: %s", stream_id, exit_code, diagnosis.title
        )
        self._events.publish("error", stream_id, self._error_payload(stream_id, diagnosis))

    async def _read_stderr(
        self, stream_id: str, proc: asyncio.subprocess.Process, runtime: StreamRuntimeState
    ) -> None:
        stream = proc.stderr
        if stream is None:
            return
        pending = ""
        try:
            while True:
                chunk = await stream.read(_READ_CHUNK)
                if not chunk:
                    break
                pending += chunk.decode("utf-8", errors="replace").replace("\r", "\n")
                *lines, pending = pending.split("\n")
                for line in lines:
                    if line.strip():
                        runtime.stderr_tail.append(line)
                        self._log.debug("ffmpeg[%s]: %s", stream_id, line)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - stderr is diagnostic only
            self._log.debug("stderr reader for %s stopped: %s", stream_id, exc)
        finally:
            if pending.strip():
                runtime.stderr_tail.append(pending)

    @staticmethod
    async def _settle_reader(task: asyncio.Task) -> None:
        if task.done():
            return
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=_READER_SETTLE_SEC)
        except asyncio.TimeoutError:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    # --- helpers ---

    def _lock_for(self, stream_id: str) -> asyncio.Lock:
        lock = self._locks.get(stream_id)
        if lock is None:
            lock = self._locks[stream_id] = asyncio.Lock()
        return lock

    def _require(self, stream_id: str) -> StreamDefinition:
        definition = self._definitions.get(stream_id)
        if definition is None:
            raise StreamNotFoundError(stream_id)
        return definition

    def _merge_existing(
        self, existing: StreamDefinition, requested: StreamDefinition, payload: Mapping[str, Any]
    ) -> StreamDefinition:
        """Starting a known id must not silently change what it streams."""

        name_given = bool(payload.get("name"))
        if (requested.device_id, requested.input_file) != (existing.device_id, existing.input_file) or (
            name_given and requested.name != existing.name
        ):
            raise ConflictError(
                f"Stream {existing.id} already exists with a different source or name",
                details={"streamId": existing.id},
            )
        if payload.get("bitrate") in (None, ""):
            return existing
        return dataclasses.replace(existing, bitrate=requested.bitrate)

    def _check_unique_name(self, name: str, *, exclude: str) -> None:
        wanted = name.casefold()
        for stream_id, definition in self._definitions.items():
            if stream_id != exclude and definition.name.casefold() == wanted:
                raise ConflictError(
                    f"A stream named {name!r} already exists",
                    details={"name": name, "streamId": stream_id},
                )

    def _check_not_active(self, stream_id: str) -> None:
        runtime = self._runtime.get(stream_id)
        if runtime is not None and runtime.status in (StreamStatus.RUNNING, StreamStatus.STARTING):
            raise ConflictError(f"Stream {stream_id} is already running", details={"streamId": stream_id})

    def _active_count(self, *, exclude: str) -> int:
        return sum(
            1
            for stream_id, runtime in self._runtime.items()
            if stream_id != exclude and runtime.status in (StreamStatus.RUNNING, StreamStatus.STARTING)
        )

    def _is_expired(self, stream_id: str, definition: StreamDefinition, max_age: float, now: float) -> bool:
        runtime = self._runtime.get(stream_id)
        if runtime is not None and (runtime.process is not None or runtime.status.active):
            return False
        reference = definition.last_active_at if definition.last_active_at is not None else definition.created_at
        return (now - reference) > max_age

    def _fresh_id(self, name: str) -> str:
        now = time.time()
        candidate = generate_stream_id(name, now=now)
        while candidate in self._definitions:
            now += 0.001
            candidate = generate_stream_id(name, now=now)
        return candidate

    def _purge(self, stream_id: str) -> None:
        definition = self._definitions.pop(stream_id, None)
        self._runtime.pop(stream_id, None)
        if definition is not None:
            self._release_device(definition)

    def _release_device(self, definition: StreamDefinition) -> None:
        if definition.device_id:
            self._guard.release_held_by(definition.id)

    def _context(self, definition: StreamDefinition) -> DiagnosisContext:
        return DiagnosisContext(
            port=self._authority.get_port(),
            stream_id=definition.id,
            device_id=definition.device_id,
            platform=self._platform,
        )

    def _snapshot(self, stream_id: str) -> dict[str, Any]:
        definition = self._definitions[stream_id]
        runtime = self._runtime.get(stream_id) or StreamRuntimeState()
        return {
            "id": definition.id,
            "name": definition.name,
            "deviceId": definition.device_id,
            "inputFile": definition.input_file,
            "status": runtime.status.value,
            "audioFormat": runtime.audio_format.name if runtime.audio_format else None,
            "startedAt": iso_timestamp(runtime.started_at),
            "pid": runtime.pid,
            "bitrate": definition.bitrate,
            "error": runtime.diagnosis.to_dict() if runtime.diagnosis else None,
        }

    def _error_payload(self, stream_id: str, diagnosis: DiagnosisResult) -> dict[str, Any]:
        payload = self._snapshot(stream_id)
        payload["notification"] = format_notification(diagnosis)
        return payload

    async def _persist(self) -> None:
        if self._store is None:
            return
        async with self._persist_lock:
            definitions = dict(self._definitions)
            try:
                await asyncio.to_thread(self._store.save, definitions)
            except PersistenceError as exc:
                self._log.warning("could not persist stream definitions: %s", exc.message)


__all__ = ["StreamOrchestrator"]
