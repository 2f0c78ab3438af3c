"""Authoritative, cached view of the relay server's own XML configuration.

The relay (an Icecast-compatible server) owns its config file; operators may
edit it at any time. :class:`ConfigurationAuthority` reads the handful of
fields the rest of the service needs, keeps them in memory and re-reads them
whenever its change source reports a modification.

Only the listening port is ever written back to disk, inside the install
record, so a cold start can guess the port before the first parse. Hostname
and credentials live in memory only.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import shutil
import sys
import time
import xml.etree.ElementTree as ET
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any, Iterable, Sequence
from xml.sax.saxutils import escape

from .errors import PersistenceError
from .watchers import ConfigChangeSource

DEFAULT_PORT = 8000
DEFAULT_HOSTNAME = "localhost"
DEFAULT_SOURCE_PASSWORD = "hackme"
DEFAULT_ADMIN_PASSWORD = "hackme"
DEFAULT_MAX_LISTENERS = 100
DEFAULT_SOURCE_LIMIT = 2

SCAFFOLD_SOURCE_LIMIT = 32
VERSION_PROBE_TIMEOUT = 3.0

_VERSION_RE = re.compile(r"icecast\s+([0-9][\w.\-]*)", re.IGNORECASE)


@dataclass(frozen=True)
class RelayServerConfig:
    port: int = DEFAULT_PORT
    hostname: str = DEFAULT_HOSTNAME
    source_password: str = field(default=DEFAULT_SOURCE_PASSWORD, repr=False)
    admin_password: str = field(default=DEFAULT_ADMIN_PASSWORD, repr=False)
    max_listeners: int = DEFAULT_MAX_LISTENERS
    source_limit: int = DEFAULT_SOURCE_LIMIT
    config_file_path: Path | None = None

    def snapshot(self) -> dict[str, Any]:
        """Public view without credentials."""

        return {
            "port": self.port,
            "hostname": self.hostname,
            "maxListeners": self.max_listeners,
            "sourceLimit": self.source_limit,
            "configFilePath": str(self.config_file_path) if self.config_file_path else None,
        }


@dataclass(frozen=True)
class InstallationRecord:
    executable: Path
    config_path: Path | None = None
    access_log: Path | None = None
    error_log: Path | None = None
    version: str = "unknown"
    source: str = "search"

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        for key in ("executable", "config_path", "access_log", "error_log"):
            value = payload.get(key)
            payload[key] = str(value) if value is not None else None
        return payload

    @classmethod
    def from_dict(cls, data: Any) -> "InstallationRecord | None":
        if not isinstance(data, dict):
            return None
        executable = data.get("executable")
        if not isinstance(executable, str) or not executable.strip():
            return None

        def _opt(key: str) -> Path | None:
            value = data.get(key)
            if isinstance(value, str) and value.strip():
                return Path(value)
            return None

        return cls(
            executable=Path(executable),
            config_path=_opt("config_path"),
            access_log=_opt("access_log"),
            error_log=_opt("error_log"),
            version=str(data.get("version") or "unknown"),
            source=str(data.get("source") or "cached"),
        )

    def is_valid(self) -> bool:
        try:
            return self.executable.is_file() and os.access(self.executable, os.X_OK)
        except OSError:
            return False


def _element_text(root: ET.Element, path: str) -> str | None:
    # First element in document order wins; comments never reach the tree.
    node = root.find(path)
    if node is None or node.text is None:
        return None
    text = node.text.strip()
    return text or None


def _element_int(root: ET.Element, path: str, *, minimum: int, maximum: int | None = None) -> int | None:
    raw = _element_text(root, path)
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError:
        return None
    if value < minimum or (maximum is not None and value > maximum):
        return None
    return value


def parse_relay_config(data: bytes | str, *, config_file_path: Path | None = None) -> RelayServerConfig:
    """Extract the cached fields from relay XML, defaulting each missing one.

    Raises ``xml.etree.ElementTree.ParseError`` for malformed documents.
    """

    root = ET.fromstring(data)
    port = _element_int(root, "listen-socket/port", minimum=1, maximum=65535)
    max_listeners = _element_int(root, "limits/clients", minimum=0)
    source_limit = _element_int(root, "limits/sources", minimum=0)
    return RelayServerConfig(
        port=port if port is not None else DEFAULT_PORT,
        hostname=_element_text(root, "hostname") or DEFAULT_HOSTNAME,
        source_password=_element_text(root, "authentication/source-password") or DEFAULT_SOURCE_PASSWORD,
        admin_password=_element_text(root, "authentication/admin-password") or DEFAULT_ADMIN_PASSWORD,
        max_listeners=max_listeners if max_listeners is not None else DEFAULT_MAX_LISTENERS,
        source_limit=source_limit if source_limit is not None else DEFAULT_SOURCE_LIMIT,
        config_file_path=config_file_path,
    )


def render_config_scaffold(config: RelayServerConfig, *, base_dir: Path) -> str:
    log_dir = base_dir / "logs"
    values = {
        "clients": config.max_listeners,
        "sources": max(config.source_limit, SCAFFOLD_SOURCE_LIMIT),
        "source_password": escape(config.source_password),
        "admin_password": escape(config.admin_password),
        "hostname": escape(config.hostname),
        "port": config.port,
        "basedir": escape(base_dir.as_posix()),
        "logdir": escape(log_dir.as_posix()),
        "webroot": escape((base_dir / "web").as_posix()),
        "adminroot": escape((base_dir / "admin").as_posix()),
    }
    return """<?xml version="1.0"?>
<icecast>
    <location>lanrelay</location>
    <admin>admin@localhost</admin>
    <limits>
        <clients>{clients}</clients>
        <sources>{sources}</sources>
        <queue-size>524288</queue-size>
        <client-timeout>30</client-timeout>
        <header-timeout>15</header-timeout>
        <source-timeout>10</source-timeout>
        <burst-on-connect>1</burst-on-connect>
        <burst-size>65535</burst-size>
    </limits>
    <authentication>
        <source-password>{source_password}</source-password>
        <relay-password>{source_password}</relay-password>
        <admin-user>admin</admin-user>
        <admin-password>{admin_password}</admin-password>
    </authentication>
    <hostname>{hostname}</hostname>
    <listen-socket>
        <port>{port}</port>
    </listen-socket>
    <fileserve>1</fileserve>
    <paths>
        <basedir>{basedir}</basedir>
        <logdir>{logdir}</logdir>
        <webroot>{webroot}</webroot>
        <adminroot>{adminroot}</adminroot>
        <alias source="/" destination="/status.xsl"/>
    </paths>
    <logging>
        <accesslog>access.log</accesslog>
        <errorlog>error.log</errorlog>
        <loglevel>3</loglevel>
        <logsize>10000</logsize>
    </logging>
    <security>
        <chroot>0</chroot>
    </security>
</icecast>
""".format(**values)


def standard_install_locations(platform: str = sys.platform) -> list[Path]:
    """Well-known relay executable locations for ``platform``."""

    if platform.startswith("win"):
        program_files = os.environ.get("ProgramFiles", r"C:\Program Files")
        program_files_x86 = os.environ.get("ProgramFiles(x86)", r"C:\Program Files (x86)")
        candidates: list[Path] = []
        for root in (program_files_x86, program_files):
            for folder in ("Icecast", "Icecast2"):
                candidates.append(Path(root) / folder / "bin" / "icecast.exe")
                candidates.append(Path(root) / folder / "icecast.exe")
        candidates.append(Path(r"C:\Icecast\bin\icecast.exe"))
        return candidates
    if platform == "darwin":
        return [
            Path("/usr/local/bin/icecast"),
            Path("/opt/homebrew/bin/icecast"),
            Path("/opt/local/bin/icecast"),
            Path("/usr/bin/icecast"),
        ]
    return [
        Path("/usr/local/bin/icecast"),
        Path("/usr/bin/icecast2"),
        Path("/usr/bin/icecast"),
        Path("/opt/icecast/bin/icecast"),
    ]


def config_candidates_for(executable: Path, platform: str = sys.platform) -> list[Path]:
    install_dir = executable.parent
    candidates = [
        install_dir.parent / "icecast.xml",
        install_dir.parent / "etc" / "icecast.xml",
        install_dir.parent / "conf" / "icecast.xml",
        install_dir / "icecast.xml",
    ]
    if not platform.startswith("win"):
        candidates.extend(
            [
                Path("/etc/icecast2/icecast.xml"),
                Path("/etc/icecast.xml"),
                Path("/usr/local/etc/icecast.xml"),
                Path("/opt/homebrew/etc/icecast.xml"),
            ]
        )
    return candidates


def _read_json(path: Path) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
    except FileNotFoundError:
        return {}
    except (OSError, json.JSONDecodeError) as exc:
        raise PersistenceError(f"Unable to read {path}: {exc}", details={"path": str(path)}) from exc
    return data if isinstance(data, dict) else {}


def _write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    tmp_path = f"{path}.tmp"
    try:
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(tmp_path, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2, sort_keys=True)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except OSError as exc:
        try:
            os.remove(tmp_path)
        except OSError:
            pass
        raise PersistenceError(f"Unable to write {path}: {exc}", details={"path": str(path)}) from exc


class ConfigurationAuthority:
    """Own the in-memory copy of the relay's live settings."""

    def __init__(
        self,
        *,
        record_path: Path,
        config_path: Path | None = None,
        executable: Path | None = None,
        executable_names: Sequence[str] = ("icecast", "icecast2"),
        platform: str = sys.platform,
        search_standard_locations: bool = True,
        version_timeout: float = VERSION_PROBE_TIMEOUT,
        logger: logging.Logger | None = None,
    ) -> None:
        self._record_path = Path(record_path)
        self._explicit_config_path = Path(config_path) if config_path else None
        self._explicit_executable = Path(executable) if executable else None
        self._executable_names = tuple(
            name[:-4] if name.lower().endswith(".exe") else name for name in executable_names
        )
        self._platform = platform
        self._search_standard_locations = search_standard_locations
        self._version_timeout = float(version_timeout)
        self._logger = logger or logging.getLogger("relay_config")

        self._cache: RelayServerConfig | None = None
        self._installation: InstallationRecord | None = None
        self._init_task: asyncio.Task | None = None
        self._reload_lock = asyncio.Lock()
        self._source: ConfigChangeSource | None = None
        self._persisted_port: int | None = None

    # --- properties ---

    @property
    def installation(self) -> InstallationRecord | None:
        return self._installation

    @property
    def initialized(self) -> bool:
        task = self._init_task
        return task is not None and task.done() and not task.cancelled() and task.exception() is None

    @property
    def config_path(self) -> Path | None:
        if self._explicit_config_path is not None:
            return self._explicit_config_path
        if self._installation is not None and self._installation.config_path is not None:
            return self._installation.config_path
        return None

    @property
    def record_path(self) -> Path:
        return self._record_path

    # --- initialization ---

    async def initialize(self) -> RelayServerConfig:
        """Resolve the installation and parse the config once.

        Concurrent callers await the same task; a failed attempt is forgotten
        so the next call retries.
        """

        task = self._init_task
        if task is None:
            task = asyncio.get_running_loop().create_task(self._initialize())
            self._init_task = task
        try:
            return await asyncio.shield(task)
        except Exception:
            if self._init_task is task and task.done():
                self._init_task = None
            raise

    async def _initialize(self) -> RelayServerConfig:
        installation, hint = await asyncio.gather(
            self._resolve_installation(),
            asyncio.to_thread(self._read_port_hint),
        )
        self._installation = installation
        self._persisted_port = hint
        if installation is None:
            self._logger.warning(
                "relay executable not found; supervisor start will be unavailable"
            )

        path = self.config_path
        config: RelayServerConfig
        if path is None:
            self._logger.info("no relay config path known; using defaults")
            config = RelayServerConfig()
        else:
            try:
                config = await self._parse_file(path)
            except FileNotFoundError:
                self._logger.info("relay config %s not found; using defaults", path)
                config = RelayServerConfig(config_file_path=path)
            except (OSError, ET.ParseError) as exc:
                self._logger.warning("relay config %s unreadable (%s); using defaults", path, exc)
                config = RelayServerConfig(config_file_path=path)

        async with self._reload_lock:
            self._cache = config
        self._logger.info(
            "relay config loaded: port=%s hostname=%s max_listeners=%s sources=%s",
            config.port,
            config.hostname,
            config.max_listeners,
            config.source_limit,
        )
        await self._persist_record(installation, config.port)
        return config

    async def _resolve_installation(self) -> InstallationRecord | None:
        try:
            cached = await asyncio.to_thread(self._read_cached_record)
        except PersistenceError as exc:
            self._logger.warning("ignoring install record: %s", exc)
            cached = None
        if cached is not None and self._explicit_executable not in (None, cached.executable):
            cached = None
        if cached is not None and await asyncio.to_thread(cached.is_valid):
            self._logger.debug("using cached relay install at %s", cached.executable)
            if cached.version == "unknown":
                cached = replace(cached, version=await self._probe_version(cached.executable))
            return replace(cached, source="cached")
        if cached is not None:
            self._logger.info("cached relay install %s is no longer valid; searching", cached.executable)

        found = await asyncio.to_thread(self._search_installation)
        if found is None:
            return None
        version = await self._probe_version(found.executable)
        self._logger.info(
            "relay executable found at %s (version %s, via %s)", found.executable, version, found.source
        )
        return replace(found, version=version)

    def _read_cached_record(self) -> InstallationRecord | None:
        data = _read_json(self._record_path)
        return InstallationRecord.from_dict(data.get("installation"))

    def _search_installation(self) -> InstallationRecord | None:
        candidates: list[tuple[Path, str]] = []
        if self._explicit_executable is not None:
            candidates.append((self._explicit_executable, "settings"))
        if self._search_standard_locations:
            candidates.extend((path, "standard") for path in standard_install_locations(self._platform))
            for name in self._executable_names:
                located = shutil.which(name)
                if located:
                    candidates.append((Path(located), "path"))

        for executable, source in candidates:
            probe = InstallationRecord(executable=executable)
            if not probe.is_valid():
                if source == "settings":
                    self._logger.warning("configured relay executable %s is not usable", executable)
                continue
            config_path = self._explicit_config_path or self._first_existing(
                config_candidates_for(executable, self._platform)
            )
            if config_path is None:
                config_path = self._record_path.parent / "icecast.xml"
            log_dir = config_path.parent / "logs"
            return InstallationRecord(
                executable=executable,
                config_path=config_path,
                access_log=log_dir / "access.log",
                error_log=log_dir / "error.log",
                source=source,
            )
        return None

    @staticmethod
    def _first_existing(paths: Iterable[Path]) -> Path | None:
        for path in paths:
            try:
                if path.is_file():
                    return path
            except OSError:
                continue
        return None

    async def _probe_version(self, executable: Path) -> str:
        try:
            proc = await asyncio.create_subprocess_exec(
                str(executable),
                "-v",
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            self._logger.debug("version probe failed to launch: %s", exc)
            return "unknown"
        try:
            output, _ = await asyncio.wait_for(proc.communicate(), timeout=self._version_timeout)
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            return "unknown"
        match = _VERSION_RE.search(output.decode("utf-8", errors="replace"))
        return match.group(1) if match else "unknown"

    # --- parsing ---

    async def _parse_file(self, path: Path) -> RelayServerConfig:
        data = await asyncio.to_thread(path.read_bytes)
        return parse_relay_config(data, config_file_path=path)

    async def reload(self) -> RelayServerConfig:
        """Re-parse every cached field; serialized with other reloads.

        An unreadable, missing or malformed file keeps the previous values.
        """

        async with self._reload_lock:
            path = self.config_path
            if path is None:
                return self._current()
            try:
                config = await self._parse_file(path)
            except FileNotFoundError:
                self._logger.warning("relay config %s disappeared; keeping previous values", path)
                return self._current()
            except (OSError, ET.ParseError) as exc:
                self._logger.warning("relay config %s could not be parsed (%s); keeping previous values", path, exc)
                return self._current()
            previous = self._cache
            self._cache = config

        if previous is None or previous.port != config.port:
            self._logger.info("relay port is now %s", config.port)
        if previous is not None and (
            previous.source_password != config.source_password
            or previous.admin_password != config.admin_password
        ):
            self._logger.info("relay credentials changed; new encoders will use them")
        if previous is None or previous.hostname != config.hostname:
            self._logger.info("relay hostname is now %s", config.hostname)
        if self._persisted_port != config.port:
            await self._persist_record(self._installation, config.port)
        return config

    async def watch(self, source: ConfigChangeSource) -> None:
        """Re-parse on every change ``source`` reports; dependents are not restarted."""

        if self._source is source:
            return
        if self._source is not None:
            await self.unwatch()
        self._source = source
        source.subscribe(self._on_change)
        await source.start()
        self._logger.info("watching relay config %s", source.path)

    async def unwatch(self) -> None:
        source = self._source
        self._source = None
        if source is None:
            return
        source.unsubscribe(self._on_change)
        await source.stop()

    async def _on_change(self, path: Path) -> None:
        self._logger.info("relay config change detected: %s", path)
        await self.reload()

    # --- synchronous accessors ---

    def _current(self) -> RelayServerConfig:
        cache = self._cache
        if cache is not None:
            return cache
        path = self.config_path
        if path is not None:
            try:
                cache = parse_relay_config(path.read_bytes(), config_file_path=path)
            except FileNotFoundError:
                cache = None
            except (OSError, ET.ParseError) as exc:
                self._logger.debug("synchronous relay config parse failed: %s", exc)
                cache = None
        if cache is None:
            hint = self._read_port_hint()
            cache = RelayServerConfig(port=hint or DEFAULT_PORT, config_file_path=path)
        self._cache = cache
        return cache

    def _read_port_hint(self) -> int | None:
        try:
            data = _read_json(self._record_path)
        except PersistenceError:
            return None
        port = data.get("port")
        if isinstance(port, int) and not isinstance(port, bool) and 0 < port < 65536:
            return port
        return None

    def get_port(self) -> int:
        return self._current().port

    def get_hostname(self) -> str:
        return self._current().hostname

    def get_source_password(self) -> str:
        return self._current().source_password

    def get_admin_password(self) -> str:
        return self._current().admin_password

    def get_max_listeners(self) -> int:
        return self._current().max_listeners

    def get_source_limit(self) -> int:
        return self._current().source_limit

    def snapshot(self) -> RelayServerConfig:
        return self._current()

    # --- persistence ---

    async def _persist_record(self, installation: InstallationRecord | None, port: int) -> None:
        payload: dict[str, Any] = {
            "installation": installation.to_dict() if installation is not None else None,
            "port": port,
            "updatedAt": time.time(),
        }
        try:
            await asyncio.to_thread(_write_json_atomic, self._record_path, payload)
        except PersistenceError as exc:
            self._logger.warning("could not persist install record: %s", exc)
            return
        self._persisted_port = port

    async def ensure_config_file(self) -> Path:
        """Write a starter relay config when none exists; returns its path."""

        path = self.config_path
        if path is None:
            path = self._record_path.parent / "icecast.xml"
            self._explicit_config_path = path
        exists = await asyncio.to_thread(path.exists)
        if exists:
            return path
        config = replace(self._current(), config_file_path=path)
        text = render_config_scaffold(config, base_dir=path.parent)

        def _write() -> None:
            (path.parent / "logs").mkdir(parents=True, exist_ok=True)
            path.write_text(text, encoding="utf-8")

        try:
            await asyncio.to_thread(_write)
        except OSError as exc:
            raise PersistenceError(
                f"Unable to write relay config scaffold at {path}: {exc}",
                details={"path": str(path)},
            ) from exc
        self._logger.info("wrote relay config scaffold to %s", path)
        async with self._reload_lock:
            self._cache = config
        return path


__all__ = [
    "ConfigurationAuthority",
    "DEFAULT_ADMIN_PASSWORD",
    "DEFAULT_HOSTNAME",
    "DEFAULT_MAX_LISTENERS",
    "DEFAULT_PORT",
    "DEFAULT_SOURCE_LIMIT",
    "DEFAULT_SOURCE_PASSWORD",
    "InstallationRecord",
    "RelayServerConfig",
    "config_candidates_for",
    "parse_relay_config",
    "render_config_scaffold",
    "standard_install_locations",
]
