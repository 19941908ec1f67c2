"""Keep the multus configuration in step with the primary CNI configuration."""

from __future__ import annotations

import copy
import json
import logging
import os
import threading
from enum import Enum
from typing import Any, Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from thickcni.generator import MultusConf, check_version_compatibility, find_master_plugin

log = logging.getLogger(__name__)

MULTUS_CONFIG_FILE_NAME = "00-multus.conf"
USER_RW_PERMISSION = 0o600
_PRIMARY_CNI_DISCOVERY_TRIES = 120


class FileEvent(str, Enum):
    """Kinds of file-system events the manager reacts to."""

    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"
    MOVED = "moved"


def _join(*parts: str) -> str:
    """Join path parts the way the configuration paths are built: every part appended."""
    kept = [os.fspath(part) for part in parts if part]
    return os.path.normpath("/".join(kept)) if kept else ""


def _write_file(path: str, data: bytes, mode: int) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "wb") as handle:
        handle.write(data)


def _restart_daemon() -> None:
    # The daemon is expected to be restarted by its supervisor.
    os._exit(2)


def override_cni_version(cni_config_file: str | os.PathLike, cni_version: str) -> None:
    """Rewrite the ``cniVersion`` of a CNI configuration file."""
    path = os.fspath(cni_config_file)
    try:
        with open(path, "rb") as handle:
            raw = handle.read()
    except OSError as exc:
        raise OSError(f"failed to read cni config {path}: {exc}") from exc
    try:
        data = json.loads(raw)
    except (ValueError, UnicodeDecodeError) as exc:
        raise ValueError(f"failed to unmarshall cni config {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError(f"failed to unmarshall cni config {path}: not an object: {data!r}")
    data["cniVersion"] = cni_version
    encoded = json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    try:
        _write_file(path, encoded, 0o644)
    except OSError as exc:
        raise OSError(f"couldn't update cluster network config: {exc}") from exc


def get_primary_cni_plugin_name(autoconfig_dir: str | os.PathLike) -> str:
    """Return the file name of the primary CNI configuration in ``autoconfig_dir``."""
    try:
        return find_master_plugin(autoconfig_dir, _PRIMARY_CNI_DISCOVERY_TRIES)
    except OSError as exc:
        raise OSError(f"failed to find the cluster master CNI plugin: {exc}") from exc


def primary_cni_data(path: str | os.PathLike) -> Any:
    """Read and decode the primary CNI configuration."""
    try:
        with open(path, "rb") as handle:
            raw = handle.read()
    except OSError as exc:
        raise OSError(f"failed to read the cluster primary CNI config {os.fspath(path)}: {exc}") from exc
    try:
        return json.loads(raw)
    except (ValueError, UnicodeDecodeError) as exc:
        raise ValueError(f"failed to unmarshall primary CNI config: {exc}") from exc


class _EventHandler(FileSystemEventHandler):
    def __init__(self, manager: Manager) -> None:
        super().__init__()
        self._manager = manager

    def on_any_event(self, event: FileSystemEvent) -> None:
        self._manager._process_event(os.fsdecode(event.src_path), event.event_type)
        dest = getattr(event, "dest_path", "")
        if event.event_type == FileEvent.MOVED.value and dest:
            self._manager._process_event(os.fsdecode(dest), FileEvent.CREATED.value)


class Manager:
    """Watches the primary CNI configuration and regenerates the multus configuration."""

    def __init__(self, config: MultusConf, primary_cni_plugin_name: str) -> None:
        config = copy.deepcopy(config)
        autoconfig_dir = config.multus_autoconfig_dir
        if config.force_cni_version:
            override_cni_version(_join(autoconfig_dir, primary_cni_plugin_name), config.cni_version)

        readiness_dir = ""
        if config.readiness_indicator_file:
            readiness_dir = os.path.dirname(config.readiness_indicator_file) or "."
        self._watch_dirs = self._check_watch_dirs(autoconfig_dir, readiness_dir)

        if primary_cni_plugin_name == f"{autoconfig_dir}/{MULTUS_CONFIG_FILE_NAME}":
            message = f"cannot specify {autoconfig_dir}/{MULTUS_CONFIG_FILE_NAME} to prevent recursive config load"
            log.error(message)
            raise ValueError(message)

        self.cni_config_data: dict[str, Any] = {}
        self.multus_config = config
        self.multus_config_dir = autoconfig_dir
        self.multus_config_file_path = _join(config.cni_config_dir, MULTUS_CONFIG_FILE_NAME)
        self.primary_cni_config_path = _join(autoconfig_dir, primary_cni_plugin_name)
        self.readiness_indicator_file_path = config.readiness_indicator_file
        self.on_readiness_lost: Callable[[], None] = _restart_daemon
        self._lock = threading.RLock()
        self._observer: Any = None

        try:
            self._load_primary_cni_config_from_file()
        except (OSError, ValueError) as exc:
            raise ValueError(
                f"failed to load the primary CNI configuration as a multus delegate with error '{exc}'"
            ) from exc

        if config.override_network_name:
            try:
                self.override_network_name()
            except ValueError as exc:
                log.error("could not override the network name: %s", exc)
                raise ValueError(f"could not override the network name: {exc}") from exc

    @staticmethod
    def _check_watch_dirs(cni_config_dir: str, readiness_dir: str) -> list[str]:
        if not os.path.exists(cni_config_dir):
            raise FileNotFoundError(f'failed to add watch on "{cni_config_dir}" for cni config: no such directory')
        dirs = [cni_config_dir]
        if readiness_dir and readiness_dir != cni_config_dir:
            if not os.path.exists(readiness_dir):
                raise FileNotFoundError(
                    f'failed to add watch on "{readiness_dir}" for readinessIndicator: no such directory'
                )
            dirs.append(readiness_dir)
        return dirs

    def __enter__(self) -> Manager:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def _load_primary_cni_config_from_file(self) -> None:
        try:
            data = primary_cni_data(self.primary_cni_config_path)
        except (OSError, ValueError) as exc:
            message = f"failed to access the primary CNI configuration from {self.primary_cni_config_path}: {exc}"
            log.error(message)
            raise ValueError(message) from exc
        check_version_compatibility(self.multus_config, data)
        if not isinstance(data, dict):
            raise ValueError(f"primary CNI configuration is not an object: {data!r}")
        self.cni_config_data = data
        self.multus_config.cluster_network = self.primary_cni_config_path
        self.multus_config.set_capabilities(data)

    def override_network_name(self) -> None:
        """Name the multus network after the primary CNI network."""
        if "name" not in self.cni_config_data:
            raise ValueError("failed to access delegate CNI plugin name")
        name = self.cni_config_data["name"]
        if not isinstance(name, str):
            raise ValueError(f"wrong delegate CNI plugin name format: {name!r}")
        if not name:
            raise ValueError(
                f"the primary CNI Configuration does not feature the network name: {self.cni_config_data}"
            )
        self.multus_config.name = name

    def generate_config(self) -> str:
        """Reload the primary configuration and return the generated multus configuration.

        Returns an empty string when the primary configuration cannot be loaded.
        """
        with self._lock:
            try:
                self._load_primary_cni_config_from_file()
            except (OSError, ValueError):
                log.error("failed to read the primary CNI plugin config from %s", self.primary_cni_config_path)
                return ""
            return self.multus_config.generate()

    def persist_multus_config(self, config: str) -> str:
        """Write ``config`` to the multus configuration file and return its path."""
        path = self.multus_config_file_path
        if os.path.exists(path):
            log.debug("Overwriting Multus CNI configuration @ %s", path)
        else:
            log.debug("Writing Multus CNI configuration @ %s", path)
        _write_file(path, config.encode("utf-8"), USER_RW_PERMISSION)
        return path

    def should_regenerate_config(self, path: str | os.PathLike, kind: str) -> bool:
        """Tell whether an event of ``kind`` on ``path`` calls for regeneration."""
        try:
            event = FileEvent(kind)
        except ValueError:
            return False
        name = os.path.normpath(os.fspath(path))
        if self.readiness_indicator_file_path and name == os.path.normpath(self.readiness_indicator_file_path):
            return event in (FileEvent.DELETED, FileEvent.MOVED)
        if name == os.path.normpath(self.primary_cni_config_path):
            return event in (FileEvent.MODIFIED, FileEvent.CREATED)
        log.debug("skipping un-related event %s on %s", event.value, name)
        return False

    def _process_event(self, path: str, kind: str) -> None:
        if not self.should_regenerate_config(path, kind):
            return
        log.debug("process event: %s on %s", kind, path)
        with self._lock:
            if self.readiness_indicator_file_path and os.path.normpath(path) == os.path.normpath(
                self.readiness_indicator_file_path
            ):
                log.info("readiness indicator file is gone. restart multus-daemon")
                try:
                    os.remove(self.multus_config_file_path)
                except OSError:
                    pass
                self.on_readiness_lost()
                return
            updated = self.generate_config()
            log.debug("Re-generated MultusCNI config: %s", updated)
            try:
                self.persist_multus_config(updated)
            except OSError as exc:
                log.error("failed to persist the multus configuration: %s", exc)
            try:
                self._load_primary_cni_config_from_file()
            except (OSError, ValueError) as exc:
                log.error("failed to reload the updated config: %s", exc)

    def start(self) -> None:
        """Write the generated configuration and start watching for changes."""
        with self._lock:
            if self._observer is not None:
                raise RuntimeError("configuration manager already started")
            generated = self.generate_config()
            log.info("Generated MultusCNI config: %s", generated)
            try:
                self.persist_multus_config(generated)
            except OSError as exc:
                log.error("failed to persist the multus configuration: %s", exc)
                raise OSError(f"failed to persist the multus configuration: {exc}") from exc
            observer = Observer()
            handler = _EventHandler(self)
            for directory in self._watch_dirs:
                observer.schedule(handler, directory, recursive=False)
            observer.start()
            self._observer = observer
            log.info("started to watch file %s", self.primary_cni_config_path)

    def stop(self) -> None:
        """Stop watching and delete the generated configuration file."""
        observer = self._observer
        if observer is None:
            return
        log.info("Stopped monitoring, closing channel ...")
        observer.stop()
        observer.join()
        self._observer = None
        log.info("Delete old config @ %s", self.multus_config_file_path)
        try:
            os.remove(self.multus_config_file_path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            log.error("failed to delete %s: %s", self.multus_config_file_path, exc)


def new_manager(config: MultusConf) -> Manager:
    """Create a manager, discovering the primary CNI plugin when none is configured."""
    plugin_name = config.multus_master_cni
    if not plugin_name:
        try:
            plugin_name = get_primary_cni_plugin_name(config.multus_autoconfig_dir)
        except OSError as exc:
            log.error("failed to find the primary CNI plugin: %s", exc)
            raise
    return Manager(config, plugin_name)