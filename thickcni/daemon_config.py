"""Daemon configuration and filesystem setup for the CNI server."""

from __future__ import annotations

import json
import logging
import os
import shutil
import socket
import sys
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Mapping

DEFAULT_MULTUS_DAEMON_CONFIG_FILE = "/etc/cni/net.d/multus.d/daemon-config.json"
DEFAULT_MULTUS_RUN_DIR = "/run/multus/"
DEFAULT_CERT_DURATION = timedelta(minutes=10)

SOCKET_PERMISSIONS = 0o600
RUN_DIR_PERMISSIONS = 0o700

_LEVELS = {
    "debug": logging.DEBUG,
    "verbose": logging.INFO,
    "error": logging.ERROR,
    "panic": logging.CRITICAL,
}
_handlers: dict[str, logging.Handler] = {}

log = logging.getLogger(__name__)


class DaemonConfigError(Exception):
    """The daemon configuration or its runtime environment is unusable."""


@dataclass
class PerNodeCertificate:
    """Settings for automatic per-node certificate generation."""

    enabled: bool = False
    bootstrap_kubeconfig: str = ""
    cert_dir: str = ""
    cert_duration: str = ""


@dataclass
class ControllerNetConf:
    """Configuration of the CNI daemon."""

    chroot_dir: str = ""
    log_file: str = ""
    log_level: str = ""
    log_to_stderr: bool = False
    per_node_certificate: PerNodeCertificate | None = None
    metrics_port: int | None = None
    socket_dir: str = DEFAULT_MULTUS_RUN_DIR
    config_file_contents: bytes = b""


def _lookup(data: Mapping[str, Any], key: str) -> Any:
    if key in data:
        return data[key]
    folded = key.lower()
    for name, value in data.items():
        if name.lower() == folded:
            return value
    return None


def _typed(data: Mapping[str, Any], key: str, kind: type, default: Any) -> Any:
    value = _lookup(data, key)
    if value is None:
        return default
    if not isinstance(value, kind) or (kind is not bool and isinstance(value, bool)):
        raise ValueError(f"wrong {key} format: {value!r}")
    return value


def _per_node_certificate(value: Any) -> PerNodeCertificate | None:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ValueError(f"wrong perNodeCertificate format: {value!r}")
    return PerNodeCertificate(
        enabled=_typed(value, "enabled", bool, False),
        bootstrap_kubeconfig=_typed(value, "bootstrapKubeconfig", str, ""),
        cert_dir=_typed(value, "certDir", str, ""),
        cert_duration=_typed(value, "certDuration", str, ""),
    )


def _metrics_port(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValueError(f"wrong metricsPort format: {value!r}")
    return value


def _replace_handler(name: str, handler: logging.Handler | None) -> None:
    package_logger = logging.getLogger("thickcni")
    old = _handlers.pop(name, None)
    if old is not None:
        package_logger.removeHandler(old)
        old.close()
    if handler is not None:
        _handlers[name] = handler
        package_logger.addHandler(handler)


def _apply_logging(conf: ControllerNetConf) -> None:
    _replace_handler("stderr", logging.StreamHandler(sys.stderr) if conf.log_to_stderr else None)
    if conf.log_file != DEFAULT_MULTUS_DAEMON_CONFIG_FILE:
        _replace_handler("file", logging.FileHandler(conf.log_file) if conf.log_file else None)
    if conf.log_level:
        level = _LEVELS.get(conf.log_level.lower())
        if level is None:
            log.warning("unknown log level %r", conf.log_level)
        else:
            logging.getLogger("thickcni").setLevel(level)


def load_daemon_net_conf(config: bytes | str) -> ControllerNetConf:
    """Parse the daemon configuration and apply its logging settings."""
    raw = config.encode("utf-8") if isinstance(config, str) else bytes(config)
    try:
        data = json.loads(raw)
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ValueError(f"configuration is not an object: {data!r}")
        conf = ControllerNetConf(
            chroot_dir=_typed(data, "chrootDir", str, ""),
            log_file=_typed(data, "logFile", str, ""),
            log_level=_typed(data, "logLevel", str, ""),
            log_to_stderr=_typed(data, "logToStderr", bool, False),
            per_node_certificate=_per_node_certificate(_lookup(data, "perNodeCertificate")),
            metrics_port=_metrics_port(_lookup(data, "metricsPort")),
            socket_dir=_typed(data, "socketDir", str, DEFAULT_MULTUS_RUN_DIR),
        )
    except (ValueError, UnicodeDecodeError) as exc:
        raise DaemonConfigError(f"failed to unmarshall the daemon configuration: {exc}") from exc
    _apply_logging(conf)
    conf.config_file_contents = raw
    return conf


def is_per_node_cert_enabled(config: PerNodeCertificate | None) -> bool:
    """Tell whether per-node certificates are on; raise if on but incomplete."""
    if config is None or not config.enabled:
        return False
    if config.bootstrap_kubeconfig and config.cert_dir:
        return True
    message = (
        f"failed to configure PerNodeCertificate: enabled: {str(config.enabled).lower()}, "
        f"BootstrapKubeconfig: {json.dumps(config.bootstrap_kubeconfig)}, "
        f"CertDir: {json.dumps(config.cert_dir)}"
    )
    log.error(message)
    raise DaemonConfigError(message)


def filesystem_pre_requirements(rundir: str | os.PathLike) -> None:
    """Recreate ``rundir`` empty and readable only by its owner."""
    path = os.fspath(rundir)
    try:
        if os.path.isdir(path) and not os.path.islink(path):
            shutil.rmtree(path)
        elif os.path.lexists(path):
            os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        raise DaemonConfigError(f"failed to remove old pod info socket directory {path}: {exc}") from exc
    try:
        os.makedirs(path, mode=RUN_DIR_PERMISSIONS, exist_ok=True)
    except OSError as exc:
        raise DaemonConfigError(f"failed to create pod info socket directory {path}: {exc}") from exc


def get_listener(socket_path: str | os.PathLike) -> socket.socket:
    """Return a listening unix socket at ``socket_path``, readable only by its owner."""
    path = os.fspath(socket_path)
    listener = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        listener.bind(path)
        listener.listen()
        os.chmod(path, SOCKET_PERMISSIONS)
    except OSError as exc:
        listener.close()
        message = f"failed to listen on pod info socket: {exc}"
        log.error(message)
        raise DaemonConfigError(message) from exc
    return listener