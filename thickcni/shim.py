"""CNI command handlers that forward requests to the daemon."""

from __future__ import annotations

import json
import logging
import os
import sys
from dataclasses import dataclass
from typing import Any, Mapping

from thickcni.api import (
    DEFAULT_MULTUS_RUN_DIR,
    CmdArgs,
    CNIRequestError,
    Request,
    Response,
    do_cni,
    socket_path,
)

log = logging.getLogger(__name__)

_LEVELS = {
    "debug": logging.DEBUG,
    "verbose": logging.INFO,
    "error": logging.ERROR,
    "panic": logging.CRITICAL,
}
_handlers: dict[str, logging.Handler] = {}


@dataclass
class ShimNetConf:
    """The fields of the shim's CNI configuration that the shim itself uses."""

    cni_version: str = ""
    multus_socket_dir: str = ""
    log_file: str = ""
    log_level: str = ""
    log_to_stderr: bool = False


def _replace_handler(name: str, handler: logging.Handler | None) -> None:
    package_logger = logging.getLogger("thickcni")
    old = _handlers.pop(name, None)
    if old is not None:
        package_logger.removeHandler(old)
        old.close()
    if handler is not None:
        _handlers[name] = handler
        package_logger.addHandler(handler)


def _configure_logging(conf: ShimNetConf) -> None:
    _replace_handler("stderr", logging.StreamHandler(sys.stderr) if conf.log_to_stderr else None)
    if conf.log_file:
        _replace_handler("file", logging.FileHandler(conf.log_file))
    if conf.log_level:
        level = _LEVELS.get(conf.log_level.lower())
        if level is None:
            log.warning("unknown log level %r", conf.log_level)
        else:
            logging.getLogger("thickcni").setLevel(level)


def _field(data: Mapping[str, Any], key: str, kind: type, default: Any) -> Any:
    value = data.get(key)
    if value is None:
        return default
    if not isinstance(value, kind):
        raise ValueError(f"wrong {key} format: {value!r}")
    return value


def shim_config(cni_config: bytes | str) -> ShimNetConf:
    """Parse the shim configuration and apply its logging settings."""
    try:
        data = json.loads(cni_config)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValueError(f"failed to gather the multus configuration: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError(f"failed to gather the multus configuration: not an object: {data!r}")
    try:
        conf = ShimNetConf(
            cni_version=_field(data, "cniVersion", str, ""),
            multus_socket_dir=_field(data, "daemonSocketDir", str, ""),
            log_file=_field(data, "logFile", str, ""),
            log_level=_field(data, "logLevel", str, ""),
            log_to_stderr=_field(data, "logToStderr", bool, False),
        )
    except ValueError as exc:
        raise ValueError(f"failed to gather the multus configuration: {exc}") from exc
    if not conf.multus_socket_dir:
        conf.multus_socket_dir = DEFAULT_MULTUS_RUN_DIR
    _configure_logging(conf)
    return conf


def new_cni_request(args: CmdArgs, environ: Mapping[str, str] | None = None) -> Request:
    """Build a request from the process environment and the plugin's stdin."""
    source = os.environ if environ is None else environ
    env = {key.strip(): value for key, value in source.items() if key}
    return Request(env=env, config=args.stdin_data)


def _post_request(args: CmdArgs) -> Response:
    try:
        conf = shim_config(args.stdin_data)
    except ValueError as exc:
        raise CNIRequestError(f"invalid CNI configuration passed to multus-shim: {exc}") from exc

    request = new_cni_request(args)
    body = do_cni("http://dummy/cni", request, socket_path(conf.multus_socket_dir))
    if not body:
        return Response()
    try:
        return Response.from_dict(json.loads(body))
    except (ValueError, UnicodeDecodeError) as exc:
        text = body.decode("utf-8", "replace")
        raise CNIRequestError(f"failed to unmarshal response '{text}': {exc}") from exc


def cmd_add(args: CmdArgs) -> dict[str, Any]:
    """Handle CNI ADD: forward it, print the result to stdout and return it."""
    try:
        response = _post_request(args)
        if response.result is None:
            raise CNIRequestError("empty result in daemon response")
    except CNIRequestError as exc:
        log.error("CmdAdd (shim): %s", exc)
        raise CNIRequestError(f"CmdAdd (shim): {exc}") from exc
    log.info("CmdAdd (shim): %s", response.result)
    sys.stdout.write(json.dumps(response.result, indent=4))
    sys.stdout.flush()
    return response.result


def cmd_check(args: CmdArgs) -> None:
    """Handle CNI CHECK by forwarding it to the daemon."""
    try:
        _post_request(args)
    except CNIRequestError as exc:
        log.error("CmdCheck (shim): %s", exc)
        raise CNIRequestError(f"CmdCheck (shim): {exc}") from exc


def cmd_del(args: CmdArgs) -> None:
    """Handle CNI DEL; failures are logged, never raised."""
    try:
        _post_request(args)
    except CNIRequestError as exc:
        log.error("CmdDel (shim): %s", exc)