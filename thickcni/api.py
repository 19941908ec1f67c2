"""Wire types and HTTP-over-unix-socket client for the CNI daemon API."""

from __future__ import annotations

import base64
import binascii
import http.client
import json
import os
import socket
from dataclasses import dataclass, field
from typing import Any, Mapping
from urllib.parse import urlsplit

MULTUS_CNI_API_ENDPOINT = "/cni"
MULTUS_DELEGATE_API_ENDPOINT = "/delegate"
MULTUS_HEALTH_API_ENDPOINT = "/healthz"
DEFAULT_MULTUS_RUN_DIR = "/run/multus/"
SERVER_SOCKET_NAME = "multus.sock"


class CNIRequestError(Exception):
    """A request to the CNI daemon could not be sent or was rejected."""


@dataclass
class CmdArgs:
    """Arguments of a CNI plugin invocation."""

    container_id: str = ""
    netns: str = ""
    if_name: str = ""
    args: str = ""
    path: str = ""
    stdin_data: bytes = b""


@dataclass
class DelegateInterfaceAttributes:
    """Extra settings attached to a delegate request."""

    ip_request: list[str] | None = None
    mac_request: str = ""
    cni_args: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON form; ``cni-args`` is always present."""
        data: dict[str, Any] = {}
        if self.ip_request:
            data["ips"] = list(self.ip_request)
        if self.mac_request:
            data["mac"] = self.mac_request
        data["cni-args"] = self.cni_args
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> DelegateInterfaceAttributes:
        """Build the attributes from their JSON form."""
        if not isinstance(data, Mapping):
            raise ValueError(f"interface attributes must be an object: {data!r}")
        ips = data.get("ips")
        if ips is not None and not (isinstance(ips, list) and all(isinstance(ip, str) for ip in ips)):
            raise ValueError(f"wrong ips format: {ips!r}")
        mac = data.get("mac") or ""
        if not isinstance(mac, str):
            raise ValueError(f"wrong mac format: {mac!r}")
        cni_args = data.get("cni-args")
        if cni_args is not None and not isinstance(cni_args, dict):
            raise ValueError(f"wrong cni-args format: {cni_args!r}")
        return cls(ip_request=ips, mac_request=mac, cni_args=cni_args)


@dataclass
class Request:
    """A request sent by the shim to the daemon."""

    env: dict[str, str] = field(default_factory=dict)
    config: bytes = b""
    interface_attributes: DelegateInterfaceAttributes | None = None

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON form, with the config base64-encoded."""
        data: dict[str, Any] = {}
        if self.env:
            data["env"] = dict(self.env)
        if self.config:
            data["config"] = base64.b64encode(self.config).decode("ascii")
        if self.interface_attributes is not None:
            data["interfaceAttributes"] = self.interface_attributes.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Request:
        """Build a request from its JSON form."""
        if not isinstance(data, Mapping):
            raise ValueError(f"request must be an object: {data!r}")
        env = data.get("env") or {}
        if not isinstance(env, dict) or not all(
            isinstance(key, str) and isinstance(value, str) for key, value in env.items()
        ):
            raise ValueError(f"wrong env format: {env!r}")
        raw_config = data.get("config") or ""
        if not isinstance(raw_config, str):
            raise ValueError(f"wrong config format: {raw_config!r}")
        try:
            config = base64.b64decode(raw_config, validate=True)
        except binascii.Error as exc:
            raise ValueError(f"wrong config encoding: {exc}") from exc
        attributes = data.get("interfaceAttributes")
        return cls(
            env=dict(env),
            config=config,
            interface_attributes=None if attributes is None else DelegateInterfaceAttributes.from_dict(attributes),
        )


@dataclass
class Response:
    """The daemon's answer to an ADD, DEL or CHECK request."""

    result: dict[str, Any] | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Response:
        """Build a response from its JSON form."""
        if not isinstance(data, Mapping):
            raise ValueError(f"response must be an object: {data!r}")
        result = data.get("Result")
        if result is not None and not isinstance(result, dict):
            raise ValueError(f"wrong Result format: {result!r}")
        return cls(result=result)


class _UnixHTTPConnection(http.client.HTTPConnection):
    def __init__(self, host: str, socket_path: str) -> None:
        super().__init__(host)
        self._socket_path = socket_path

    def connect(self) -> None:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.connect(self._socket_path)
        except OSError:
            sock.close()
            raise
        self.sock = sock


def do_cni(url: str, request: Any, socket_path: str | os.PathLike) -> bytes:
    """POST ``request`` as JSON to ``url`` over the unix socket and return the body."""
    payload = request.to_dict() if hasattr(request, "to_dict") else request
    try:
        data = json.dumps(payload).encode("utf-8")
    except (TypeError, ValueError) as exc:
        raise CNIRequestError(f"failed to marshal CNI request {request!r}: {exc}") from exc

    parts = urlsplit(url)
    target = parts.path or "/"
    if parts.query:
        target = f"{target}?{parts.query}"
    connection = _UnixHTTPConnection(parts.hostname or "localhost", os.fspath(socket_path))
    try:
        try:
            connection.request("POST", target, body=data, headers={"Content-Type": "application/json"})
            response = connection.getresponse()
        except (OSError, http.client.HTTPException) as exc:
            raise CNIRequestError(f"failed to send CNI request: {exc}") from exc
        try:
            body = response.read()
        except (OSError, http.client.HTTPException) as exc:
            raise CNIRequestError(f"failed to read CNI result: {exc}") from exc
    finally:
        connection.close()

    if response.status != http.client.OK:
        text = body.decode("utf-8", "replace")
        raise CNIRequestError(f"CNI request failed with status {response.status}: '{text}'")
    return body


def get_api_endpoint(endpoint: str) -> str:
    """Return the URL used to reach ``endpoint`` on the daemon."""
    return f"http://dummy{endpoint}"


def create_delegate_request(
    cni_command: str,
    container_id: str,
    netns: str,
    if_name: str,
    pod_namespace: str,
    pod_name: str,
    pod_uid: str,
    cni_config: bytes,
    interface_attributes: DelegateInterfaceAttributes | None,
) -> Request:
    """Build a request for the delegate API."""
    return Request(
        env={
            "CNI_COMMAND": cni_command.upper(),
            "CNI_CONTAINERID": container_id,
            "CNI_NETNS": netns,
            "CNI_IFNAME": if_name,
            "CNI_ARGS": f"K8S_POD_NAMESPACE={pod_namespace};K8S_POD_NAME={pod_name};K8S_POD_UID={pod_uid}",
        },
        config=cni_config,
        interface_attributes=interface_attributes,
    )


def socket_path(rundir: str | os.PathLike) -> str:
    """Return the path of the daemon socket inside ``rundir``."""
    return os.path.join(rundir, SERVER_SOCKET_NAME)