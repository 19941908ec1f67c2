"""Build the shim's CNI configuration from the daemon configuration."""

from __future__ import annotations

import json
import os
import time
from dataclasses import dataclass, field
from typing import Any

from semver import Version

MULTUS_PLUGIN_NAME = "multus-shim"
MULTUS_DEFAULT_NETWORK_NAME = "multus-cni-network"
DEFAULT_CNI_CONFIG_DIR = "/etc/cni/net.d"

_CONFIG_LIST_CAPABILITY_KEY = "plugins"
_SINGLE_CONFIG_CAPABILITY_KEY = "capabilities"
_MIN_CHECK_VERSION = Version.parse("0.4.0")

# (JSON key, attribute, JSON type, omitted when empty), in output order.
_FIELDS: tuple[tuple[str, str, type, bool], ...] = (
    ("binDir", "bin_dir", str, True),
    ("capabilities", "capabilities", dict, True),
    ("cniVersion", "cni_version", str, False),
    ("logFile", "log_file", str, True),
    ("logLevel", "log_level", str, True),
    ("logToStderr", "log_to_stderr", bool, True),
    ("logOptions", "log_options", dict, True),
    ("name", "name", str, False),
    ("clusterNetwork", "cluster_network", str, True),
    ("namespaceIsolation", "namespace_isolation", bool, True),
    ("globalNamespaces", "raw_non_isolated_namespaces", str, True),
    ("readinessindicatorfile", "readiness_indicator_file", str, True),
    ("type", "type", str, False),
    ("cniDir", "cni_dir", str, True),
    ("cniConfigDir", "cni_config_dir", str, True),
    ("daemonSocketDir", "daemon_socket_dir", str, True),
    ("multusConfigFile", "multus_config_file", str, True),
    ("multusMasterCNI", "multus_master_cni", str, True),
    ("multusAutoconfigDir", "multus_autoconfig_dir", str, True),
    ("forceCNIVersion", "force_cni_version", bool, True),
    ("overrideNetworkName", "override_network_name", bool, True),
)
_BY_KEY = {spec[0]: spec for spec in _FIELDS}
_BY_FOLDED_KEY = {spec[0].lower(): spec for spec in _FIELDS}

_JSON_ESCAPES = {
    "<": "\\u003c",
    ">": "\\u003e",
    "&": "\\u0026",
    "\u2028": "\\u2028",
    "\u2029": "\\u2029",
}


def _encode(data: Any) -> str:
    text = json.dumps(data, separators=(",", ":"), ensure_ascii=False)
    for char, escape in _JSON_ESCAPES.items():
        text = text.replace(char, escape)
    return text


@dataclass
class MultusConf:
    """The multus configuration held by the daemon."""

    bin_dir: str = ""
    capabilities: dict[str, bool] = field(default_factory=dict)
    cni_version: str = ""
    log_file: str = ""
    log_level: str = ""
    log_to_stderr: bool = False
    log_options: dict[str, Any] | None = None
    name: str = ""
    cluster_network: str = ""
    namespace_isolation: bool = False
    raw_non_isolated_namespaces: str = ""
    readiness_indicator_file: str = ""
    type: str = ""
    cni_dir: str = ""
    cni_config_dir: str = ""
    daemon_socket_dir: str = ""
    multus_config_file: str = ""
    multus_master_cni: str = ""
    multus_autoconfig_dir: str = ""
    force_cni_version: bool = False
    override_network_name: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON form, leaving out empty optional fields."""
        data: dict[str, Any] = {}
        for key, attr, _, omit_empty in _FIELDS:
            value = getattr(self, attr)
            if attr == "log_options":
                if value is not None:
                    data[key] = value
                continue
            if omit_empty and not value:
                continue
            if attr == "capabilities":
                value = {name: value[name] for name in sorted(value)}
            data[key] = value
        return data

    def generate(self) -> str:
        """Clear daemon-only settings and return the configuration as JSON."""
        self.cni_config_dir = ""
        self.multus_config_file = ""
        self.multus_autoconfig_dir = ""
        self.multus_master_cni = ""
        self.force_cni_version = False
        # The daemon watches the readiness indicator file itself.
        self.readiness_indicator_file = ""
        return _encode(self.to_dict())

    def set_capabilities(self, cni_data: Any) -> None:
        """Enable every capability the delegate configuration turns on."""
        if not isinstance(cni_data, dict):
            raise ValueError("couldn't get cni config from delegate")
        plugins = cni_data.get(_CONFIG_LIST_CAPABILITY_KEY) if _CONFIG_LIST_CAPABILITY_KEY in cni_data else []
        if not isinstance(plugins, list):
            raise ValueError(f"wrong plugins format: {plugins!r}")
        if plugins:
            enabled = [name for plugin in plugins for name in extract_capabilities(plugin)]
        else:
            enabled = extract_capabilities(cni_data)
        for name in enabled:
            self.capabilities[name] = True


def _apply(conf: MultusConf, data: dict[str, Any]) -> None:
    for key, value in data.items():
        spec = _BY_KEY.get(key) or _BY_FOLDED_KEY.get(key.lower())
        if spec is None or value is None:
            continue
        json_key, attr, kind, _ = spec
        if not isinstance(value, kind) or (kind is not bool and isinstance(value, bool)):
            raise ValueError(f"wrong {json_key} format: {value!r}")
        if attr == "capabilities":
            for name, enabled in value.items():
                if not isinstance(enabled, bool):
                    raise ValueError(f"wrong capability {name!r} format: {enabled!r}")
            conf.capabilities.update(value)
        else:
            setattr(conf, attr, value)


def parse_multus_config(config_path: str | os.PathLike) -> MultusConf:
    """Read a multus configuration file and fill in the daemon defaults."""
    with open(config_path, "rb") as handle:
        raw = handle.read()
    conf = MultusConf(
        multus_config_file="auto",
        type=MULTUS_PLUGIN_NAME,
        capabilities={},
        cni_config_dir=DEFAULT_CNI_CONFIG_DIR,
    )
    try:
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError(f"configuration is not an object: {data!r}")
        _apply(conf, data)
    except (ValueError, UnicodeDecodeError) as exc:
        raise ValueError(f"failed to unmarshall the daemon configuration: {exc}") from exc
    conf.name = MULTUS_DEFAULT_NETWORK_NAME
    return conf


def check_version_compatibility(conf: MultusConf, delegate: Any) -> None:
    """Reject a delegate older than 0.4.0 when the top-level version is 0.4.0 or newer."""
    try:
        top_level = Version.parse(conf.cni_version)
    except (ValueError, TypeError) as exc:
        raise ValueError("couldn't get top level cni version") from exc
    if top_level < _MIN_CHECK_VERSION:
        return
    if not isinstance(delegate, dict):
        raise ValueError("couldn't get cni version of delegate")
    delegate_version = delegate.get("cniVersion")
    if not isinstance(delegate_version, str):
        raise ValueError("couldn't get cni version of delegate")
    if Version.parse(delegate_version) < _MIN_CHECK_VERSION:
        raise ValueError(
            f"delegate cni version is {delegate_version} while top level cni version is {conf.cni_version}"
        )


def extract_capabilities(data: Any) -> list[str]:
    """Return the names of the capabilities enabled in a plugin configuration."""
    if not isinstance(data, dict):
        return []
    capabilities = data.get(_SINGLE_CONFIG_CAPABILITY_KEY)
    if not isinstance(capabilities, dict):
        return []
    enabled = []
    for name, value in capabilities.items():
        if not isinstance(value, bool):
            raise ValueError(f"wrong capability {name!r} format: {value!r}")
        if value:
            enabled.append(name)
    return enabled


def _extension(name: str) -> str:
    dot = name.rfind(".")
    return name[dot:] if dot >= 0 else ""


def find_master_plugin(cni_config_dir: str | os.PathLike, remaining_tries: int) -> str:
    """Return the first CNI configuration file name, waiting a second between tries."""
    while True:
        if remaining_tries == 0:
            raise FileNotFoundError(f"could not find a plugin configuration in {os.fspath(cni_config_dir)}")
        candidates = sorted(
            name
            for name in os.listdir(cni_config_dir)
            if not name.startswith("00-multus") and _extension(name) in (".conf", ".conflist")
        )
        if candidates:
            return candidates[0]
        time.sleep(1)
        remaining_tries -= 1