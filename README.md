# thickcni

Building blocks for a "thick" multi-network CNI plugin. In that design a
small shim forwards every CNI call over a unix socket to a long-running
daemon. The daemon keeps the plugin's configuration file in step with the
cluster's primary network.

## Modules

| Module | Purpose |
| --- | --- |
| `thickcni.netutils` | Adds default-gateway routes to, or removes them from, cached CNI results. It handles the 0.1.0/0.2.0 layout (`ip4`/`ip6`) and the 0.3.0/0.3.1/0.4.0/1.0.0 layout (top-level `routes`). Malformed content raises `CacheFormatError`. |
| `thickcni.api` | Wire types `Request`, `Response`, `DelegateInterfaceAttributes` and `CmdArgs`, plus `socket_path`, `get_api_endpoint` and `create_delegate_request`. `do_cni` POSTs JSON over a unix socket and raises `CNIRequestError` if the status is not 200. |
| `thickcni.shim` | The shim side: `ShimNetConf`, `shim_config`, `new_cni_request`, and the `cmd_add` / `cmd_check` / `cmd_del` handlers. `cmd_del` logs failures and never raises them. |
| `thickcni.generator` | `MultusConf`, `parse_multus_config`, `check_version_compatibility`, `extract_capabilities` and `find_master_plugin`. |
| `thickcni.manager` | `Manager` and `new_manager`. `Manager.start()` writes `00-multus.conf` and watches the config directory and the readiness indicator file with watchdog. `Manager.stop()` stops watching and removes the file. Also provides `override_cni_version`, `get_primary_cni_plugin_name` and `primary_cni_data`. |
| `thickcni.chroot_exec` | `ChrootExec` runs a plugin binary, inside a chroot when `chroot_dir` is set. It retries up to six times on "text file busy". Failures raise `PluginError`. |
| `thickcni.daemon_config` | `ControllerNetConf`, `PerNodeCertificate`, `load_daemon_net_conf`, `is_per_node_cert_enabled`, `filesystem_pre_requirements` and `get_listener`. Errors raise `DaemonConfigError`. |

## Examples

Removing the IPv4 default route from a cached result:

```python
from thickcni.netutils import delete_default_gw_cache_bytes

with open("/var/lib/cni/results/mynet-abc123-net1", "rb") as fh:
    cached = fh.read()

updated = delete_default_gw_cache_bytes(cached, ipv4=True, ipv6=False)
```

To edit the file in a CNI cache directory directly, use
`delete_default_gw_cache(cache_dir, container_id, if_name, net_name, ipv4, ipv6)`
or `add_default_gw_cache(cache_dir, container_id, if_name, net_name, gateways)`.

Generating the plugin configuration from a daemon config file:

```python
from thickcni.generator import parse_multus_config

conf = parse_multus_config("/etc/cni/net.d/multus.d/daemon-config.json")
print(conf.generate())
```

Keeping the generated configuration up to date:

```python
from thickcni.generator import parse_multus_config
from thickcni.manager import new_manager

manager = new_manager(parse_multus_config("/etc/cni/net.d/multus.d/daemon-config.json"))
with manager:   # start() on entry, stop() on exit
    ...
```

If the readiness indicator file is removed, the manager deletes the
generated file and calls `manager.on_readiness_lost`. By default that
callback exits the process with status 2.

Sending a delegate request to a running daemon:

```python
from thickcni.api import (
    MULTUS_DELEGATE_API_ENDPOINT, create_delegate_request, do_cni,
    get_api_endpoint, socket_path,
)

request = create_delegate_request(
    "add", "abc123", "/var/run/netns/test", "net1",
    "default", "my-pod", "pod-uid", b'{"cniVersion": "0.4.0"}', None,
)
body = do_cni(get_api_endpoint(MULTUS_DELEGATE_API_ENDPOINT), request, socket_path("/run/multus/"))
```

## What it does not do

- There is no daemon here to answer requests. `get_listener` opens the unix
  socket, but nothing in the package serves the `/cni`, `/delegate` or
  `/healthz` endpoints on it.
- Nothing here talks to Kubernetes.
- Routes inside a pod's network namespace are not changed. `netutils` only
  edits cached result files.
- No command-line entry points are installed.

## Requirements

Python 3.10 or later. It uses `semver` to compare CNI versions and
`watchdog` to watch the configuration directory. Install with the `test`
extra to get `pytest`.