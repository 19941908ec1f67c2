"""Rewrite default-gateway routes stored in cached CNI results."""

from __future__ import annotations

import ipaddress
import json
import logging
import os
from pathlib import Path
from typing import Any, Iterable, Union

log = logging.getLogger(__name__)

IPV4_DEFAULT_DST = "0.0.0.0/0"
IPV6_DEFAULT_DST = "::0/0"
# Results of CNI 0.1.0/0.2.0 spell the IPv6 default route differently when added.
_IPV6_DEFAULT_DST_LEGACY = "::/0"

_LEGACY_VERSIONS = frozenset({"0.1.0", "0.2.0"})
_SUPPORTED_VERSIONS = frozenset({"0.3.0", "0.3.1", "0.4.0", "1.0.0"})

Gateway = Union[str, int, ipaddress.IPv4Address, ipaddress.IPv6Address]
Address = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


class CacheFormatError(ValueError):
    """A cached CNI result does not have the expected shape."""


def _cache_file(cache_dir: str | os.PathLike, net_name: str, container_id: str, if_name: str) -> Path:
    return Path(cache_dir, "results", f"{net_name}-{container_id}-{if_name}")


def _write_private(path: Path, data: bytes) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as handle:
        handle.write(data)


def _as_address(gateway: Gateway) -> Address:
    """Parse a gateway, treating IPv4-mapped IPv6 addresses as IPv4."""
    if isinstance(gateway, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        address: Address = gateway
    else:
        address = ipaddress.ip_address(gateway)
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        return address.ipv4_mapped
    return address


def _load_result(data: bytes | str) -> tuple[dict[str, Any], dict[str, Any]]:
    try:
        cached = json.loads(data)
    except json.JSONDecodeError as exc:
        raise CacheFormatError(f"invalid cache JSON: {exc}") from exc
    if cached is None:
        raise CacheFormatError("cannot get result from cache")
    if not isinstance(cached, dict):
        raise CacheFormatError(f"cache is not a JSON object: {cached!r}")
    if "result" not in cached:
        raise CacheFormatError("cannot get result from cache")
    result = cached["result"]
    if not isinstance(result, dict):
        raise CacheFormatError(f"wrong result type: {result!r}")
    return cached, result


def _dump(cached: dict[str, Any]) -> bytes:
    return json.dumps(cached, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _cni_version(result: dict[str, Any]) -> str | None:
    """Return the result's cniVersion, or None for a legacy (0.1.0/0.2.0) result."""
    if "cniVersion" not in result:
        return None
    version = result["cniVersion"]
    if not isinstance(version, str):
        raise CacheFormatError(f"wrong cniVersion format: {version!r}")
    if version in _LEGACY_VERSIONS:
        return None
    if version not in _SUPPORTED_VERSIONS:
        raise CacheFormatError(f"not supported version: {version}")
    return version


def _routes_list(container: dict[str, Any], label: str) -> list[Any]:
    routes = container["routes"]
    if not isinstance(routes, list):
        raise CacheFormatError(f"wrong {label} format: {routes!r}")
    return routes


def _section(result: dict[str, Any], key: str) -> dict[str, Any]:
    section = result[key]
    if not isinstance(section, dict):
        raise CacheFormatError(f"wrong {key} format: {section!r}")
    return section


def delete_default_gw_result_routes(routes: Iterable[Any], dst_gw: str) -> list[Any]:
    """Return the routes whose ``dst`` is present and differs from ``dst_gw``."""
    kept = []
    for route in routes:
        if not isinstance(route, dict):
            raise CacheFormatError(f"wrong route format: {route!r}")
        if "dst" not in route:
            continue
        dst = route["dst"]
        if not isinstance(dst, str):
            raise CacheFormatError(f"wrong dst format: {dst!r}")
        if dst != dst_gw:
            kept.append(route)
    return kept


def _delete_default_gw_legacy(result: dict[str, Any], ipv4: bool, ipv6: bool) -> dict[str, Any]:
    for enabled, key, dst in ((ipv4, "ip4", IPV4_DEFAULT_DST), (ipv6, "ip6", IPV6_DEFAULT_DST)):
        if not enabled or key not in result:
            continue
        section = _section(result, key)
        if "routes" in section:
            routes = _routes_list(section, f"{key} routes")
            section["routes"] = delete_default_gw_result_routes(routes, dst)
    return result


def delete_default_gw_result(result: dict[str, Any], ipv4: bool, ipv6: bool) -> dict[str, Any]:
    """Drop default routes of the chosen families from a CNI result, in place."""
    if _cni_version(result) is None:
        return _delete_default_gw_legacy(result, ipv4, ipv6)
    if "routes" not in result:
        return result
    routes = _routes_list(result, "routes")
    if ipv4:
        routes = delete_default_gw_result_routes(routes, IPV4_DEFAULT_DST)
    if ipv6:
        routes = delete_default_gw_result_routes(routes, IPV6_DEFAULT_DST)
    result["routes"] = routes
    return result


def delete_default_gw_cache_bytes(data: bytes | str, ipv4: bool, ipv6: bool) -> bytes:
    """Return the cache document with default routes removed from its result."""
    cached, result = _load_result(data)
    cached["result"] = delete_default_gw_result(result, ipv4, ipv6)
    return _dump(cached)


def delete_default_gw_cache(
    cache_dir: str | os.PathLike,
    container_id: str,
    if_name: str,
    net_name: str,
    ipv4: bool,
    ipv6: bool,
) -> None:
    """Remove default gateway routes from a cached result file."""
    path = _cache_file(cache_dir, net_name, container_id, if_name)
    cache = path.read_bytes()
    log.debug("delete_default_gw_cache: update cache to delete GW from: %s", cache.decode("utf-8", "replace"))
    new_cache = delete_default_gw_cache_bytes(cache, ipv4, ipv6)
    log.debug("delete_default_gw_cache: update cache to delete GW: %s", new_cache.decode("utf-8", "replace"))
    _write_private(path, new_cache)


def _add_default_gw_legacy(result: dict[str, Any], gateways: Iterable[Gateway]) -> dict[str, Any]:
    for gateway in gateways:
        address = _as_address(gateway)
        if address.version == 4:
            key, dst = "ip4", IPV4_DEFAULT_DST
        else:
            key, dst = "ip6", _IPV6_DEFAULT_DST_LEGACY
        if key not in result:
            continue
        section = _section(result, key)
        routes = _routes_list(section, f"{key} routes") if "routes" in section else []
        section["routes"] = [*routes, {"dst": dst, "gw": str(address)}]
    return result


def add_default_gw_result(result: dict[str, Any], gateways: Iterable[Gateway]) -> dict[str, Any]:
    """Append a default route for each gateway to a CNI result, in place."""
    if _cni_version(result) is None:
        return _add_default_gw_legacy(result, gateways)
    routes = list(_routes_list(result, "routes")) if "routes" in result else []
    for gateway in gateways:
        address = _as_address(gateway)
        dst = IPV4_DEFAULT_DST if address.version == 4 else IPV6_DEFAULT_DST
        routes.append({"dst": dst, "gw": str(address)})
    result["routes"] = routes
    return result


def add_default_gw_cache_bytes(data: bytes | str, gateways: Iterable[Gateway]) -> bytes:
    """Return the cache document with default routes added to its result."""
    cached, result = _load_result(data)
    cached["result"] = add_default_gw_result(result, gateways)
    return _dump(cached)


def add_default_gw_cache(
    cache_dir: str | os.PathLike,
    container_id: str,
    if_name: str,
    net_name: str,
    gateways: Iterable[Gateway],
) -> None:
    """Add default gateway routes to a cached result file."""
    path = _cache_file(cache_dir, net_name, container_id, if_name)
    cache = path.read_bytes()
    log.debug("add_default_gw_cache: update cache to add GW from: %s", cache.decode("utf-8", "replace"))
    new_cache = add_default_gw_cache_bytes(cache, gateways)
    log.debug("add_default_gw_cache: update cache to add GW: %s", new_cache.decode("utf-8", "replace"))
    _write_private(path, new_cache)