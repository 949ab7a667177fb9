"""Host facts reported with every heartbeat: addresses, hardware and a stable fingerprint."""

import hashlib
import ipaddress
import json
import platform
import socket
import sys
import time
from typing import Any, NamedTuple

import httpx
import psutil

from ..coerce import as_dict, non_empty_str
from ..errors import ConfigurationError
from ..log_config import get_logger

log = get_logger("host")

PUBLIC_IP_ENDPOINTS: tuple[str, ...] = (
    "https://api.ipify.org?format=json",
    "https://ifconfig.me/ip",
)
PUBLIC_IP_TIMEOUT_SECONDS = 4.0
PUBLIC_IP_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36"
)


class DiskInfo(NamedTuple):
    total_bytes: int
    free_bytes: int


def is_ipv4(value: str) -> bool:
    try:
        return isinstance(ipaddress.ip_address(value.strip()), ipaddress.IPv4Address)
    except ValueError:
        return False


def is_private_ipv4(value: str) -> bool:
    """RFC 1918 ranges plus loopback."""
    if not is_ipv4(value):
        return False
    address = ipaddress.IPv4Address(value.strip())
    return address.is_loopback or any(
        address in ipaddress.IPv4Network(network)
        for network in ("10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16")
    )


def interface_ipv4_addresses() -> list[str]:
    """Non-loopback IPv4 addresses, in interface order."""
    addresses: list[str] = []
    for entries in psutil.net_if_addrs().values():
        for entry in entries:
            if entry.family != socket.AF_INET or not entry.address:
                continue
            if ipaddress.IPv4Address(entry.address).is_loopback:
                continue
            addresses.append(entry.address)
    return addresses


def resolve_private_ip() -> str:
    addresses = interface_ipv4_addresses()
    if not addresses:
        raise ConfigurationError("Unable to resolve private IPv4 address from host network interfaces.")
    return addresses[0]


def parse_public_ip(text: str) -> str | None:
    """Plain-text IPv4 or a JSON body with ``ip``/``public_ip``."""
    trimmed = text.strip()
    if is_ipv4(trimmed):
        return trimmed
    try:
        parsed = json.loads(trimmed)
    except ValueError:
        return None
    body = as_dict(parsed) or {}
    candidate = non_empty_str(body.get("ip")) or non_empty_str(body.get("public_ip"))
    return candidate if candidate and is_ipv4(candidate) else None


async def resolve_public_ip(
    explicit: str | None,
    endpoint: str | None,
    private_ip: str,
    http_client: httpx.AsyncClient | None = None,
) -> str:
    """Configured value, else a public interface address, else the first echo endpoint that answers."""
    direct = non_empty_str(explicit)
    if direct:
        return direct

    for address in interface_ipv4_addresses():
        if not is_private_ipv4(address):
            return address

    endpoints = [endpoint] if non_empty_str(endpoint) else list(PUBLIC_IP_ENDPOINTS)
    failures: list[str] = []
    client = http_client or httpx.AsyncClient(
        timeout=PUBLIC_IP_TIMEOUT_SECONDS, headers={"User-Agent": PUBLIC_IP_USER_AGENT}
    )
    try:
        for candidate in endpoints:
            try:
                response = await client.get(candidate, timeout=PUBLIC_IP_TIMEOUT_SECONDS)
            except httpx.HTTPError as e:
                failures.append(f"{candidate}: {type(e).__name__}")
                continue
            if response.is_error:
                failures.append(f"{candidate}: HTTP {response.status_code}")
                continue
            address = parse_public_ip(response.text)
            if address:
                return address
            failures.append(f"{candidate}: response did not include a valid IPv4 address.")
    finally:
        if http_client is None:
            await client.aclose()

    summary = f" Endpoint checks: {' | '.join(failures)}" if failures else ""
    raise ConfigurationError(f"Unable to resolve public IP address. Private IP was {private_ip}.{summary}")


def host_fingerprint(host_name: str, private_ip: str, public_ip: str) -> str:
    material = "|".join([host_name, private_ip, public_ip, sys.platform, platform.machine()])
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def disk_info(path: str = "/") -> DiskInfo:
    try:
        usage = psutil.disk_usage(path)
    except OSError as e:
        log.debug("host.disk_unavailable", path=path, exc=e)
        return DiskInfo(0, 0)
    return DiskInfo(total_bytes=int(usage.total), free_bytes=int(usage.free))


def cpu_model() -> str:
    return platform.processor() or platform.machine() or "unknown"


def host_meta(
    host_name: str, private_ip: str, public_ip: str, runtime_name: str, runtime_version: str
) -> dict[str, Any]:
    disk = disk_info()
    return {
        "hostname": host_name,
        "ip": private_ip,
        "network": {"private_ip": private_ip, "public_ip": public_ip},
        "os": sys.platform,
        "os_version": platform.release(),
        "arch": platform.machine(),
        "cpu": cpu_model(),
        "cpu_cores": psutil.cpu_count() or 0,
        "ram_gb": round(psutil.virtual_memory().total / 1024**3, 2),
        "disk": disk._asdict(),
        "uptime_seconds": int(time.time() - psutil.boot_time()),
        "runtime": {"name": runtime_name, "version": runtime_version},
    }
