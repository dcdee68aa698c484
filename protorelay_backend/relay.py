"""SSRF-guarded binary relay.

Validates a caller-chosen destination against the configured host policy, then POSTs
the payload verbatim and hands the upstream answer back untouched (any status code).

Under ``restricted`` only globally-routable unicast addresses are reachable. Host names
are checked against loopback/metadata names and every address they resolve to must pass
the same check (``resolve_hosts=False`` skips resolution). Resolution happens before the
request is sent, so a resolver that answers differently the second time (DNS rebinding)
is not covered.
"""
from __future__ import annotations

import asyncio
import ipaddress
import logging
import re
import socket
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Iterable, Mapping, Optional, Union
from urllib.parse import SplitResult, urlsplit

import httpx

from .config import RELAY_CONTENT_TYPE
from .errors import ForbiddenHost, InvalidUrl, TransportError
from .security import sanitize_for_log


logger = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
HeaderValue = Union[str, int, float, bool]
Resolver = Callable[[str], Awaitable[list[str]]]

ALLOWED_SCHEMES = {"http", "https"}

LOOPBACK_NAMES = {"localhost", "localhost.localdomain", "ip6-localhost", "ip6-loopback"}

METADATA_HOSTS = {
    "metadata",
    "metadata.google.internal",
    "metadata.goog",
    "instance-data",
    "instance-data.ec2.internal",
}

METADATA_ADDRESSES = {
    ipaddress.ip_address("169.254.169.254"),  # AWS, GCP, Azure, OpenStack
    ipaddress.ip_address("169.254.170.2"),  # ECS task metadata
    ipaddress.ip_address("fd00:ec2::254"),  # AWS IPv6 IMDS
    ipaddress.ip_address("100.100.100.200"),  # Alibaba Cloud
}

_NAT64_PREFIX = ipaddress.ip_network("64:ff9b::/96")

# Legacy inet_aton spellings ("2130706433", "0x7f.1", "127.1") still accepted by resolvers.
_NUMERIC_HOST_RE = re.compile(r"^(0x[0-9a-f]+|[0-9]+)(\.(0x[0-9a-f]+|[0-9]+)){0,3}$", re.IGNORECASE)


class HostPolicyMode(str, Enum):
    OPEN = "open"
    RESTRICTED = "restricted"


@dataclass(frozen=True)
class RelayResponse:
    status: int
    data: bytes
    headers: dict[str, str] = field(default_factory=dict)


def parse_ip_literal(host: str) -> Optional[IPAddress]:
    try:
        return ipaddress.ip_address(host)
    except ValueError:
        pass
    if _NUMERIC_HOST_RE.match(host):
        try:
            return ipaddress.IPv4Address(socket.inet_aton(host))
        except OSError:
            return None
    return None


def _embedded_ipv4(ip: ipaddress.IPv6Address) -> Optional[ipaddress.IPv4Address]:
    if ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    if ip.sixtofour is not None:
        return ip.sixtofour
    if ip in _NAT64_PREFIX:
        return ipaddress.IPv4Address(int(ip) & 0xFFFFFFFF)
    return None


def is_public_unicast(ip: IPAddress) -> bool:
    """True only for globally-routable unicast addresses that are not metadata endpoints."""
    if isinstance(ip, ipaddress.IPv6Address):
        if ip.scope_id:
            return False
        embedded = _embedded_ipv4(ip)
        if embedded is not None and not is_public_unicast(embedded):
            return False
    if ip in METADATA_ADDRESSES:
        return False
    return ip.is_global and not ip.is_multicast


def stringify_header_value(value: HeaderValue) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def build_request_headers(overrides: Optional[Mapping[str, HeaderValue]] = None) -> httpx.Headers:
    headers = httpx.Headers({"Content-Type": RELAY_CONTENT_TYPE})
    for key, value in (overrides or {}).items():
        headers[key] = stringify_header_value(value)
    return headers


def normalize_response_headers(items: Iterable[tuple[str, object]]) -> dict[str, str]:
    """Flatten headers: lowercase names, repeated/list values joined with ', ', None dropped."""
    grouped: dict[str, list[str]] = {}
    for key, value in items:
        if value is None:
            continue
        values = value if isinstance(value, (list, tuple)) else [value]
        grouped.setdefault(key.lower(), []).extend(str(v) for v in values if v is not None)
    return {key: ", ".join(values) for key, values in grouped.items()}


async def resolve_host(host: str) -> list[str]:
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, None, type=socket.SOCK_STREAM)
    return [info[4][0] for info in infos]


class RelayForwarder:
    def __init__(
        self,
        mode: HostPolicyMode = HostPolicyMode.RESTRICTED,
        *,
        timeout: Optional[float] = None,
        resolve_hosts: bool = True,
        resolver: Resolver = resolve_host,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.mode = HostPolicyMode(mode)
        self.timeout = timeout
        self.resolve_hosts = resolve_hosts
        self._resolver = resolver
        self._transport = transport

    async def forward(
        self,
        url: str,
        payload: bytes,
        headers: Optional[Mapping[str, HeaderValue]] = None,
    ) -> RelayResponse:
        parsed = self.validate_url(url)
        if self.mode is HostPolicyMode.RESTRICTED:
            await self.check_host(parsed.hostname or "")

        request_headers = build_request_headers(headers)
        try:
            async with httpx.AsyncClient(
                transport=self._transport,
                timeout=self.timeout,
                follow_redirects=False,
            ) as client:
                res = await client.post(url, content=payload, headers=request_headers)
        except httpx.InvalidURL as exc:
            raise InvalidUrl(f"Invalid url: {exc}") from exc
        except httpx.RequestError as exc:
            logger.warning("Relay transport error <- %s: %s", sanitize_for_log(url), sanitize_for_log(exc))
            raise TransportError(exc) from exc

        return RelayResponse(
            status=res.status_code,
            data=res.content,
            headers=normalize_response_headers(res.headers.multi_items()),
        )

    @staticmethod
    def validate_url(url: str) -> SplitResult:
        try:
            parsed = urlsplit((url or "").strip())
            # .port raises ValueError for out-of-range or non-numeric ports
            parsed.port
        except ValueError as exc:
            raise InvalidUrl(f"Invalid url: {exc}") from exc
        if parsed.scheme.lower() not in ALLOWED_SCHEMES:
            raise InvalidUrl("Only http and https urls are allowed")
        if not parsed.hostname:
            raise InvalidUrl("Url must be absolute")
        return parsed

    async def check_host(self, host: str) -> None:
        host = host.rstrip(".").lower()
        if not host or host in LOOPBACK_NAMES or host.endswith(".localhost"):
            raise ForbiddenHost(f"Forbidden host: {sanitize_for_log(host)}")
        if host in METADATA_HOSTS:
            raise ForbiddenHost(f"Forbidden host: {sanitize_for_log(host)}")

        ip = parse_ip_literal(host)
        if ip is not None:
            if not is_public_unicast(ip):
                raise ForbiddenHost(f"Forbidden host: {sanitize_for_log(host)}")
            return

        if not self.resolve_hosts:
            return
        try:
            addresses = await self._resolver(host)
        except OSError as exc:
            raise TransportError(exc) from exc
        if not addresses:
            raise TransportError(OSError(f"no addresses for {host}"))
        for address in addresses:
            resolved = ipaddress.ip_address(address)
            if not is_public_unicast(resolved):
                raise ForbiddenHost(f"Forbidden host: {sanitize_for_log(host)} resolves to {resolved}")
