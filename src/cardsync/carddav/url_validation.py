"""SSRF guard for user-supplied CardDAV server URLs."""

from __future__ import annotations

import asyncio
import ipaddress
import socket
from collections.abc import Awaitable, Callable
from urllib.parse import urlsplit

from cardsync.errors import UnsafeServerUrlError

Resolver = Callable[[str], Awaitable[list[str]]]

INVALID_URL = "Invalid URL format"
PROTOCOL_NOT_ALLOWED = "Only HTTP and HTTPS protocols are allowed"
INTERNAL_ADDRESS = "Internal addresses are not allowed"
UNRESOLVABLE_HOST = "Could not resolve server hostname"


def is_internal_address(host: str) -> bool:
    """True when ``host`` is an IP literal in a private, loopback or link-local range."""
    try:
        address = ipaddress.ip_address(host.strip("[]"))
    except ValueError:
        return False
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        address = address.ipv4_mapped
    return (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_unspecified
        or address.is_reserved
        or address.is_multicast
    )


async def _resolve_host(host: str) -> list[str]:
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, None, type=socket.SOCK_STREAM)
    return sorted({str(info[4][0]) for info in infos})


async def validate_server_url(url: str, *, resolver: Resolver | None = None) -> str:
    """Validate ``url`` and return it unchanged.

    Raises:
        UnsafeServerUrlError: with a message suitable for end users.
    """
    try:
        parts = urlsplit(url.strip())
    except ValueError as exc:
        raise UnsafeServerUrlError(INVALID_URL) from exc
    if not parts.scheme or not parts.netloc:
        raise UnsafeServerUrlError(INVALID_URL)
    if parts.scheme.lower() not in {"http", "https"}:
        raise UnsafeServerUrlError(PROTOCOL_NOT_ALLOWED)

    host = (parts.hostname or "").lower()
    if not host:
        raise UnsafeServerUrlError(INVALID_URL)
    if host == "localhost" or host.endswith(".localhost") or is_internal_address(host):
        raise UnsafeServerUrlError(INTERNAL_ADDRESS)

    try:
        ipaddress.ip_address(host)
    except ValueError:
        pass
    else:
        return url

    resolve = resolver or _resolve_host
    try:
        addresses = await resolve(host)
    except OSError as exc:
        raise UnsafeServerUrlError(UNRESOLVABLE_HOST) from exc
    if not addresses:
        raise UnsafeServerUrlError(UNRESOLVABLE_HOST)
    if any(is_internal_address(address) for address in addresses):
        raise UnsafeServerUrlError(INTERNAL_ADDRESS)
    return url
