"""Guard against probes that would reach private or local network addresses."""

import asyncio
import errno
import ipaddress
import logging
import socket
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Protocol

from aiohttp.abc import AbstractResolver, ResolveResult
from aiohttp.resolver import ThreadedResolver
from yarl import URL

from probe_engine.errors import BlockedTest

log = logging.getLogger(__name__)

type HostLookup = Callable[[str], Awaitable[Sequence[str]]]

REASON_INVALID_URL = "invalid URL"
REASON_LOCALHOST = "localhost not allowed"
REASON_PRIVATE = "localhost/private address not allowed"
REASON_UNRESOLVED = "DNS resolution failed"

LOCALHOST_NAMES = frozenset({"localhost", "::1"})
PRIVATE_IPV6_PREFIXES = ("fc", "fd", "fe80")


def ipv4_to_int(address: str) -> int:
    """Convert a dotted-quad IPv4 address to its 32-bit integer value."""
    return int(ipaddress.IPv4Address(address))


PRIVATE_IPV4_RANGES: Sequence[tuple[int, int]] = (
    (ipv4_to_int("10.0.0.0"), ipv4_to_int("10.255.255.255")),
    (ipv4_to_int("172.16.0.0"), ipv4_to_int("172.31.255.255")),
    (ipv4_to_int("192.168.0.0"), ipv4_to_int("192.168.255.255")),
    (ipv4_to_int("127.0.0.0"), ipv4_to_int("127.255.255.255")),
    (ipv4_to_int("169.254.0.0"), ipv4_to_int("169.254.255.255")),
)


class HasUrl(Protocol):
    """Anything carrying a target URL."""

    @property
    def url(self) -> str: ...


def is_private_ipv4(address: str) -> bool:
    """Check a dotted-quad against the private, loopback and link-local ranges."""
    try:
        value = ipv4_to_int(address)
    except ValueError:
        return False
    return any(start <= value <= end for start, end in PRIVATE_IPV4_RANGES)


def is_private_ipv6(address: str) -> bool:
    """Check an IPv6 literal for loopback, unique-local and link-local prefixes."""
    lower = address.lower()
    if lower == "::1" or lower.startswith(PRIVATE_IPV6_PREFIXES):
        return True
    try:
        mapped = ipaddress.IPv6Address(lower.split("%", 1)[0]).ipv4_mapped
    except ValueError:
        return False
    return mapped is not None and is_private_ipv4(str(mapped))


def is_private_address(address: str) -> bool:
    """Check an IPv4 or IPv6 literal; non-literals are never private."""
    try:
        ip = ipaddress.ip_address(address.split("%", 1)[0])
    except ValueError:
        return False
    if ip.version == 4:
        return is_private_ipv4(address)
    return is_private_ipv6(address)


def is_ip_literal(host: str) -> bool:
    try:
        ipaddress.ip_address(host.split("%", 1)[0])
    except ValueError:
        return False
    return True


async def resolve_host(host: str) -> Sequence[str]:
    """Resolve every A/AAAA record of ``host`` using aiohttp's threaded resolver.

    Raises:
        OSError: If the name cannot be resolved

    """
    resolver = ThreadedResolver()
    try:
        records = await resolver.resolve(host, 0, family=socket.AF_UNSPEC)
    finally:
        await resolver.close()
    return [record["host"] for record in records]


class PrivateAddressError(OSError):
    """A connection target resolved to a local or private address."""

    def __init__(self, host: str, addresses: Sequence[str]) -> None:
        super().__init__(errno.EACCES, REASON_PRIVATE)
        self.host = host
        self.addresses = addresses


class PublicAddressResolver(AbstractResolver):
    """aiohttp resolver that refuses hosts resolving to private addresses.

    Every connection is checked against the addresses it would actually use,
    including DNS answers that changed after admission.
    """

    def __init__(self, inner: AbstractResolver | None = None) -> None:
        self._inner = inner or ThreadedResolver()

    async def resolve(
        self, host: str, port: int = 0, family: socket.AddressFamily = socket.AF_INET
    ) -> list[ResolveResult]:
        records = await self._inner.resolve(host, port, family=family)
        private = [
            record["host"] for record in records if is_private_address(record["host"])
        ]
        if private:
            log.warning("Refusing connection to %s: resolved to %s", host, private)
            raise PrivateAddressError(host, private)
        return records

    async def close(self) -> None:
        await self._inner.close()


@dataclass(frozen=True, kw_only=True)
class SsrfGuard:
    """Decides whether targets resolve to addresses that must not be probed.

    DNS failures are treated as disallowed unless ``allow_unresolved`` is set.
    """

    allow_unresolved: bool = False
    lookup: HostLookup = field(default=resolve_host, repr=False)

    async def is_disallowed(self, hostname: str) -> bool:
        """Return True if ``hostname`` is local, private, or unresolvable."""
        return await self.check_host(hostname) is not None

    async def check_host(self, hostname: str) -> str | None:
        """Return the refusal reason for ``hostname``, or None if it is public."""
        host = hostname.lower()
        if host in LOCALHOST_NAMES:
            return REASON_LOCALHOST

        if is_ip_literal(host):
            return REASON_PRIVATE if is_private_address(host) else None

        try:
            addresses = await self.lookup(host)
        except OSError as exc:
            return self._unresolved(host, exc)

        if not addresses:
            return self._unresolved(host, None)

        log.debug("Resolved %s to %s", host, ", ".join(addresses))
        if any(is_private_address(address) for address in addresses):
            return REASON_PRIVATE
        return None

    def _unresolved(self, host: str, exc: OSError | None) -> str | None:
        if self.allow_unresolved:
            log.warning("DNS lookup failed for %s (%s); allowed by config", host, exc)
            return None
        log.info("DNS lookup failed for %s (%s); refusing", host, exc)
        return REASON_UNRESOLVED

    async def validate_batch(self, tests: Sequence[HasUrl]) -> Sequence[BlockedTest]:
        """Check every test and report refused ones with their batch index.

        Returns:
            Findings ordered by index; an empty list means the batch is admissible

        """
        reasons = await asyncio.gather(*(self._check_url(test.url) for test in tests))
        return [
            BlockedTest(index=index, url=test.url, reason=reason)
            for index, (test, reason) in enumerate(zip(tests, reasons, strict=True))
            if reason is not None
        ]

    async def _check_url(self, url: str) -> str | None:
        try:
            host = URL(url).host
        except (ValueError, TypeError):
            return REASON_INVALID_URL
        if not host:
            return REASON_INVALID_URL
        return await self.check_host(host)
