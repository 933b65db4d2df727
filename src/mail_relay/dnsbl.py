# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""DNS blacklist reputation check for connecting clients.

For every configured zone the reversed client address is prepended to the
zone name and resolved as an ``A`` record. An answer means the address is
listed on that zone; NXDOMAIN (or no answer) means it is not.

All zones are queried concurrently under one aggregate timeout. The check
fails open: a lookup that errors, or that has not finished when the timeout
expires, counts as "not listed". Private and loopback addresses are never
looked up.

Example:
    Checking a peer::

        checker = ReputationChecker(zones=("zen.spamhaus.org",), timeout=3.0)
        result = await checker.check("1.2.3.4")
        if result.is_listed:
            print("listed on", ", ".join(result.listings))
"""

from __future__ import annotations

import asyncio
import ipaddress
from collections.abc import Sequence

import dns.asyncresolver
import dns.exception
import dns.resolver

from .logger import get_logger
from .models import CLEAN, DEFAULT_DNSBL_ZONES, ReputationResult

_REVERSE_SUFFIXES = (".in-addr.arpa", ".ip6.arpa")


def _parse(address: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return None
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def is_exempt(address: str) -> bool:
    """Return True when ``address`` must not be looked up.

    Private and loopback ranges are exempt, as is anything that is not an IP
    address at all (for example a UNIX socket peer).
    """
    ip = _parse(address)
    if ip is None:
        return True
    return ip.is_private or ip.is_loopback


def reverse_address(address: str) -> str:
    """Return the DNSBL query prefix for ``address``.

    IPv4 octets are reversed (``1.2.3.4`` -> ``4.3.2.1``); IPv6 addresses use
    the reversed nibble form.

    Raises:
        ValueError: If ``address`` is not an IP address.
    """
    ip = _parse(address)
    if ip is None:
        raise ValueError(f"Not an IP address: {address!r}")
    pointer = ip.reverse_pointer
    for suffix in _REVERSE_SUFFIXES:
        if pointer.endswith(suffix):
            return pointer[: -len(suffix)]
    return pointer


class ReputationChecker:
    """Concurrent DNSBL lookups for a remote address.

    Attributes:
        zones: DNSBL zone names, in reporting order.
        timeout: Aggregate budget in seconds for all lookups of one address.
    """

    def __init__(
        self,
        zones: Sequence[str] = DEFAULT_DNSBL_ZONES,
        timeout: float = 3.0,
        resolver: dns.asyncresolver.Resolver | None = None,
    ):
        self.zones = tuple(zones)
        self.timeout = timeout
        self._resolver = resolver
        self.logger = get_logger("DNSBL")

    @property
    def resolver(self) -> dns.asyncresolver.Resolver:
        # Reads resolv.conf, so built on first use.
        if self._resolver is None:
            self._resolver = dns.asyncresolver.Resolver()
        return self._resolver

    async def _lookup(self, name: str) -> bool:
        """Resolve ``name``; True when the zone returned an answer."""
        try:
            await self.resolver.resolve(name, "A", lifetime=self.timeout)
        except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
            return False
        except (dns.exception.DNSException, OSError) as exc:
            self.logger.warning("DNSBL lookup for %s failed: %s", name, exc)
            return False
        return True

    async def check(self, address: str) -> ReputationResult:
        """Look ``address`` up on every zone and report where it is listed."""
        if is_exempt(address):
            self.logger.debug("Skipping DNSBL check for exempt address %s", address)
            return CLEAN
        if not self.zones:
            return CLEAN

        prefix = reverse_address(address)
        self.logger.debug("Starting DNSBL check for %s", address)
        tasks = {
            zone: asyncio.ensure_future(self._lookup(f"{prefix}.{zone}"))
            for zone in self.zones
        }
        try:
            done, pending = await asyncio.wait(tasks.values(), timeout=self.timeout)
        finally:
            for task in tasks.values():
                if not task.done():
                    task.cancel()
        if pending:
            self.logger.warning(
                "DNSBL check for %s timed out on %d zone(s), treating them as not listed",
                address,
                len(pending),
            )

        listings = tuple(zone for zone, task in tasks.items() if task in done and task.result())
        if listings:
            self.logger.warning("IP %s found on DNSBL: %s", address, ", ".join(listings))
        else:
            self.logger.debug("IP %s clean on all DNSBL zones", address)
        return ReputationResult(listings=listings)
