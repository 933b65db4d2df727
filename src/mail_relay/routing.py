# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Recipient domain routing.

Routes are evaluated in declaration order and the first route with a matching
pattern wins. Three pattern forms exist, no others:

- ``example.com``: exact domain
- ``*``: any domain
- ``*.example.com``: ``example.com`` itself or any subdomain of it

Example:
    Resolving a recipient::

        target = resolve_recipient("Alice@Example.COM", config.routes)
        # matches a route listing "example.com"; raises PolicyRejection otherwise
"""

from __future__ import annotations

from collections.abc import Iterable

from .errors import PolicyRejection
from .models import DeliveryTarget, Route

WILDCARD = "*"
SUBDOMAIN_PREFIX = "*."


def matches_domain(domain: str, pattern: str) -> bool:
    """Return True if ``domain`` matches ``pattern``.

    The comparison is case-sensitive. Callers pass the lowercased domain and
    :class:`~mail_relay.models.Route` lowercases its patterns on load, so
    routing from configuration is case-insensitive end to end.
    """
    if pattern == domain or pattern == WILDCARD:
        return True
    if pattern.startswith(SUBDOMAIN_PREFIX):
        base = pattern[len(SUBDOMAIN_PREFIX):]
        return domain == base or domain.endswith("." + base)
    return False


def find_route(domain: str, routes: Iterable[Route]) -> Route | None:
    """Return the first route with a pattern matching ``domain``, or None."""
    for route in routes:
        if any(matches_domain(domain, pattern) for pattern in route.domains):
            return route
    return None


def split_address(address: str) -> tuple[str, str]:
    """Split a recipient address into local part and lowercased domain.

    Raises:
        PolicyRejection: If the address does not contain exactly one ``@``
            or either side is empty.
    """
    if address.count("@") != 1:
        raise PolicyRejection("Invalid recipient address", 553)
    local, domain = address.split("@")
    if not local or not domain:
        raise PolicyRejection("Invalid recipient address", 553)
    return local, domain.lower()


def resolve_recipient(address: str, routes: Iterable[Route]) -> DeliveryTarget:
    """Return the delivery target for ``address``.

    Raises:
        PolicyRejection: If the address is malformed or no route accepts its
            domain.
    """
    _, domain = split_address(address)
    route = find_route(domain, routes)
    if route is None:
        raise PolicyRejection("Relay not permitted for this domain")
    return route.target
