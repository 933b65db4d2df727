# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Recipient grouping and concurrent HTTP delivery.

Accepted recipients are partitioned by their resolved :class:`DeliveryTarget`
(URL and credentials compared field by field), so each distinct target
receives the message exactly once. The :class:`Dispatcher` then POSTs the raw
message to every group concurrently::

    POST <target.url>
    Content-Type: message/rfc822
    Content-Length: <len(message)>
    Authorization: Basic base64(user:pass)     # only when a password is set

A group succeeds on any 2xx status. The message as a whole is accepted only
when every group succeeded; a single failure makes the whole message a
transient failure, even though other groups may already have received it.

Example:
    Grouping and dispatching::

        groups = group_recipients(session.recipient_targets)
        results = await Dispatcher(timeout=30).dispatch(message, groups)
        delivered = all(r.ok for r in results)
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

import aiohttp

from . import __version__
from .logger import get_logger
from .models import DeliveryGroup, DeliveryTarget

USER_AGENT = f"genro-mail-relay/{__version__}"
CONTENT_TYPE = "message/rfc822"


def group_recipients(recipient_targets: Mapping[str, DeliveryTarget]) -> list[DeliveryGroup]:
    """Partition recipients by delivery target.

    Groups are returned in order of first appearance; recipients keep their
    acceptance order inside each group.
    """
    grouped: dict[DeliveryTarget, list[str]] = {}
    for address, target in recipient_targets.items():
        grouped.setdefault(target, []).append(address)
    return [DeliveryGroup(target=t, recipients=tuple(r)) for t, r in grouped.items()]


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of one group delivery."""

    group: DeliveryGroup
    ok: bool
    status: int | None = None
    error: str | None = None


def all_delivered(results: Iterable[DeliveryResult]) -> bool:
    """AND-reduction over group outcomes (order independent)."""
    return all(result.ok for result in results)


class Dispatcher:
    """Relays a message to every delivery group concurrently.

    Attributes:
        timeout: Per-request timeout in seconds.
    """

    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout
        self.logger = get_logger("Dispatcher")

    def _headers(self, message: bytes, group: DeliveryGroup, sender: str | None) -> dict[str, str]:
        headers = {
            "Content-Type": CONTENT_TYPE,
            "Content-Length": str(len(message)),
            "User-Agent": USER_AGENT,
            "X-Envelope-To": ", ".join(group.recipients),
        }
        if sender:
            headers["X-Envelope-From"] = sender
        return headers

    async def _post(
        self,
        session: aiohttp.ClientSession,
        message: bytes,
        group: DeliveryGroup,
        sender: str | None,
    ) -> DeliveryResult:
        target = group.target
        auth = None
        if target.credentials is not None:
            user, password = target.credentials
            self.logger.debug("Using basic authentication for %s (user: %s)", target.url, user)
            auth = aiohttp.BasicAuth(user, password)

        started = time.monotonic()
        try:
            async with session.post(
                target.url,
                data=message,
                headers=self._headers(message, group, sender),
                auth=auth,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                if 200 <= resp.status < 300:
                    self.logger.info(
                        "WEBHOOK_SUCCESS - HTTP %d, URL: %s, To: %s (%.0f ms)",
                        resp.status,
                        target.url,
                        ", ".join(group.recipients),
                        (time.monotonic() - started) * 1000,
                    )
                    return DeliveryResult(group=group, ok=True, status=resp.status)
                body = await resp.text(errors="replace")
                self.logger.error(
                    "WEBHOOK_FAILED - HTTP %d, URL: %s, To: %s: %s",
                    resp.status,
                    target.url,
                    ", ".join(group.recipients),
                    body[:500] or "<empty>",
                )
                return DeliveryResult(group=group, ok=False, status=resp.status, error=f"HTTP {resp.status}")
        except asyncio.TimeoutError:
            error = f"Timeout after {self.timeout}s"
        except aiohttp.ClientError as exc:
            error = str(exc) or exc.__class__.__name__
        self.logger.error(
            "WEBHOOK_FAILED - HTTP N/A, URL: %s, To: %s: %s",
            target.url,
            ", ".join(group.recipients),
            error,
        )
        return DeliveryResult(group=group, ok=False, error=error)

    async def dispatch(
        self,
        message: bytes,
        groups: Iterable[DeliveryGroup],
        sender: str | None = None,
    ) -> list[DeliveryResult]:
        """POST ``message`` once per group and return every outcome."""
        groups = list(groups)
        if not groups:
            return []
        async with aiohttp.ClientSession() as session:
            return list(await asyncio.gather(
                *(self._post(session, message, group, sender) for group in groups)
            ))
