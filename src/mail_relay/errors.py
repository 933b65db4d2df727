# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Error taxonomy and SMTP replies for the relay pipeline.

Every stage of the pipeline signals a terminal decision by raising one of the
:class:`RelayError` subclasses. The controller catches them at its boundary
and turns them into exactly one :class:`Reply` for the SMTP client:

- :class:`PolicyRejection`: permanent (5xx) refusal, the sender must not retry.
- :class:`InfrastructureFailure`: transient (4xx) failure, the sender retries.

Degraded services (DNSBL or spamd trouble) never raise; they fail open.
"""

from __future__ import annotations

from typing import NamedTuple


class Reply(NamedTuple):
    """An SMTP reply line as returned to the transport engine."""

    code: int
    text: str

    def __str__(self) -> str:
        return f"{self.code} {self.text}"

    @property
    def is_success(self) -> bool:
        return 200 <= self.code < 400

    @property
    def is_transient(self) -> bool:
        return 400 <= self.code < 500

    @property
    def is_permanent(self) -> bool:
        return 500 <= self.code < 600


OK = Reply(250, "OK")
ACCEPTED = Reply(250, "Message accepted for delivery")


class RelayError(Exception):
    """Base class for errors that map onto an SMTP reply."""

    default_code = 451

    def __init__(self, message: str, code: int | None = None):
        super().__init__(message)
        self.message = message
        self.code = code if code is not None else self.default_code

    @property
    def reply(self) -> Reply:
        return Reply(self.code, self.message)


class PolicyRejection(RelayError):
    """Permanent refusal: blacklisted peer, unroutable domain, bad body, spam."""

    default_code = 550


class InfrastructureFailure(RelayError):
    """Transient failure: a delivery endpoint was unreachable or refused the message."""

    default_code = 451


class InvalidTransition(RuntimeError):
    """Raised when a session is driven through a transition it does not allow."""

    def __init__(self, current, target):
        super().__init__(f"Invalid session transition {current} -> {target}")
        self.current = current
        self.target = target


class ConfigError(ValueError):
    """Raised when the relay configuration cannot be loaded or validated."""
