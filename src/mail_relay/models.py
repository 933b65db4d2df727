# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Data models for the mail relay.

Configuration models are frozen pydantic models: they are validated once when
the configuration is loaded and are then shared read-only by every session.
Frozen models compare and hash field by field, so a :class:`DeliveryTarget`
can be used directly as a dictionary key when grouping recipients.

Models:
    - DeliveryTarget: Webhook URL plus optional Basic credentials
    - Route: Domain patterns mapped to one delivery target
    - ServerSettings / SpamSettings / ApiSettings: Scalar settings
    - RelayConfig: Complete, immutable relay configuration

Value types produced while a message flows through the pipeline:
    - ReputationResult: DNSBL outcome for the connecting address
    - SpamScore: Score and fired tests for one message
    - DeliveryGroup: Recipients sharing one delivery target
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_AUTH_USER = "actionmailbox"
DEFAULT_DNSBL_ZONES = ("zen.spamhaus.org", "bl.spamcop.net")
DEFAULT_MAX_SIZE = 25 * 1024 * 1024


class DeliveryTarget(BaseModel):
    """HTTP endpoint a message is relayed to.

    Equality is field-wise over ``url``, ``auth_user`` and ``auth_pass``: two
    targets with the same URL but different credentials are distinct.

    Attributes:
        url: Webhook URL receiving ``message/rfc822`` POSTs.
        auth_user: Basic auth username; ``actionmailbox`` is used when unset.
        auth_pass: Basic auth password. Credentials are sent only when set.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    url: Annotated[str, Field(min_length=1, description="Webhook URL")]
    auth_user: Annotated[
        str | None,
        Field(default=None, description="Basic auth username")
    ]
    auth_pass: Annotated[
        str | None,
        Field(default=None, description="Basic auth password")
    ]

    @property
    def credentials(self) -> tuple[str, str] | None:
        """Return the ``(user, password)`` pair to send, or None."""
        if not self.auth_pass:
            return None
        return (self.auth_user or DEFAULT_AUTH_USER, self.auth_pass)


class Route(BaseModel):
    """Domain patterns resolved to a single delivery target.

    Patterns are an exact domain, ``*`` (any domain) or ``*.base`` (``base``
    and all of its subdomains). Patterns are lowercased on load and compared
    with the lowercased recipient domain.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    domains: Annotated[tuple[str, ...], Field(min_length=1)]
    target: DeliveryTarget

    @field_validator("domains", mode="before")
    @classmethod
    def split_patterns(cls, v):
        """Accept a comma-separated string as well as a sequence."""
        if isinstance(v, str):
            v = v.split(",")
        return tuple(p.strip().lower() for p in v if p and p.strip())


class ServerSettings(BaseModel):
    """SMTP listener settings."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    host: str = "0.0.0.0"
    port: Annotated[int, Field(default=25, ge=0, le=65535)]
    hostname: str | None = None
    max_size: Annotated[int, Field(default=DEFAULT_MAX_SIZE, gt=0)]
    delivery_timeout: Annotated[float, Field(default=30.0, gt=0)]


class SpamSettings(BaseModel):
    """Spam filtering settings: DNSBL zones, spamd endpoint and thresholds."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled: bool = True
    host: str = "localhost"
    port: Annotated[int, Field(default=783, ge=1, le=65535)]
    timeout: Annotated[float, Field(default=10.0, gt=0)]
    flag_threshold: float = 5.0
    reject_threshold: float = 10.0
    dnsbl_zones: tuple[str, ...] = DEFAULT_DNSBL_ZONES
    dnsbl_timeout: Annotated[float, Field(default=3.0, gt=0)]

    @field_validator("dnsbl_zones", mode="before")
    @classmethod
    def split_zones(cls, v):
        if isinstance(v, str):
            v = v.split(",")
        return tuple(z.strip() for z in v if z and z.strip())


class ApiSettings(BaseModel):
    """Status/metrics HTTP API settings."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled: bool = False
    host: str = "127.0.0.1"
    port: Annotated[int, Field(default=8025, ge=0, le=65535)]
    token: str | None = None


class RelayConfig(BaseModel):
    """Complete relay configuration, immutable after load."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    routes: Annotated[tuple[Route, ...], Field(min_length=1)]
    server: ServerSettings = ServerSettings()
    spam: SpamSettings = SpamSettings()
    api: ApiSettings = ApiSettings()

    @model_validator(mode="after")
    def thresholds_are_ordered(self) -> "RelayConfig":
        if self.spam.reject_threshold < self.spam.flag_threshold:
            raise ValueError("spam reject_threshold must not be lower than flag_threshold")
        return self


@dataclass(frozen=True)
class ReputationResult:
    """DNSBL outcome for one remote address; ``listings`` keeps zone order."""

    listings: tuple[str, ...] = ()

    @property
    def is_listed(self) -> bool:
        return bool(self.listings)


CLEAN = ReputationResult()


@dataclass(frozen=True)
class SpamScore:
    """Spam score of one message and the tests that fired."""

    score: float = 0.0
    tests: tuple[str, ...] = ()


@dataclass(frozen=True)
class DeliveryGroup:
    """Accepted recipients that share one delivery target."""

    target: DeliveryTarget
    recipients: tuple[str, ...]
