# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Configuration loader for the mail relay.

Settings come from three layers, later layers winning:

1. An INI file (``--config`` or ``MAIL_RELAY_CONFIG``)
2. ``MAIL_RELAY_*`` environment variables
3. Explicit overrides (command-line options)

The merged values are validated into an immutable
:class:`~mail_relay.models.RelayConfig`.

Example:
    Configuration file format (config.ini)::

        [server]
        host = 0.0.0.0
        port = 25
        hostname = mx.example.com
        max_size = 26214400
        delivery_timeout = 30

        [spam]
        enabled = true
        host = spamassassin
        port = 783
        flag_threshold = 5.0
        reject_threshold = 10.0
        dnsbl_zones = zen.spamhaus.org, bl.spamcop.net

        [api]
        enabled = true
        port = 8025
        token = secret

        # One section per route, evaluated top to bottom
        [domains: example.com, *.example.org]
        url = https://app.example.com/rails/action_mailbox/relay/inbound_emails
        auth_user = actionmailbox
        auth_pass = secret

        [domains: *]
        url = https://fallback.example.net/inbound

    Loading it::

        config = load_config("/etc/mail-relay/config.ini")
"""

from __future__ import annotations

import configparser
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .errors import ConfigError
from .logger import get_logger
from .models import RelayConfig

ENV_PREFIX = "MAIL_RELAY_"
ROUTE_SECTION_PREFIX = "domains:"
SETTINGS_SECTIONS = ("server", "spam", "api")
ROUTE_KEYS = ("url", "auth_user", "auth_pass")

ENV_SETTINGS: dict[str, tuple[str, str]] = {
    "HOST": ("server", "host"),
    "PORT": ("server", "port"),
    "HOSTNAME": ("server", "hostname"),
    "MAX_SIZE": ("server", "max_size"),
    "DELIVERY_TIMEOUT": ("server", "delivery_timeout"),
    "SPAM_CHECK": ("spam", "enabled"),
    "SPAM_HOST": ("spam", "host"),
    "SPAM_PORT": ("spam", "port"),
    "SPAM_TIMEOUT": ("spam", "timeout"),
    "SPAM_THRESHOLD": ("spam", "flag_threshold"),
    "SPAM_REJECT": ("spam", "reject_threshold"),
    "DNSBL_ZONES": ("spam", "dnsbl_zones"),
    "API_ENABLED": ("api", "enabled"),
    "API_HOST": ("api", "host"),
    "API_PORT": ("api", "port"),
    "API_TOKEN": ("api", "token"),
}

logger = get_logger("ConfigLoader")


class RelayConfigLoader:
    """Read relay settings and routes from an INI file."""

    def __init__(self, config_path: str | Path):
        """Initialize with path to the INI file."""
        self.config_path = Path(config_path)
        self.config = configparser.ConfigParser(interpolation=None)

    def load_config(self) -> None:
        """Load the configuration file."""
        if not self.config_path.exists():
            raise FileNotFoundError(f"Config file not found: {self.config_path}")
        self.config.read(self.config_path)

    def parse_settings(self) -> dict[str, dict[str, str]]:
        """Return the ``[server]``, ``[spam]`` and ``[api]`` sections as dicts."""
        settings: dict[str, dict[str, str]] = {}
        for section in SETTINGS_SECTIONS:
            if self.config.has_section(section):
                settings[section] = dict(self.config.items(section))
        for section in self.config.sections():
            if section not in SETTINGS_SECTIONS and not section.startswith(ROUTE_SECTION_PREFIX):
                logger.warning("Ignoring unknown section [%s] in %s", section, self.config_path)
        return settings

    def parse_routes(self) -> list[dict[str, Any]]:
        """Parse ``[domains: ...]`` sections in declaration order.

        Returns:
            List of route dictionaries with keys: domains, target
        """
        routes: list[dict[str, Any]] = []
        for section in self.config.sections():
            if not section.startswith(ROUTE_SECTION_PREFIX):
                continue
            patterns = section[len(ROUTE_SECTION_PREFIX):]
            values = dict(self.config.items(section))
            unknown = set(values) - set(ROUTE_KEYS)
            if unknown:
                raise ConfigError(f"Unknown keys in [{section}]: {', '.join(sorted(unknown))}")
            if not values.get("url"):
                raise ConfigError(f"Route [{section}] missing required field 'url'")
            target = {key: values[key] for key in ROUTE_KEYS if values.get(key)}
            routes.append({"domains": patterns, "target": target})
        logger.debug("Parsed %d route(s) from %s", len(routes), self.config_path)
        return routes


def _env_settings(environ: Mapping[str, str]) -> dict[str, dict[str, str]]:
    settings: dict[str, dict[str, str]] = {}
    for name, (section, key) in ENV_SETTINGS.items():
        value = environ.get(ENV_PREFIX + name)
        if value not in (None, ""):
            settings.setdefault(section, {})[key] = value
    return settings


def _webhook_route(url: str | None, user: str | None, password: str | None) -> dict[str, Any] | None:
    if not url:
        return None
    target: dict[str, Any] = {"url": url}
    if user:
        target["auth_user"] = user
    if password:
        target["auth_pass"] = password
    return {"domains": "*", "target": target}


def load_config(
    config_path: str | Path | None = None,
    *,
    environ: Mapping[str, str] | None = None,
    overrides: Mapping[str, Mapping[str, Any]] | None = None,
    webhook_url: str | None = None,
    auth_user: str | None = None,
    auth_pass: str | None = None,
) -> RelayConfig:
    """Build the relay configuration from file, environment and overrides.

    Args:
        config_path: INI file path; falls back to ``MAIL_RELAY_CONFIG``.
        environ: Environment mapping (defaults to ``os.environ``).
        overrides: Per-section values that win over file and environment.
            ``None`` values are ignored.
        webhook_url: Catch-all webhook used only when the file defines no
            routes (falls back to ``MAIL_RELAY_WEBHOOK_URL``).
        auth_user: Basic auth user for ``webhook_url``.
        auth_pass: Basic auth password for ``webhook_url``.

    Returns:
        The validated, immutable configuration.

    Raises:
        ConfigError: If the file is missing or the merged values are invalid.
    """
    environ = os.environ if environ is None else environ
    config_path = config_path or environ.get(ENV_PREFIX + "CONFIG")

    settings: dict[str, dict[str, Any]] = {}
    routes: list[dict[str, Any]] = []
    if config_path:
        loader = RelayConfigLoader(config_path)
        try:
            loader.load_config()
        except (FileNotFoundError, configparser.Error) as exc:
            raise ConfigError(str(exc)) from exc
        settings = loader.parse_settings()
        routes = loader.parse_routes()

    for section, values in _env_settings(environ).items():
        settings.setdefault(section, {}).update(values)
    for section, values in (overrides or {}).items():
        settings.setdefault(section, {}).update({k: v for k, v in values.items() if v is not None})

    # The single-webhook route only stands in for an empty route table.
    fallback = None if routes else _webhook_route(
        webhook_url or environ.get(ENV_PREFIX + "WEBHOOK_URL"),
        auth_user or environ.get(ENV_PREFIX + "AUTH_USER"),
        auth_pass or environ.get(ENV_PREFIX + "AUTH_PASS"),
    )
    if fallback is not None:
        routes.append(fallback)

    try:
        config = RelayConfig(routes=routes, **settings)
    except ValidationError as exc:
        raise ConfigError(f"Invalid relay configuration: {exc}") from exc
    logger.info("Loaded %d route(s)%s", len(config.routes), f" from {config_path}" if config_path else "")
    return config
