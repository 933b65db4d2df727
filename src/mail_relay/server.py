# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Process entry point: SMTP listener plus optional status API.

The SMTP side runs in aiosmtpd's controller thread with its own event loop;
the status API (when enabled) is served by uvicorn on the calling loop. Both
are stopped on SIGINT/SIGTERM.

Usage:
    mail-relay serve --config /etc/mail-relay/config.ini
"""

from __future__ import annotations

import asyncio
import signal
import socket

import uvicorn

from .api import create_app
from .controller import RelayController
from .logger import get_logger
from .models import RelayConfig
from .prometheus import RelayMetrics
from .smtp_handler import RelayHandler, RelaySMTPController

logger = get_logger("Server")


def build_smtp_controller(config: RelayConfig, controller: RelayController) -> RelaySMTPController:
    """Create (without starting) the aiosmtpd controller for ``config``."""
    server = config.server
    return RelaySMTPController(
        RelayHandler(controller),
        hostname=server.host,
        port=server.port,
        server_hostname=server.hostname or socket.getfqdn(),
        data_size_limit=server.max_size,
    )


def log_startup(config: RelayConfig) -> None:
    server, spam = config.server, config.spam
    logger.info("=== Mail relay starting ===")
    logger.info("Listening on: %s:%d", server.host, server.port)
    for route in config.routes:
        logger.info(
            "Route: %s -> %s (auth: %s)",
            ", ".join(route.domains),
            route.target.url,
            "enabled" if route.target.credentials else "disabled",
        )
    logger.info("Max message size: %dMB", round(server.max_size / 1024 / 1024))
    logger.info("Delivery timeout: %ss", server.delivery_timeout)
    if spam.enabled:
        logger.info("Spam filtering: enabled")
        logger.info("  SpamAssassin: %s:%d", spam.host, spam.port)
        logger.info("  DNSBL services: %s", ", ".join(spam.dnsbl_zones) or "-")
        logger.info("  Spam threshold: %s (flag), %s (reject)", spam.flag_threshold, spam.reject_threshold)
    else:
        logger.info("Spam filtering: disabled")


async def run(config: RelayConfig, metrics: RelayMetrics | None = None) -> None:
    """Serve until SIGINT/SIGTERM is received."""
    metrics = metrics or RelayMetrics()
    controller = RelayController(config, metrics=metrics)
    smtp = build_smtp_controller(config, controller)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    log_startup(config)
    smtp.start()
    api_server: uvicorn.Server | None = None
    api_task: asyncio.Task | None = None
    try:
        if config.api.enabled:
            app = create_app(metrics, config=config, api_token=config.api.token)
            api_server = uvicorn.Server(
                uvicorn.Config(app, host=config.api.host, port=config.api.port, log_level="warning")
            )
            # Signals are handled here, not by uvicorn.
            api_server.install_signal_handlers = lambda: None
            api_task = asyncio.create_task(api_server.serve())
            logger.info("Status API on http://%s:%d", config.api.host, config.api.port)
        logger.info("=== Server ready - waiting for connections ===")
        await stop.wait()
    finally:
        logger.info("Shutting down...")
        if api_server is not None and api_task is not None:
            api_server.should_exit = True
            await api_task
        smtp.stop()
        logger.info("Server closed")
