"""Logging utilities for the mail relay.

This module provides a centralized logging helper. The actual logging setup
(level, handlers, format) is done once by :func:`configure_logging` from the
command-line entry point to avoid duplicate handlers.

Example:
    Typical usage in a module::

        from mail_relay.logger import get_logger

        logger = get_logger("Dispatcher")
        logger.info("WEBHOOK_SUCCESS - HTTP 200")
"""

import logging

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str = "MailRelay") -> logging.Logger:
    """Retrieve a logger instance.

    No handlers or formatters are attached here; that responsibility lies
    with the application entry point.

    Args:
        name: The logger name. Defaults to "MailRelay".

    Returns:
        A ``logging.Logger`` instance bound to the given name.
    """
    return logging.getLogger(name)


def configure_logging(level: str = "INFO", verbose: bool = False) -> None:
    """Configure the root logger for the process.

    Args:
        level: Level name used when ``verbose`` is off.
        verbose: Force DEBUG output.
    """
    resolved = logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=resolved,
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        force=True,
    )
