# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Minimal asyncio client for the SpamAssassin daemon (spamd).

One TCP round trip per message using the ``SYMBOLS`` command of the SPAMC/1.5
protocol. The request carries an exact ``Content-length`` and the raw message
bytes (no chunk framing); the response is read until spamd closes the
connection::

    SYMBOLS SPAMC/1.5\\r\\n
    Content-length: 1234\\r\\n
    \\r\\n
    <1234 bytes>

    SPAMD/1.1 0 EX_OK\\r\\n
    Content-length: 27\\r\\n
    Spam: True ; 15.5 / 5.0\\r\\n
    \\r\\n
    BAYES_99,HTML_MESSAGE,URIBL_BLACK

The client fails open: connection errors, timeouts and unparsable responses
all degrade to ``SpamScore(0.0, ())`` and are logged as warnings.
"""

from __future__ import annotations

import asyncio
import re

from .logger import get_logger
from .models import SpamScore

SPAMC_COMMAND = "SYMBOLS"
SPAMC_VERSION = "SPAMC/1.5"
SPAM_LINE_RE = re.compile(r"Spam: (True|False) ; (-?\d+\.?\d*) / (-?\d+\.?\d*)")

logger = get_logger("Spamd")


def build_request(message: bytes) -> bytes:
    """Return the complete spamd request for ``message``."""
    header = (
        f"{SPAMC_COMMAND} {SPAMC_VERSION}\r\n"
        f"Content-length: {len(message)}\r\n"
        "\r\n"
    )
    return header.encode("ascii") + message


def _split_tests(line: str) -> tuple[str, ...]:
    return tuple(t.strip() for t in line.split(",") if t.strip())


def parse_response(data: bytes) -> SpamScore:
    """Extract score and fired tests from a raw spamd ``SYMBOLS`` response.

    A response without a ``Spam:`` status line is treated as unparsable and
    yields the zero score.
    """
    text = data.decode("utf-8", errors="replace")
    lines = text.replace("\r\n", "\n").split("\n")

    for index, line in enumerate(lines):
        match = SPAM_LINE_RE.search(line)
        if match:
            break
    else:
        logger.warning("Unparsable spamd response (%d bytes), assuming score 0", len(data))
        return SpamScore()

    score = float(match.group(2))
    rest = lines[index + 1:]
    if "" in rest:
        body = [line for line in rest[rest.index("") + 1:] if line.strip()]
        if body:
            return SpamScore(score=score, tests=_split_tests(",".join(body)))
    tests = next((_split_tests(line) for line in rest if "," in line), ())
    return SpamScore(score=score, tests=tests)


class SpamdClient:
    """Client for one spamd endpoint.

    Attributes:
        host: spamd hostname.
        port: spamd TCP port (783 by default).
        timeout: Budget in seconds for the whole round trip.
    """

    def __init__(self, host: str = "localhost", port: int = 783, timeout: float = 10.0):
        self.host = host
        self.port = port
        self.timeout = timeout

    async def _round_trip(self, message: bytes) -> bytes:
        reader, writer = await asyncio.open_connection(self.host, self.port)
        try:
            writer.write(build_request(message))
            await writer.drain()
            return await reader.read()
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass

    async def check(self, message: bytes) -> SpamScore:
        """Score ``message``; never raises for transport or protocol errors."""
        logger.debug("Starting SpamAssassin check (%d bytes)", len(message))
        try:
            response = await asyncio.wait_for(self._round_trip(message), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning("SpamAssassin check timed out after %s seconds", self.timeout)
            return SpamScore()
        except OSError as exc:
            logger.warning("SpamAssassin error (%s:%s): %s", self.host, self.port, exc)
            return SpamScore()

        result = parse_response(response)
        logger.debug("SpamAssassin result: score=%s, tests=%d", result.score, len(result.tests))
        return result
