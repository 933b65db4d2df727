# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Spam score composition and header augmentation.

The final score of a message is the spamd score plus a fixed penalty for
every DNSBL zone the connecting address is listed on::

    final = spamd_score + 3.0 * listed_zone_count

A final score at or above the reject threshold rejects the message before any
delivery is attempted. Otherwise ``X-Spam-*`` headers are inserted right
before the blank line that ends the header block:

    X-Spam-Score: 7.5
    X-Spam-Status: Yes, score=7.5 required=5
    X-Spam-Tests: BAYES_99, DNSBL_LISTED(zen.spamhaus.org)
    X-Spam-DNSBL: Listed on zen.spamhaus.org
"""

from __future__ import annotations

from .logger import get_logger
from .models import CLEAN, ReputationResult, SpamScore, SpamSettings
from .spamd import SpamdClient

DNSBL_PENALTY = 3.0

logger = get_logger("SpamScorer")


def combine_score(daemon: SpamScore, reputation: ReputationResult | None) -> SpamScore:
    """Add the DNSBL penalty and synthetic test to the spamd result."""
    if reputation is None or not reputation.is_listed:
        return daemon
    zones = reputation.listings
    return SpamScore(
        score=daemon.score + DNSBL_PENALTY * len(zones),
        tests=daemon.tests + (f"DNSBL_LISTED({','.join(zones)})",),
    )


def format_score(value: float) -> str:
    """Render a score the way it appears in headers (``12.0`` -> ``12``)."""
    return f"{value:g}"


def find_header_end(message: bytes) -> tuple[int, bytes] | None:
    """Locate the blank line ending the header block.

    Returns:
        ``(index, newline)`` where ``index`` is the offset of the line break
        terminating the last header line, or None when the message has no
        header/body separator.
    """
    crlf = message.find(b"\r\n\r\n")
    lf = message.find(b"\n\n")
    if crlf != -1 and (lf == -1 or crlf < lf):
        return crlf, b"\r\n"
    if lf != -1:
        return lf, b"\n"
    return None


def add_spam_headers(
    message: bytes,
    score: SpamScore,
    flag_threshold: float,
    reputation: ReputationResult | None = None,
) -> bytes:
    """Return a copy of ``message`` with ``X-Spam-*`` headers added.

    Messages without a header/body separator are returned unchanged.
    """
    located = find_header_end(message)
    if located is None:
        return message
    index, newline = located

    rendered = format_score(score.score)
    flagged = "Yes" if score.score >= flag_threshold else "No"
    headers = [
        f"X-Spam-Score: {rendered}",
        f"X-Spam-Status: {flagged}, score={rendered} required={format_score(flag_threshold)}",
        f"X-Spam-Tests: {', '.join(score.tests)}",
    ]
    if reputation is not None and reputation.is_listed:
        headers.append(f"X-Spam-DNSBL: Listed on {', '.join(reputation.listings)}")

    block = b"".join(newline + h.encode("utf-8") for h in headers)
    return message[:index] + block + message[index:]


class SpamScorer:
    """Scores messages and applies the flag/reject policy.

    Attributes:
        client: spamd client used for the content round trip.
        flag_threshold: Score from which ``X-Spam-Status`` says ``Yes``.
        reject_threshold: Score from which the message is refused.
    """

    def __init__(self, client: SpamdClient, flag_threshold: float = 5.0, reject_threshold: float = 10.0):
        self.client = client
        self.flag_threshold = flag_threshold
        self.reject_threshold = reject_threshold

    @classmethod
    def from_settings(cls, settings: SpamSettings) -> "SpamScorer":
        client = SpamdClient(settings.host, settings.port, timeout=settings.timeout)
        return cls(client, settings.flag_threshold, settings.reject_threshold)

    async def score(self, message: bytes, reputation: ReputationResult | None) -> SpamScore:
        """Run spamd on ``message`` and fold in the DNSBL result."""
        daemon = await self.client.check(message)
        result = combine_score(daemon, reputation)
        logger.debug("Spam tests: %s", ", ".join(result.tests) or "-")
        return result

    def is_rejected(self, score: SpamScore) -> bool:
        return score.score >= self.reject_threshold

    def is_flagged(self, score: SpamScore) -> bool:
        return score.score >= self.flag_threshold

    def augment(self, message: bytes, score: SpamScore, reputation: ReputationResult | None) -> bytes:
        return add_spam_headers(message, score, self.flag_threshold, reputation or CLEAN)
