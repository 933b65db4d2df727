# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Session controller: the per-connection decision and fan-out pipeline.

:class:`RelayController` drives a :class:`~mail_relay.session.Session`
through its states in strict sequence::

    connect  -> DNSBL gate (reject listed peers)
    sender   -> record envelope sender
    recipient-> route the domain, accept or refuse this recipient only
    data     -> validate body, score, add headers, group, dispatch

Each public method returns exactly one :class:`~mail_relay.errors.Reply`.
Stage failures are raised internally as :class:`RelayError` subclasses and
normalized here: policy problems become permanent (5xx) replies, delivery
problems and unexpected errors become transient (4xx) replies, degraded
DNSBL/spamd service is invisible to the client.

Example:
    Driving a session without a transport::

        controller = RelayController(config)
        session = controller.open_session("1.2.3.4")
        await controller.connect(session)
        await controller.sender(session, "alice@example.org")
        await controller.recipient(session, "bob@example.com")
        reply = await controller.data(session, raw_message)
"""

from __future__ import annotations

from .delivery import Dispatcher, all_delivered, group_recipients
from .dnsbl import ReputationChecker
from .errors import (
    ACCEPTED,
    OK,
    InfrastructureFailure,
    InvalidTransition,
    PolicyRejection,
    RelayError,
    Reply,
)
from .logger import get_logger
from .models import CLEAN, RelayConfig
from .prometheus import RelayMetrics
from .routing import resolve_recipient
from .scoring import SpamScorer, find_header_end, format_score
from .session import Session, SessionState

BAD_SEQUENCE = Reply(503, "Bad sequence of commands")
TEMPORARY_FAILURE = Reply(451, "Temporary failure, please retry")


class RelayController:
    """Orchestrates gate, routing, scoring and delivery for every session.

    The controller holds no per-session state; the same instance serves all
    concurrent connections.

    Attributes:
        config: Immutable relay configuration.
        gate: DNSBL checker consulted at connect time.
        scorer: Spam scorer used while receiving data.
        dispatcher: HTTP dispatcher for the delivery groups.
        metrics: Prometheus metrics collector.
    """

    def __init__(
        self,
        config: RelayConfig,
        *,
        gate: ReputationChecker | None = None,
        scorer: SpamScorer | None = None,
        dispatcher: Dispatcher | None = None,
        metrics: RelayMetrics | None = None,
    ):
        self.config = config
        spam = config.spam
        self.gate = gate or ReputationChecker(spam.dnsbl_zones, timeout=spam.dnsbl_timeout)
        self.scorer = scorer or SpamScorer.from_settings(spam)
        self.dispatcher = dispatcher or Dispatcher(timeout=config.server.delivery_timeout)
        self.metrics = metrics or RelayMetrics()
        self.logger = get_logger("RelayController")

    @property
    def spam_check(self) -> bool:
        return self.config.spam.enabled

    def _describe(self, session: Session) -> str:
        to = ", ".join(session.recipients) or "unknown"
        return f"From: {session.sender or 'unknown'}, To: {to}, IP: {session.remote_address or 'unknown'}"

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------
    def open_session(self, remote_address: str) -> Session:
        """Create the session for a newly accepted connection."""
        self.metrics.session_opened()
        return Session(remote_address=remote_address)

    def close_session(self, session: Session) -> None:
        self.metrics.session_closed()
        self.logger.debug("Connection from %s closed in state %s", session.remote_address, session.state.value)

    async def connect(self, session: Session) -> Reply:
        """Run the DNSBL gate; a listed peer is refused permanently."""
        self.logger.info("CONNECT - IP: %s", session.remote_address)
        if not self.spam_check:
            session.advance(SessionState.GREETED)
            self.metrics.inc_connection(True)
            return OK

        try:
            result = await self.gate.check(session.remote_address)
        except Exception as exc:
            self.logger.warning("DNSBL check error for %s, allowing: %s", session.remote_address, exc)
            result = CLEAN
        session.reputation = result

        if result.is_listed:
            session.refused = True
            session.advance(SessionState.REJECTED)
            self.metrics.inc_connection(False)
            self.logger.warning(
                "REJECT_CONNECT - IP: %s, DNSBL: %s",
                session.remote_address,
                ", ".join(result.listings),
            )
            return PolicyRejection("IP address blacklisted").reply

        session.advance(SessionState.GREETED)
        self.metrics.inc_connection(True)
        self.logger.debug("Connection accepted from %s", session.remote_address)
        return OK

    async def reset(self, session: Session) -> Reply:
        """Abort the current transaction (RSET)."""
        try:
            session.reset_transaction()
        except InvalidTransition:
            return BAD_SEQUENCE
        return OK

    async def sender(self, session: Session, address: str) -> Reply:
        """Start a transaction for envelope sender ``address``."""
        try:
            if session.state is not SessionState.GREETED:
                session.reset_transaction()
            session.advance(SessionState.SENDER_SET)
        except InvalidTransition as exc:
            self.logger.warning("MAIL FROM rejected for %s: %s", session.remote_address, exc)
            return BAD_SEQUENCE
        session.sender = address
        self.logger.debug("MAIL FROM: %s (IP: %s)", address, session.remote_address)
        return OK

    async def recipient(self, session: Session, address: str) -> Reply:
        """Route ``address``; a refusal affects this recipient only."""
        try:
            if session.state is SessionState.SENDER_SET:
                session.advance(SessionState.ACCUMULATING_RECIPIENTS)
            elif session.state is not SessionState.ACCUMULATING_RECIPIENTS:
                raise InvalidTransition(session.state, SessionState.ACCUMULATING_RECIPIENTS)
        except InvalidTransition as exc:
            self.logger.warning("RCPT TO rejected for %s: %s", session.remote_address, exc)
            return BAD_SEQUENCE

        self.logger.debug("RCPT TO: %s (IP: %s)", address, session.remote_address)
        session.recipients.append(address)
        try:
            target = resolve_recipient(address, self.config.routes)
        except PolicyRejection as exc:
            self.metrics.inc_recipient(False)
            self.logger.info("REJECT_RCPT - %s: %s (IP: %s)", address, exc.message, session.remote_address)
            return exc.reply

        session.recipient_targets[address] = target
        self.metrics.inc_recipient(True)
        self.logger.debug("Recipient %s routed to %s", address, target.url)
        return OK

    async def data(self, session: Session, message: bytes) -> Reply:
        """Process the buffered message body and return the final reply."""
        try:
            session.advance(SessionState.RECEIVING_DATA)
        except InvalidTransition as exc:
            self.logger.warning("DATA rejected for %s: %s", session.remote_address, exc)
            return BAD_SEQUENCE

        self.logger.info("EMAIL_START - %s, Starting data transfer", self._describe(session))
        try:
            return await self._process(session, message)
        except RelayError as exc:
            reply = exc.reply
            if reply.is_permanent:
                session.advance(SessionState.REJECTED)
                self.metrics.inc_message("rejected")
                self.logger.info("EMAIL_REJECTED - %s, %s", self._describe(session), exc.message)
            else:
                session.advance(SessionState.DEFERRED)
                self.metrics.inc_message("deferred")
                self.logger.error("EMAIL_FAILED - %s, %s", self._describe(session), exc.message)
            return reply
        except Exception:
            self.logger.exception("Failed to process email - %s", self._describe(session))
            session.advance(SessionState.DEFERRED)
            self.metrics.inc_message("deferred")
            return TEMPORARY_FAILURE

    async def no_recipients(self, session: Session) -> Reply:
        """Answer DATA when every offered recipient was refused."""
        try:
            session.advance(SessionState.RECEIVING_DATA)
        except InvalidTransition as exc:
            self.logger.warning("DATA rejected for %s: %s", session.remote_address, exc)
            return BAD_SEQUENCE
        rejection = PolicyRejection("No valid recipients", 554)
        session.advance(SessionState.REJECTED)
        self.metrics.inc_message("rejected")
        self.logger.info("EMAIL_REJECTED - %s, %s", self._describe(session), rejection.message)
        return rejection.reply

    # ------------------------------------------------------------------
    # Message stages
    # ------------------------------------------------------------------
    def _validate(self, session: Session, message: bytes) -> None:
        if not message:
            raise PolicyRejection("Empty message")
        if find_header_end(message) is None:
            raise PolicyRejection("Malformed message: missing headers")
        if not session.recipient_targets:
            raise PolicyRejection("No valid recipients", 554)

    async def _score(self, session: Session, message: bytes) -> bytes:
        session.advance(SessionState.SCORING)
        score = await self.scorer.score(message, session.reputation)
        session.spam_score = score
        self.metrics.observe_spam_score(score.score)
        self.logger.info(
            "SPAM_CHECK - %s - Score: %s/%s, From: %s, IP: %s",
            "SPAM" if self.scorer.is_flagged(score) else "CLEAN",
            format_score(score.score),
            format_score(self.scorer.flag_threshold),
            session.sender or "unknown",
            session.remote_address,
        )
        if self.scorer.is_rejected(score):
            raise PolicyRejection("Message rejected as spam")
        return self.scorer.augment(message, score, session.reputation)

    async def _process(self, session: Session, message: bytes) -> Reply:
        self._validate(session, message)
        self.logger.info("EMAIL_RECEIVED - %s, Size: %d bytes", self._describe(session), len(message))

        if self.spam_check:
            message = await self._score(session, message)
        else:
            self.logger.debug("Spam checking disabled, skipping spam filters")

        session.advance(SessionState.DISPATCHING)
        groups = group_recipients(session.recipient_targets)
        results = await self.dispatcher.dispatch(message, groups, sender=session.sender)
        for result in results:
            self.metrics.inc_delivery(result.ok)
        if not all_delivered(results):
            raise InfrastructureFailure("Delivery endpoint temporarily unavailable")

        session.advance(SessionState.COMPLETED)
        self.metrics.inc_message("accepted")
        self.logger.info(
            "EMAIL_ACCEPTED - %s, Successfully processed and forwarded to %d target(s)",
            self._describe(session),
            len(groups),
        )
        return ACCEPTED
