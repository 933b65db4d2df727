# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Per-connection session state.

A :class:`Session` is created when a connection is accepted and discarded
when it closes. Its state follows an explicit finite state machine::

    Connecting -> Greeted -> SenderSet -> AccumulatingRecipients
        -> ReceivingData -> Scoring -> Dispatching -> Completed

``Rejected`` is reachable from Connecting (DNSBL), ReceivingData (bad body,
no recipients) and Scoring (spam). ``Deferred`` ends a transaction whose
delivery failed transiently. A refused recipient does not change the state.
Once a transaction has ended, the same connection may start another one from
``Greeted`` (MAIL FROM or RSET), unless the connection itself was refused.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from .errors import InvalidTransition
from .models import DeliveryTarget, ReputationResult, SpamScore


class SessionState(str, Enum):
    """Lifecycle states of a relay session."""

    CONNECTING = "connecting"
    GREETED = "greeted"
    SENDER_SET = "sender_set"
    ACCUMULATING_RECIPIENTS = "accumulating_recipients"
    RECEIVING_DATA = "receiving_data"
    SCORING = "scoring"
    DISPATCHING = "dispatching"
    COMPLETED = "completed"
    REJECTED = "rejected"
    DEFERRED = "deferred"


S = SessionState

TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    S.CONNECTING: frozenset({S.GREETED, S.REJECTED}),
    S.GREETED: frozenset({S.SENDER_SET}),
    S.SENDER_SET: frozenset({S.ACCUMULATING_RECIPIENTS}),
    S.ACCUMULATING_RECIPIENTS: frozenset({S.ACCUMULATING_RECIPIENTS, S.RECEIVING_DATA}),
    S.RECEIVING_DATA: frozenset({S.SCORING, S.DISPATCHING, S.REJECTED, S.DEFERRED}),
    S.SCORING: frozenset({S.DISPATCHING, S.REJECTED, S.DEFERRED}),
    S.DISPATCHING: frozenset({S.COMPLETED, S.DEFERRED}),
    S.COMPLETED: frozenset(),
    S.REJECTED: frozenset(),
    S.DEFERRED: frozenset(),
}


@dataclass
class Session:
    """State accumulated for one SMTP connection.

    Fields that are computed later in the pipeline start as None.

    Attributes:
        remote_address: Peer IP address as reported by the transport.
        state: Current :class:`SessionState`.
        reputation: DNSBL result, set once at connect time.
        sender: Envelope sender of the current transaction.
        recipients: Every recipient offered in the current transaction.
        recipient_targets: Accepted recipients mapped to their target.
        spam_score: Final score of the current message.
        refused: True when the connection was rejected at connect time.
    """

    remote_address: str
    state: SessionState = SessionState.CONNECTING
    reputation: ReputationResult | None = None
    sender: str | None = None
    recipients: list[str] = field(default_factory=list)
    recipient_targets: dict[str, DeliveryTarget] = field(default_factory=dict)
    spam_score: SpamScore | None = None
    refused: bool = False

    def advance(self, target: SessionState) -> None:
        """Move to ``target`` or raise :class:`InvalidTransition`."""
        if target not in TRANSITIONS[self.state]:
            raise InvalidTransition(self.state, target)
        self.state = target

    def reset_transaction(self) -> None:
        """Drop envelope and message state and return to ``Greeted``."""
        if self.refused or self.state is SessionState.CONNECTING:
            raise InvalidTransition(self.state, SessionState.GREETED)
        self.sender = None
        self.recipients = []
        self.recipient_targets = {}
        self.spam_score = None
        self.state = SessionState.GREETED

    @property
    def accepted_recipients(self) -> list[str]:
        return list(self.recipient_targets)
