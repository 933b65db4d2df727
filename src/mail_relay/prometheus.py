# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for monitoring the mail relay.

All metrics use the ``gmr_`` prefix (genro-mail-relay).

Metrics exposed:
    - ``gmr_connections_total``: Connections by result (accepted, rejected).
    - ``gmr_recipients_total``: Recipients by result (accepted, rejected).
    - ``gmr_messages_total``: Messages by outcome (accepted, rejected, deferred).
    - ``gmr_deliveries_total``: Webhook deliveries by result (success, failure).
    - ``gmr_spam_score``: Histogram of final spam scores.
    - ``gmr_active_sessions``: Gauge of open SMTP sessions.

Example:
    Accessing metrics via the status API::

        GET /metrics
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

SPAM_SCORE_BUCKETS = (-5.0, 0.0, 2.5, 5.0, 7.5, 10.0, 15.0, 20.0, 30.0)


class RelayMetrics:
    """Prometheus metrics collector for the relay.

    Attributes:
        registry: The Prometheus CollectorRegistry holding all metrics.
        connections: Counter of connections by gate result.
        recipients: Counter of recipients by routing result.
        messages: Counter of messages by final outcome.
        deliveries: Counter of webhook requests by result.
        spam_score: Histogram of final spam scores.
        active_sessions: Gauge of currently open sessions.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """Initialize metrics with an optional custom registry.

        Args:
            registry: Optional Prometheus CollectorRegistry. A new registry is
                created when omitted, so several relays (or tests) never clash.
        """
        self.registry = registry or CollectorRegistry()
        self.connections = Counter(
            "gmr_connections_total",
            "SMTP connections by gate result",
            ["result"],
            registry=self.registry,
        )
        self.recipients = Counter(
            "gmr_recipients_total",
            "Recipients by routing result",
            ["result"],
            registry=self.registry,
        )
        self.messages = Counter(
            "gmr_messages_total",
            "Messages by final outcome",
            ["outcome"],
            registry=self.registry,
        )
        self.deliveries = Counter(
            "gmr_deliveries_total",
            "Webhook deliveries by result",
            ["result"],
            registry=self.registry,
        )
        self.spam_score = Histogram(
            "gmr_spam_score",
            "Final spam score per message",
            buckets=SPAM_SCORE_BUCKETS,
            registry=self.registry,
        )
        self.active_sessions = Gauge(
            "gmr_active_sessions",
            "Currently open SMTP sessions",
            registry=self.registry,
        )

    def inc_connection(self, accepted: bool) -> None:
        self.connections.labels(result="accepted" if accepted else "rejected").inc()

    def inc_recipient(self, accepted: bool) -> None:
        self.recipients.labels(result="accepted" if accepted else "rejected").inc()

    def inc_message(self, outcome: str) -> None:
        """Count a finished message.

        Args:
            outcome: One of "accepted", "rejected" or "deferred".
        """
        self.messages.labels(outcome=outcome).inc()

    def inc_delivery(self, ok: bool) -> None:
        self.deliveries.labels(result="success" if ok else "failure").inc()

    def observe_spam_score(self, score: float) -> None:
        self.spam_score.observe(score)

    def session_opened(self) -> None:
        self.active_sessions.inc()

    def session_closed(self) -> None:
        self.active_sessions.dec()

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)
