import pytest

from mail_relay.controller import RelayController
from mail_relay.delivery import DeliveryResult
from mail_relay.models import CLEAN, RelayConfig, ReputationResult, SpamScore
from mail_relay.prometheus import RelayMetrics
from mail_relay.scoring import SpamScorer
from mail_relay.session import SessionState


MESSAGE = b"From: alice@example.org\r\nSubject: hello\r\n\r\nHi Bob\r\n"
PUBLIC_IP = "1.2.3.4"


class FakeGate:
    def __init__(self, result=CLEAN, error=None):
        self.result = result
        self.error = error
        self.checked = []

    async def check(self, address):
        self.checked.append(address)
        if self.error is not None:
            raise self.error
        return self.result


class FakeSpamd:
    def __init__(self, score=SpamScore()):
        self.result = score
        self.calls = 0

    async def check(self, message):
        self.calls += 1
        return self.result


class FakeDispatcher:
    def __init__(self, failing_urls=()):
        self.failing_urls = set(failing_urls)
        self.calls = []

    async def dispatch(self, message, groups, sender=None):
        self.calls.append({"message": message, "groups": list(groups), "sender": sender})
        return [
            DeliveryResult(group=g, ok=g.target.url not in self.failing_urls, status=200)
            for g in groups
        ]


def make_config(spam_enabled=True):
    return RelayConfig(
        routes=[
            {"domains": "example.com", "target": {"url": "https://a.test/in", "auth_pass": "pw"}},
            {"domains": "*.example.org", "target": {"url": "https://b.test/in"}},
        ],
        spam={"enabled": spam_enabled, "flag_threshold": 5.0, "reject_threshold": 10.0},
    )


@pytest.fixture
def relay():
    def build(gate=None, spam_score=SpamScore(), failing_urls=(), spam_enabled=True):
        gate = gate or FakeGate()
        spamd = FakeSpamd(spam_score)
        dispatcher = FakeDispatcher(failing_urls)
        controller = RelayController(
            make_config(spam_enabled),
            gate=gate,
            scorer=SpamScorer(spamd, 5.0, 10.0),
            dispatcher=dispatcher,
            metrics=RelayMetrics(),
        )
        controller.fake_spamd = spamd
        return controller, dispatcher
    return build


async def open_transaction(controller, *recipients, address=PUBLIC_IP):
    session = controller.open_session(address)
    assert (await controller.connect(session)).code == 250
    assert (await controller.sender(session, "alice@example.org")).code == 250
    replies = [await controller.recipient(session, rcpt) for rcpt in recipients]
    return session, replies


@pytest.mark.asyncio
async def test_clean_message_is_delivered(relay):
    controller, dispatcher = relay(spam_score=SpamScore(1.0, ("BAYES_00",)))
    session, replies = await open_transaction(controller, "bob@example.com")
    assert [str(r) for r in replies] == ["250 OK"]

    reply = await controller.data(session, MESSAGE)

    assert str(reply) == "250 Message accepted for delivery"
    assert session.state is SessionState.COMPLETED
    call = dispatcher.calls[0]
    assert call["sender"] == "alice@example.org"
    assert [g.recipients for g in call["groups"]] == [("bob@example.com",)]
    assert b"X-Spam-Status: No, score=1 required=5\r\n" in call["message"]
    assert call["message"].endswith(b"\r\n\r\nHi Bob\r\n")


@pytest.mark.asyncio
async def test_listed_peer_is_refused_at_connect(relay):
    gate = FakeGate(ReputationResult(("zen.spamhaus.org",)))
    controller, dispatcher = relay(gate=gate)
    session = controller.open_session(PUBLIC_IP)

    reply = await controller.connect(session)

    assert str(reply) == "550 IP address blacklisted"
    assert session.state is SessionState.REJECTED
    assert str(await controller.sender(session, "alice@example.org")) == "503 Bad sequence of commands"
    assert dispatcher.calls == []
    assert controller.fake_spamd.calls == 0


@pytest.mark.asyncio
async def test_gate_failure_fails_open(relay):
    controller, _ = relay(gate=FakeGate(error=RuntimeError("resolver exploded")))
    session = controller.open_session(PUBLIC_IP)
    assert (await controller.connect(session)).code == 250
    assert session.state is SessionState.GREETED


@pytest.mark.asyncio
async def test_unrouted_recipient_is_refused_individually(relay):
    controller, dispatcher = relay()
    session, replies = await open_transaction(controller, "bob@example.com", "eve@unknown.test", "carol@mx.example.org")

    assert [str(r) for r in replies] == [
        "250 OK",
        "550 Relay not permitted for this domain",
        "250 OK",
    ]
    assert session.accepted_recipients == ["bob@example.com", "carol@mx.example.org"]

    assert (await controller.data(session, MESSAGE)).code == 250
    groups = dispatcher.calls[0]["groups"]
    assert sorted(r for g in groups for r in g.recipients) == ["bob@example.com", "carol@mx.example.org"]
    assert len(groups) == 2


@pytest.mark.asyncio
async def test_malformed_recipient(relay):
    controller, _ = relay()
    _, replies = await open_transaction(controller, "not-an-address")
    assert str(replies[0]) == "553 Invalid recipient address"


@pytest.mark.asyncio
async def test_recipients_sharing_a_target_get_one_post(relay):
    controller, dispatcher = relay()
    session, _ = await open_transaction(controller, "bob@example.com", "carol@example.com")
    await controller.data(session, MESSAGE)
    groups = dispatcher.calls[0]["groups"]
    assert len(groups) == 1
    assert groups[0].recipients == ("bob@example.com", "carol@example.com")


@pytest.mark.asyncio
async def test_spam_above_reject_threshold(relay):
    controller, dispatcher = relay(spam_score=SpamScore(12.0, ("BAYES_99",)))
    session, _ = await open_transaction(controller, "bob@example.com")

    reply = await controller.data(session, MESSAGE)

    assert str(reply) == "550 Message rejected as spam"
    assert session.state is SessionState.REJECTED
    assert dispatcher.calls == []


@pytest.mark.asyncio
async def test_dnsbl_penalty_can_push_message_over_reject(relay):
    gate = FakeGate(ReputationResult(("a.test", "b.test", "c.test")))
    controller, dispatcher = relay(gate=gate, spam_score=SpamScore(1.0, ()))
    session = controller.open_session(PUBLIC_IP)
    # A listed peer is refused at connect, so feed the reputation in directly.
    session.state = SessionState.GREETED
    session.reputation = gate.result
    await controller.sender(session, "alice@example.org")
    await controller.recipient(session, "bob@example.com")

    reply = await controller.data(session, MESSAGE)

    assert reply.code == 550
    assert session.spam_score.score == 10.0
    assert "DNSBL_LISTED(a.test,b.test,c.test)" in session.spam_score.tests


@pytest.mark.asyncio
async def test_flagged_message_is_still_delivered(relay):
    controller, dispatcher = relay(spam_score=SpamScore(7.5, ("BAYES_80",)))
    session, _ = await open_transaction(controller, "bob@example.com")

    assert (await controller.data(session, MESSAGE)).code == 250
    relayed = dispatcher.calls[0]["message"]
    assert b"X-Spam-Score: 7.5\r\n" in relayed
    assert b"X-Spam-Status: Yes, score=7.5 required=5\r\n" in relayed
    assert b"X-Spam-Tests: BAYES_80\r\n" in relayed


@pytest.mark.asyncio
async def test_any_failed_group_defers_whole_message(relay):
    controller, dispatcher = relay(failing_urls=["https://b.test/in"])
    session, _ = await open_transaction(controller, "bob@example.com", "carol@example.org")

    reply = await controller.data(session, MESSAGE)

    assert str(reply) == "451 Delivery endpoint temporarily unavailable"
    assert session.state is SessionState.DEFERRED
    assert len(dispatcher.calls[0]["groups"]) == 2


@pytest.mark.asyncio
async def test_empty_message(relay):
    controller, dispatcher = relay()
    session, _ = await open_transaction(controller, "bob@example.com")
    assert str(await controller.data(session, b"")) == "550 Empty message"
    assert dispatcher.calls == []


@pytest.mark.asyncio
async def test_message_without_header_separator(relay):
    controller, dispatcher = relay()
    session, _ = await open_transaction(controller, "bob@example.com")
    reply = await controller.data(session, b"just some text without headers")
    assert str(reply) == "550 Malformed message: missing headers"
    assert dispatcher.calls == []


@pytest.mark.asyncio
async def test_all_recipients_refused(relay):
    controller, dispatcher = relay()
    session, _ = await open_transaction(controller, "eve@unknown.test")
    assert str(await controller.data(session, MESSAGE)) == "554 No valid recipients"
    assert dispatcher.calls == []


@pytest.mark.asyncio
async def test_no_recipients_hook(relay):
    controller, _ = relay()
    session, _ = await open_transaction(controller, "eve@unknown.test")
    assert str(await controller.no_recipients(session)) == "554 No valid recipients"
    assert session.state is SessionState.REJECTED


@pytest.mark.asyncio
async def test_spam_check_disabled_skips_gate_and_scoring(relay):
    gate = FakeGate(ReputationResult(("zen.spamhaus.org",)))
    controller, dispatcher = relay(gate=gate, spam_score=SpamScore(50.0, ()), spam_enabled=False)
    session, _ = await open_transaction(controller, "bob@example.com")

    assert (await controller.data(session, MESSAGE)).code == 250
    assert gate.checked == []
    assert controller.fake_spamd.calls == 0
    assert dispatcher.calls[0]["message"] == MESSAGE


@pytest.mark.asyncio
async def test_data_before_recipients_is_bad_sequence(relay):
    controller, _ = relay()
    session = controller.open_session(PUBLIC_IP)
    await controller.connect(session)
    assert str(await controller.data(session, MESSAGE)) == "503 Bad sequence of commands"
    await controller.sender(session, "alice@example.org")
    assert str(await controller.data(session, MESSAGE)) == "503 Bad sequence of commands"


@pytest.mark.asyncio
async def test_second_transaction_on_same_connection(relay):
    controller, dispatcher = relay()
    session, _ = await open_transaction(controller, "bob@example.com")
    await controller.data(session, MESSAGE)

    assert (await controller.sender(session, "alice@example.org")).code == 250
    assert session.accepted_recipients == []
    await controller.recipient(session, "carol@example.org")
    assert (await controller.data(session, MESSAGE)).code == 250
    assert [c["groups"][0].recipients for c in dispatcher.calls] == [("bob@example.com",), ("carol@example.org",)]


@pytest.mark.asyncio
async def test_reset_discards_recipients(relay):
    controller, _ = relay()
    session, _ = await open_transaction(controller, "bob@example.com")
    assert (await controller.reset(session)).code == 250
    assert session.state is SessionState.GREETED
    assert session.recipient_targets == {}


@pytest.mark.asyncio
async def test_unexpected_error_is_transient(relay):
    controller, dispatcher = relay()

    async def broken(*args, **kwargs):
        raise ValueError("boom")

    dispatcher.dispatch = broken
    session, _ = await open_transaction(controller, "bob@example.com")
    reply = await controller.data(session, MESSAGE)
    assert reply.code == 451
    assert session.state is SessionState.DEFERRED


@pytest.mark.asyncio
async def test_metrics_are_updated(relay):
    controller, _ = relay()
    session, _ = await open_transaction(controller, "bob@example.com", "eve@unknown.test")
    await controller.data(session, MESSAGE)
    controller.close_session(session)

    output = controller.metrics.generate_latest()
    assert b'gmr_connections_total{result="accepted"} 1.0' in output
    assert b'gmr_recipients_total{result="rejected"} 1.0' in output
    assert b'gmr_messages_total{outcome="accepted"} 1.0' in output
    assert b'gmr_deliveries_total{result="success"} 1.0' in output
    assert b"gmr_active_sessions 0.0" in output
