"""End-to-end tests: aiosmtplib client -> relay (aiosmtpd) -> aiohttp webhook."""

import socket

import aiosmtplib
import pytest
import pytest_asyncio
from aiohttp import web

from mail_relay.controller import RelayController
from mail_relay.models import RelayConfig, ReputationResult, SpamScore
from mail_relay.prometheus import RelayMetrics
from mail_relay.scoring import SpamScorer
from mail_relay.smtp_handler import IDENT, RelayHandler, RelaySMTPController


MESSAGE = "From: alice@example.org\r\nTo: bob@example.com\r\nSubject: hello\r\n\r\nHi Bob\r\n"


def get_free_port() -> int:
    """Find a free port on localhost."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        s.listen(1)
        port = s.getsockname()[1]
    return port


class FakeGate:
    def __init__(self, result):
        self.result = result

    async def check(self, address):
        return self.result


class FakeSpamd:
    async def check(self, message):
        return SpamScore(2.0, ("BAYES_20",))


@pytest_asyncio.fixture
async def webhook():
    received = []

    async def inbound(request):
        received.append({"path": request.path, "headers": dict(request.headers), "body": await request.read()})
        return web.Response(status=status["code"])

    status = {"code": 200}
    app = web.Application()
    app.router.add_post("/{tail:.*}", inbound)
    runner = web.AppRunner(app)
    await runner.setup()
    await web.TCPSite(runner, "127.0.0.1", 0).start()
    port = runner.addresses[0][1]
    try:
        yield f"http://127.0.0.1:{port}", received, status
    finally:
        await runner.cleanup()


def start_relay(config, **controller_kwargs):
    port = get_free_port()
    controller = RelayController(config, metrics=RelayMetrics(), **controller_kwargs)
    smtp = RelaySMTPController(
        RelayHandler(controller),
        hostname="127.0.0.1",
        port=port,
        server_hostname="mx.test",
        data_size_limit=config.server.max_size,
    )
    smtp.start()
    return smtp, port


@pytest.fixture
def relay_factory():
    started = []

    def factory(config, **controller_kwargs):
        smtp, port = start_relay(config, **controller_kwargs)
        started.append(smtp)
        return port

    yield factory
    for smtp in started:
        smtp.stop()


def config_for(base_url, spam_enabled=False):
    return RelayConfig(
        routes=[
            {"domains": "example.com", "target": {"url": f"{base_url}/a", "auth_pass": "pw"}},
            {"domains": "*.example.net", "target": {"url": f"{base_url}/b"}},
        ],
        spam={"enabled": spam_enabled},
    )


async def connect(port):
    client = aiosmtplib.SMTP(hostname="127.0.0.1", port=port, start_tls=False)
    await client.connect()
    return client


@pytest.mark.asyncio
async def test_message_is_relayed_to_webhook(webhook, relay_factory):
    base_url, received, _ = webhook
    port = relay_factory(config_for(base_url))

    errors, response = await aiosmtplib.send(
        MESSAGE,
        hostname="127.0.0.1",
        port=port,
        sender="alice@example.org",
        recipients=["bob@example.com", "carol@mx.example.net"],
        start_tls=False,
    )

    assert errors == {}
    assert "Message accepted for delivery" in response
    assert sorted(r["path"] for r in received) == ["/a", "/b"]
    posted = next(r for r in received if r["path"] == "/a")
    assert posted["body"].rstrip(b"\r\n") == MESSAGE.encode().rstrip(b"\r\n")
    assert posted["headers"]["Content-Type"] == "message/rfc822"
    assert posted["headers"]["Authorization"].startswith("Basic ")


@pytest.mark.asyncio
async def test_greeting_carries_hostname_and_ident(webhook, relay_factory):
    base_url, _, _ = webhook
    port = relay_factory(config_for(base_url))
    client = await connect(port)
    try:
        code, message = await client.ehlo()
        assert code == 250
        assert message.startswith("mx.test")
    finally:
        await client.quit()
    assert "genro-mail-relay" in IDENT


@pytest.mark.asyncio
async def test_unrouted_recipient_refused_others_delivered(webhook, relay_factory):
    base_url, received, _ = webhook
    port = relay_factory(config_for(base_url))
    client = await connect(port)
    try:
        await client.ehlo()
        await client.mail("alice@example.org")
        await client.rcpt("bob@example.com")
        with pytest.raises(aiosmtplib.SMTPRecipientRefused) as excinfo:
            await client.rcpt("eve@unknown.test")
        assert excinfo.value.code == 550
        code, _ = await client.data(MESSAGE)
        assert code == 250
    finally:
        await client.quit()
    assert [r["path"] for r in received] == ["/a"]


@pytest.mark.asyncio
async def test_data_with_every_recipient_refused(webhook, relay_factory):
    base_url, received, _ = webhook
    port = relay_factory(config_for(base_url))
    client = await connect(port)
    try:
        await client.ehlo()
        await client.mail("alice@example.org")
        with pytest.raises(aiosmtplib.SMTPRecipientRefused):
            await client.rcpt("eve@unknown.test")
        with pytest.raises(aiosmtplib.SMTPDataError) as excinfo:
            await client.data(MESSAGE)
        assert excinfo.value.code == 554
    finally:
        await client.quit()
    assert received == []


@pytest.mark.asyncio
async def test_webhook_failure_is_transient(webhook, relay_factory):
    base_url, received, status = webhook
    status["code"] = 503
    port = relay_factory(config_for(base_url))

    with pytest.raises(aiosmtplib.SMTPDataError) as excinfo:
        await aiosmtplib.send(
            MESSAGE,
            hostname="127.0.0.1",
            port=port,
            sender="alice@example.org",
            recipients=["bob@example.com"],
            start_tls=False,
        )
    assert excinfo.value.code == 451
    assert len(received) == 1


@pytest.mark.asyncio
async def test_listed_peer_is_refused_before_greeting(webhook, relay_factory):
    base_url, received, _ = webhook
    port = relay_factory(
        config_for(base_url, spam_enabled=True),
        gate=FakeGate(ReputationResult(("zen.spamhaus.org",))),
    )
    client = aiosmtplib.SMTP(hostname="127.0.0.1", port=port, start_tls=False)
    with pytest.raises(aiosmtplib.SMTPConnectResponseError) as excinfo:
        await client.connect()
    assert excinfo.value.code == 550
    assert received == []


@pytest.mark.asyncio
async def test_spam_headers_reach_the_webhook(webhook, relay_factory):
    base_url, received, _ = webhook
    config = config_for(base_url, spam_enabled=True)
    port = relay_factory(
        config,
        gate=FakeGate(ReputationResult()),
        scorer=SpamScorer(FakeSpamd(), config.spam.flag_threshold, config.spam.reject_threshold),
    )

    await aiosmtplib.send(
        MESSAGE,
        hostname="127.0.0.1",
        port=port,
        sender="alice@example.org",
        recipients=["bob@example.com"],
        start_tls=False,
    )

    body = received[0]["body"]
    assert b"X-Spam-Score: 2\r\n" in body
    assert b"X-Spam-Tests: BAYES_20\r\n\r\nHi Bob" in body
