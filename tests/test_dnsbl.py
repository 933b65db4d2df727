import asyncio

import dns.exception
import dns.resolver
import pytest

from mail_relay.dnsbl import ReputationChecker, is_exempt, reverse_address


class FakeResolver:
    """Answers from a name -> outcome table; unknown names are NXDOMAIN."""

    def __init__(self, outcomes=None):
        self.outcomes = outcomes or {}
        self.queries = []

    async def resolve(self, name, rdtype="A", lifetime=None):
        self.queries.append((name, rdtype))
        outcome = self.outcomes.get(name)
        if outcome is None:
            raise dns.resolver.NXDOMAIN()
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, float):
            await asyncio.sleep(outcome)
        return ["127.0.0.2"]


def test_reverse_ipv4():
    assert reverse_address("1.2.3.4") == "4.3.2.1"


def test_reverse_ipv4_mapped_ipv6():
    assert reverse_address("::ffff:1.2.3.4") == "4.3.2.1"


def test_reverse_ipv6_uses_nibbles():
    reversed_name = reverse_address("2001:db8::1")
    nibbles = reversed_name.split(".")
    assert len(nibbles) == 32
    assert nibbles[0] == "1"
    assert reversed_name.endswith("8.b.d.0.1.0.0.2")


@pytest.mark.parametrize(
    "address,exempt",
    [
        ("127.0.0.1", True),
        ("10.1.2.3", True),
        ("192.168.0.10", True),
        ("::1", True),
        ("::ffff:10.0.0.1", True),
        ("not-an-ip", True),
        ("1.2.3.4", False),
        ("8.8.4.4", False),
    ],
)
def test_is_exempt(address, exempt):
    assert is_exempt(address) is exempt


@pytest.mark.asyncio
async def test_listed_zones_are_reported_in_zone_order():
    resolver = FakeResolver({
        "4.3.2.1.bl.spamcop.net": True,
        "4.3.2.1.zen.spamhaus.org": True,
    })
    checker = ReputationChecker(("zen.spamhaus.org", "bl.spamcop.net", "dnsbl.example"), resolver=resolver)

    result = await checker.check("1.2.3.4")

    assert result.listings == ("zen.spamhaus.org", "bl.spamcop.net")
    assert result.is_listed
    assert {name for name, _ in resolver.queries} == {
        "4.3.2.1.zen.spamhaus.org",
        "4.3.2.1.bl.spamcop.net",
        "4.3.2.1.dnsbl.example",
    }
    assert all(rdtype == "A" for _, rdtype in resolver.queries)


@pytest.mark.asyncio
async def test_clean_address_is_not_listed():
    checker = ReputationChecker(("zen.spamhaus.org",), resolver=FakeResolver())
    result = await checker.check("8.8.4.4")
    assert result.listings == ()
    assert not result.is_listed


@pytest.mark.asyncio
async def test_private_address_is_never_looked_up():
    resolver = FakeResolver()
    checker = ReputationChecker(("zen.spamhaus.org",), resolver=resolver)
    result = await checker.check("192.168.1.20")
    assert not result.is_listed
    assert resolver.queries == []


@pytest.mark.asyncio
async def test_lookup_errors_fail_open():
    resolver = FakeResolver({
        "4.3.2.1.zen.spamhaus.org": dns.exception.Timeout(),
        "4.3.2.1.bl.spamcop.net": OSError("network unreachable"),
    })
    checker = ReputationChecker(("zen.spamhaus.org", "bl.spamcop.net"), resolver=resolver)
    result = await checker.check("1.2.3.4")
    assert not result.is_listed


@pytest.mark.asyncio
async def test_no_answer_means_not_listed():
    resolver = FakeResolver({"4.3.2.1.zen.spamhaus.org": dns.resolver.NoAnswer()})
    checker = ReputationChecker(("zen.spamhaus.org",), resolver=resolver)
    assert not (await checker.check("1.2.3.4")).is_listed


@pytest.mark.asyncio
async def test_slow_zone_is_dropped_but_finished_answers_are_kept():
    resolver = FakeResolver({
        "4.3.2.1.zen.spamhaus.org": True,
        "4.3.2.1.bl.spamcop.net": 5.0,
    })
    checker = ReputationChecker(("zen.spamhaus.org", "bl.spamcop.net"), timeout=0.2, resolver=resolver)

    started = asyncio.get_running_loop().time()
    result = await checker.check("1.2.3.4")
    elapsed = asyncio.get_running_loop().time() - started

    assert result.listings == ("zen.spamhaus.org",)
    assert elapsed < 2.0


@pytest.mark.asyncio
async def test_no_zones_configured():
    resolver = FakeResolver()
    result = await ReputationChecker((), resolver=resolver).check("1.2.3.4")
    assert not result.is_listed
    assert resolver.queries == []


@pytest.mark.asyncio
async def test_cancelled_check_cancels_zone_lookups():
    resolver = FakeResolver({
        "4.3.2.1.zen.spamhaus.org": 2.0,
        "4.3.2.1.bl.spamcop.net": 2.0,
    })
    checker = ReputationChecker(("zen.spamhaus.org", "bl.spamcop.net"), timeout=5.0, resolver=resolver)

    check = asyncio.ensure_future(checker.check("1.2.3.4"))
    await asyncio.sleep(0.05)
    check.cancel()
    with pytest.raises(asyncio.CancelledError):
        await check
    await asyncio.sleep(0)

    lookups = [
        task for task in asyncio.all_tasks()
        if not task.done() and "_lookup" in repr(task.get_coro())
    ]
    assert lookups == []
