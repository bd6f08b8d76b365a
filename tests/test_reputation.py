import dns.resolver
import pytest

from smtp_reputation import (
    DnsResolver, Listing, ReputationChecker, build_query, is_private_ip,
)


@pytest.mark.parametrize("ip", [
    "127.0.0.1", "10.1.2.3", "172.16.0.1", "172.31.255.255", "192.168.1.14",
    "169.254.9.9", "192.0.2.55", "::1", "::ffff:10.0.0.1",
])
def test_private_ips(ip):
    assert is_private_ip(ip)


@pytest.mark.parametrize("ip", ["8.8.8.8", "172.32.0.1", "172.15.0.1", "2.56.250.16", "garbage"])
def test_public_ips(ip):
    assert not is_private_ip(ip)


def test_build_query_reverses_octets():
    assert build_query("1.2.3.4", "zen.example.org") == "4.3.2.1.zen.example.org"
    assert build_query("1.2.3.4", ".bl.example.") == "4.3.2.1.bl.example"


class FakeResolve:
    def __init__(self, answers):
        self.answers = answers
        self.queries = []

    def __call__(self, name):
        self.queries.append(name)
        return self.answers.get(name)


def test_private_ip_skips_lookups():
    resolve = FakeResolve({})
    checker = ReputationChecker(resolve, ["wl.test"], ["bl.test"])
    assert checker.check("192.168.0.10") is None
    assert resolve.queries == []


def test_whitelist_hit_short_circuits():
    resolve = FakeResolve({"8.8.8.8.wl.test": "127.0.0.2", "8.8.8.8.bl.test": "127.0.0.2"})
    checker = ReputationChecker(resolve, ["wl.test"], ["bl.test"])
    assert checker.check("8.8.8.8") == Listing("white", "wl.test", "127.0.0.2")
    assert resolve.queries == ["8.8.8.8.wl.test"]


def test_first_blacklist_hit_recorded():
    resolve = FakeResolve({"4.3.2.1.bl2.test": "127.0.0.4", "4.3.2.1.bl3.test": "127.0.0.9"})
    checker = ReputationChecker(resolve, ["wl.test"], ["bl1.test", "bl2.test", "bl3.test"])
    assert checker.check("1.2.3.4") == Listing("black", "bl2.test", "127.0.0.4")
    assert "4.3.2.1.bl3.test" not in resolve.queries


def test_not_listed():
    checker = ReputationChecker(FakeResolve({}), [], ["bl.test"])
    assert checker.check("1.2.3.4") is None


class FakeAnswer:
    def __init__(self, address):
        self.address = address


class FakeDns:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error

    def resolve(self, name, rdtype):
        assert rdtype == "A"
        if self.error:
            raise self.error
        return self.result


def test_dns_resolver_joins_addresses():
    resolver = DnsResolver(resolver=FakeDns([FakeAnswer("127.0.0.2"), FakeAnswer("127.0.0.10")]))
    assert resolver("4.3.2.1.bl.test") == "127.0.0.2+127.0.0.10"


@pytest.mark.parametrize("error", [dns.resolver.NXDOMAIN(), dns.resolver.NoAnswer()])
def test_dns_resolver_absent(error):
    resolver = DnsResolver(resolver=FakeDns(error=error))
    assert resolver("4.3.2.1.bl.test") is None
