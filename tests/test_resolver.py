import ipaddress

import dns.message
import dns.rdatatype
import dns.rrset
import pytest

from dnsupstream.base import Upstream
from dnsupstream.resolver import (
    CachingResolver,
    ConsequentResolver,
    NotBootstrapError,
    ParallelResolver,
    StaticResolver,
    UpstreamResolver,
    new_upstream_resolver,
    validate_bootstrap,
)


class FakeUpstream(Upstream):
    def __init__(self, ttl=300, fail=False):
        self.ttl = ttl
        self.fail = fail
        self.calls = 0

    def exchange(self, req):
        self.calls += 1
        if self.fail:
            raise OSError("upstream error")
        resp = dns.message.make_response(req)
        q = req.question[0]
        value = "1.2.3.4" if q.rdtype == dns.rdatatype.A else "::1"
        resp.answer.append(
            dns.rrset.from_text(q.name, self.ttl, "IN", dns.rdatatype.to_text(q.rdtype), value)
        )
        return resp

    def address(self):
        return ""

    def close(self):
        return None


V4 = ipaddress.ip_address("1.2.3.4")
V6 = ipaddress.ip_address("::1")


@pytest.mark.parametrize(
    "addr,want",
    [
        ("1.1.1.1:53", "1.1.1.1:53"),
        ("tls://1.1.1.1", "tls://1.1.1.1:853"),
        ("https://1.1.1.1/dns-query", "https://1.1.1.1:443/dns-query"),
        ("tcp://9.9.9.9", "tcp://9.9.9.9:53"),
    ],
)
def test_new_upstream_resolver_valid(addr, want):
    r = new_upstream_resolver(addr, None)
    assert r.upstream.address() == want


@pytest.mark.parametrize(
    "addr",
    ["tls://dns.adguard.com", "https://dns.adguard.com/dns-query", "tcp://dns.adguard.com", "dns.adguard.com"],
)
def test_new_upstream_resolver_not_bootstrap(addr):
    with pytest.raises(NotBootstrapError) as info:
        new_upstream_resolver(addr, None)
    assert str(info.value).startswith('not a bootstrap: ParseAddr("dns.adguard.com")')
    assert isinstance(info.value.resolver, UpstreamResolver)


def test_validate_bootstrap_unknown_type():
    with pytest.raises(TypeError, match="unknown upstream type"):
        validate_bootstrap(FakeUpstream())


def test_upstream_resolver_lookup():
    r = UpstreamResolver(FakeUpstream())
    assert r.lookup_net_ip("ip4", "Example.org") == [V4]
    assert r.lookup_net_ip("ip6", "example.org") == [V6]
    assert r.lookup_net_ip("ip", "example.org") == [V4, V6]
    assert r.lookup_net_ip("ip", "") == []


def test_upstream_resolver_errors():
    with pytest.raises(ValueError, match="unsupported network ip5"):
        UpstreamResolver(FakeUpstream()).lookup_net_ip("ip5", "example.org")
    with pytest.raises(OSError):
        UpstreamResolver(FakeUpstream(fail=True)).lookup_net_ip("ip4", "example.org")


def test_caching_resolver_caches():
    ups = FakeUpstream()
    r = CachingResolver(UpstreamResolver(ups))
    assert r.lookup_net_ip("ip4", "example.org") == [V4]
    assert r.lookup_net_ip("ip4", "EXAMPLE.org.") == [V4]
    assert ups.calls == 1


def test_caching_resolver_zero_ttl():
    ups = FakeUpstream(ttl=0)
    r = CachingResolver(UpstreamResolver(ups))
    assert r.lookup_net_ip("ip4", "example.org") == []
    assert r.lookup_net_ip("ip4", "example.org") == []
    assert ups.calls == 2


def test_static_resolver():
    r = StaticResolver([V4, V6])
    assert r.lookup_net_ip("ip", "x") == [V4, V6]
    assert r.lookup_net_ip("ip6", "x") == [V6]


def test_consequent_resolver_skips_failures_and_empty():
    r = ConsequentResolver(
        [UpstreamResolver(FakeUpstream(fail=True)), StaticResolver([]), StaticResolver([V4])]
    )
    assert r.lookup_net_ip("ip", "x") == [V4]


def test_consequent_resolver_all_fail():
    r = ConsequentResolver([UpstreamResolver(FakeUpstream(fail=True))])
    with pytest.raises(OSError):
        r.lookup_net_ip("ip4", "x")


def test_parallel_resolver():
    r = ParallelResolver([UpstreamResolver(FakeUpstream(fail=True)), StaticResolver([V4])])
    assert r.lookup_net_ip("ip", "x") == [V4]
    with pytest.raises(OSError, match="all resolvers failed"):
        ParallelResolver(
            [UpstreamResolver(FakeUpstream(fail=True)), UpstreamResolver(FakeUpstream(fail=True))]
        ).lookup_net_ip("ip4", "x")