"""Bootstrap resolvers: static, parallel, consequent, upstream-backed and caching."""

from __future__ import annotations

import concurrent.futures
import dataclasses
import ipaddress
import threading
import time
from typing import Optional

import dns.message
import dns.rdatatype

from .base import Options, Upstream, logger

_NETWORKS = ("ip", "ip4", "ip6")


def _filter_family(addrs, network: str) -> list:
    if network == "ip":
        return list(addrs)
    if network == "ip4":
        return [a for a in addrs if a.version == 4]
    if network == "ip6":
        return [a for a in addrs if a.version == 6]
    raise ValueError(f"unsupported network {network}")


def _joined(errs: list, message: str) -> OSError:
    err = OSError(f"{message}: " + "; ".join(str(e) for e in errs))
    err.__cause__ = errs[0]
    return err


class NotBootstrapError(Exception):
    """The upstream cannot be used as a bootstrap; ``resolver`` is still usable."""

    def __init__(self, reason: BaseException, resolver: Optional["UpstreamResolver"] = None):
        super().__init__(f"not a bootstrap: {reason}")
        self.reason = reason
        self.resolver = resolver


class StaticResolver(list):
    """Always answers with the addresses it holds."""

    def lookup_net_ip(self, network: str, host: str) -> list:
        return _filter_family(self, network)


class ParallelResolver(list):
    """Queries all resolvers at once and returns the first successful answer."""

    def lookup_net_ip(self, network: str, host: str) -> list:
        if not self:
            raise ValueError("no resolvers specified")
        if len(self) == 1:
            return self[0].lookup_net_ip(network, host)
        pool = concurrent.futures.ThreadPoolExecutor(max_workers=len(self))
        try:
            futures = [pool.submit(r.lookup_net_ip, network, host) for r in self]
            errs = []
            for fut in concurrent.futures.as_completed(futures):
                try:
                    return fut.result()
                except Exception as err:
                    errs.append(err)
            raise _joined(errs, "all resolvers failed")
        finally:
            pool.shutdown(wait=False)


class ConsequentResolver(list):
    """Queries resolvers in order until the first non-empty answer."""

    def lookup_net_ip(self, network: str, host: str) -> list:
        if not self:
            raise ValueError("no resolvers specified")
        errs = []
        for resolver in self:
            try:
                addrs = resolver.lookup_net_ip(network, host)
            except Exception as err:
                errs.append(err)
                continue
            if addrs:
                return addrs
        if errs:
            raise _joined(errs, "all resolvers failed")
        return []


@dataclasses.dataclass(frozen=True)
class _IPResult:
    addr: object
    expire: float


def _filter_expired(results: list, now: float) -> list:
    return [r.addr for r in results if r.expire > now]


def _fqdn_lower(host: str) -> str:
    host = host.lower()
    return host if host.endswith(".") else host + "."


class UpstreamResolver:
    """Resolves hostnames by querying an upstream; ignores record TTLs."""

    def __init__(self, upstream: Upstream) -> None:
        self.upstream = upstream

    def lookup_net_ip(self, network: str, host: str) -> list:
        if not host:
            return []
        return [r.addr for r in self._resolve_ip(network, _fqdn_lower(host))]

    def _resolve_ip(self, network: str, host: str) -> list:
        if network in ("ip4", "ip6"):
            return self._resolve(host, network)
        if network != "ip":
            raise ValueError(f"unsupported network {network}")
        with concurrent.futures.ThreadPoolExecutor(max_workers=2) as pool:
            futures = [pool.submit(self._resolve, host, n) for n in ("ip4", "ip6")]
        results, errs = [], []
        for fut in futures:
            try:
                results.extend(fut.result())
            except Exception as err:
                errs.append(err)
        if errs:
            if len(errs) == 1:
                raise errs[0]
            raise _joined(errs, "resolving " + host)
        return results

    def _resolve(self, host: str, network: str) -> list:
        qtype = dns.rdatatype.A if network == "ip4" else dns.rdatatype.AAAA
        req = dns.message.make_query(host, qtype)
        resp = self.upstream.exchange(req)
        now = time.monotonic()
        results = []
        for rrset in resp.answer:
            if rrset.rdtype not in (dns.rdatatype.A, dns.rdatatype.AAAA):
                continue
            for rdata in rrset:
                try:
                    addr = ipaddress.ip_address(rdata.address)
                except ValueError:
                    continue
                results.append(_IPResult(addr=addr, expire=now + rrset.ttl))
        return results


class CachingResolver:
    """An UpstreamResolver wrapper caching answers for their TTL."""

    def __init__(self, resolver: UpstreamResolver) -> None:
        self._resolver = resolver
        self._lock = threading.Lock()
        self._cached: dict = {}

    def lookup_net_ip(self, network: str, host: str) -> list:
        now = time.monotonic()
        host = _fqdn_lower(host)
        with self._lock:
            cached = self._cached.get(host)
        if cached is not None:
            addrs = _filter_expired(cached, now)
            if addrs:
                return addrs
        results = self._resolver._resolve_ip(network, host)
        addrs = _filter_expired(results, now)
        if not addrs:
            return []
        with self._lock:
            self._cached[host] = results
        return addrs


def validate_bootstrap(upstream: Upstream) -> None:
    """Raise NotBootstrapError if ``upstream`` needs a bootstrap itself."""
    from .doh import DNSOverHTTPS
    from .dot import DNSOverTLS
    from .plain import PlainDNS

    if not isinstance(upstream, (PlainDNS, DNSOverTLS, DNSOverHTTPS)):
        raise TypeError(f"unknown upstream type: {type(upstream).__name__}")
    host = upstream._url.hostname()
    try:
        ipaddress.ip_address(host)
    except ValueError:
        raise NotBootstrapError(ValueError(f'ParseAddr("{host}"): not an IP address')) from None


def new_upstream_resolver(address: str, opts: Optional[Options] = None) -> UpstreamResolver:
    """Create a bootstrap resolver from an upstream address.

    Raises NotBootstrapError, carrying a usable resolver, when the upstream
    address is not an IP.
    """
    from .factory import address_to_upstream

    ups_opts = Options()
    if opts is not None:
        ups_opts.timeout = opts.timeout
        ups_opts.verify_server_certificate = opts.verify_server_certificate
        ups_opts.prefer_ipv6 = opts.prefer_ipv6
    try:
        upstream = address_to_upstream(address, ups_opts)
    except Exception as err:
        logger.error("upstream bootstrap: creating upstream: %s", err)
        raise
    resolver = UpstreamResolver(upstream)
    try:
        validate_bootstrap(upstream)
    except NotBootstrapError as err:
        err.resolver = resolver
        raise
    return resolver