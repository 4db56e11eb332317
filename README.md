# dnsupstream

Clients for sending DNS queries to upstream servers over several transports:

- plain DNS over UDP or TCP (`dnsupstream.plain.PlainDNS`), falling back to
  TCP when a UDP answer is truncated or its question section does not match
  the query;
- DNS-over-TLS (`dnsupstream.dot.DNSOverTLS`), reusing pooled connections;
- DNS-over-HTTPS (`dnsupstream.doh.DNSOverHTTPS`) over HTTP/1.1 and HTTP/2,
  using GET requests with the message in the `dns` query parameter.

It also provides bootstrap resolvers for upstream host names, a resolver backed
by the system hosts files, and helpers for querying several upstreams at once.

Messages are `dns.message.Message` objects from dnspython.

## Installation

```
pip install .
```

## Creating an upstream

`dnsupstream.factory.address_to_upstream(addr, opts)` turns an address string
into an upstream. An address may be a URL or a bare host, with or without a
port; `opts` may be `None`.

| Address                               | Upstream                    |
|---------------------------------------|-----------------------------|
| `1.2.3.4`, `1.2.3.4:5353`             | plain DNS over UDP          |
| `udp://name.server:53`                | plain DNS over UDP          |
| `tcp://1.2.3.4`                       | plain DNS over TCP          |
| `tls://name.server:853`               | DNS-over-TLS                |
| `https://name.server/dns-query`       | DNS-over-HTTPS              |
| `sdns://...`                          | DNS stamp (plain, DoH, DoT) |

When no port is given, the default one for the protocol is used: 53 for plain
DNS, 853 for DNS-over-TLS and 443 for DNS-over-HTTPS. A stamp with a server
address makes that address the bootstrap for the upstream.

Every upstream has `exchange(req)`, `address()` and `close()`, and can be used
as a context manager.

```python
import dns.message

from dnsupstream.base import Options
from dnsupstream.factory import address_to_upstream

with address_to_upstream("tls://1.1.1.1", Options(timeout=5.0)) as ups:
    req = dns.message.make_query("example.org.", "A")
    resp = ups.exchange(req)
    print(ups.address(), resp.answer)
```

Invalid addresses raise `dnsupstream.base.UpstreamConfigError`:

```python
from dnsupstream.base import UpstreamConfigError

try:
    address_to_upstream("asdf://1.1.1.1", None)
except UpstreamConfigError as err:
    print(err)  # unsupported url scheme: asdf
```

The lower-level helpers `UpstreamURL.parse`, `validate_upstream_url`,
`validate_hostname` and `add_port` live in `dnsupstream.base`.

## Options

`dnsupstream.base.Options` holds:

- `timeout`: seconds, zero for none;
- `bootstrap`: a resolver used to find the IP address of an upstream given by
  host name (the system resolver is used when it is `None`);
- `insecure_skip_verify`, `root_cas` (a CA file path) and `cipher_suites` for
  TLS;
- `verify_server_certificate` and `verify_connection`: callbacks run on
  established TLS connections;
- `http_versions`: the `HTTPVersion` values a DNS-over-HTTPS upstream may use,
  HTTP/1.1 and HTTP/2 by default;
- `prefer_ipv6`: dial IPv6 addresses first.

`Options.clone()` returns a shallow copy.

## Bootstrap resolvers

Every resolver has `lookup_net_ip(network, host)`, where `network` is `"ip"`,
`"ip4"` or `"ip6"`, and returns a list of `ipaddress` addresses. In
`dnsupstream.resolver`:

- `StaticResolver` is a list of addresses and always answers with them.
- `UpstreamResolver` resolves through an upstream. Create one with
  `new_upstream_resolver(address, opts)`; if the upstream's host is not an IP
  address it raises `NotBootstrapError`, whose `resolver` attribute still holds
  a usable resolver.
- `CachingResolver` wraps an `UpstreamResolver` and keeps answers until their
  TTLs run out.
- `ParallelResolver` asks several resolvers at once and returns the first answer
  that succeeds.
- `ConsequentResolver` asks resolvers in order until one gives a non-empty answer.

`dnsupstream.hosts.HostsResolver` answers from hosts file entries.
`HostsResolver.from_default_paths(root)` reads the platform's hosts file found
under the directory `root` (for example `"/"`); `parse_hosts(text)` parses
hosts file text.

```python
from dnsupstream.resolver import CachingResolver, new_upstream_resolver

boot = CachingResolver(new_upstream_resolver("8.8.8.8:53", Options(timeout=3.0)))
ups = address_to_upstream("tls://dns.example", Options(bootstrap=boot, timeout=3.0))
```

## Querying several upstreams

```python
from dnsupstream.parallel import exchange_all, exchange_parallel, lookup_parallel

resp, winner = exchange_parallel(upstreams, req)  # first successful answer
results = exchange_all(upstreams, req)            # every successful answer
addrs = lookup_parallel(resolvers, "example.org")
```

`exchange_parallel` raises `NoUpstreamsError` when given no upstreams and an
error when none of them answered. `exchange_all` returns `ExchangeAllResult`
items (`resp`, `upstream`) in the order the answers arrived, and raises only
when every upstream failed.

## What it does not do

- DNS-over-QUIC and DNSCrypt are not supported: `quic://` addresses and stamps
  for those protocols raise `UpstreamConfigError`.
- There is no HTTP/3 transport. An `h3://` address, or `http_versions` holding
  only `HTTPVersion.HTTP3`, gives an upstream whose exchanges fail.
- It is a client library only: there is no server and no command-line tool.

## Running the tests

```
pip install .[test]
pytest
```