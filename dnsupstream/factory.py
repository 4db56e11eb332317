"""Creating upstreams from address strings and DNS stamps."""

from __future__ import annotations

import base64
import binascii
import dataclasses
import ipaddress
from typing import Optional

from .base import (
    Options,
    Upstream,
    UpstreamConfigError,
    UpstreamURL,
    _split_host_port,
    validate_upstream_url,
)
from .doh import DNSOverHTTPS
from .dot import DNSOverTLS
from .plain import PlainDNS
from .resolver import StaticResolver

_PROTO_PLAIN = 0x00
_PROTO_DNSCRYPT = 0x01
_PROTO_DOH = 0x02
_PROTO_TLS = 0x03
_PROTO_DOQ = 0x04

_PROTO_NAMES = {
    _PROTO_PLAIN: "Plain",
    _PROTO_DNSCRYPT: "DNSCrypt",
    _PROTO_DOH: "DoH",
    _PROTO_TLS: "DoT",
    _PROTO_DOQ: "DoQ",
}


def address_to_upstream(addr: str, opts: Optional[Options] = None) -> Upstream:
    """Create an upstream from a URL, a bare address or a DNS stamp.

    A bare address is taken as plain DNS over UDP.  Missing ports are filled
    in with the default port of the protocol.
    """
    if opts is None:
        opts = Options()
    url = UpstreamURL.parse(addr)
    validate_upstream_url(url)
    return url_to_upstream(url, opts)


def url_to_upstream(url: UpstreamURL, opts: Options) -> Upstream:
    """Create the upstream matching the scheme of ``url``."""
    scheme = url.scheme
    if scheme == "sdns":
        return parse_stamp(url, opts)
    if scheme in ("udp", "tcp"):
        return PlainDNS(url, opts)
    if scheme == "tls":
        return DNSOverTLS(url, opts)
    if scheme in ("h3", "https"):
        return DNSOverHTTPS(url, opts)
    raise UpstreamConfigError(f"unsupported url scheme: {scheme}")


@dataclasses.dataclass
class _Stamp:
    proto: int
    server_addr: str = ""
    provider_name: str = ""
    path: str = ""


class _Reader:
    def __init__(self, data: bytes) -> None:
        self._data = data
        self._pos = 0

    def take(self, n: int) -> bytes:
        if self._pos + n > len(self._data):
            raise ValueError("stamp is too short")
        chunk = self._data[self._pos:self._pos + n]
        self._pos += n
        return chunk

    def lp(self) -> bytes:
        (length,) = self.take(1)
        return self.take(length)

    def vlp(self) -> list:
        items = []
        while True:
            (length,) = self.take(1)
            items.append(self.take(length & 0x7F))
            if not length & 0x80:
                return items

    def done(self) -> bool:
        return self._pos >= len(self._data)


def _decode_stamp(text: str) -> _Stamp:
    if not text.startswith("sdns://"):
        raise ValueError("stamps are expected to start with sdns://")
    payload = text[len("sdns://"):]
    try:
        data = base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4))
    except (binascii.Error, ValueError) as err:
        raise ValueError(f"bad base64: {err}") from err
    reader = _Reader(data)
    (proto,) = reader.take(1)
    reader.take(8)  # properties
    stamp = _Stamp(proto=proto, server_addr=reader.lp().decode())
    if proto == _PROTO_PLAIN:
        pass
    elif proto == _PROTO_DNSCRYPT:
        reader.lp()  # server public key
        stamp.provider_name = reader.lp().decode()
    elif proto in (_PROTO_DOH, _PROTO_TLS, _PROTO_DOQ):
        reader.vlp()  # certificate hashes
        stamp.provider_name = reader.lp().decode()
        if proto == _PROTO_DOH:
            stamp.path = reader.lp().decode()
    else:
        raise ValueError(f"unsupported stamp version or protocol: {proto}")
    return stamp


def parse_stamp(url: UpstreamURL, opts: Options) -> Upstream:
    """Create an upstream from the DNS stamp in ``url``."""
    try:
        stamp = _decode_stamp(str(url))
    except ValueError as err:
        raise UpstreamConfigError(f"failed to parse {url}: {err}") from err

    opts = opts.clone()
    if stamp.server_addr:
        try:
            host, _ = _split_host_port(stamp.server_addr)
        except ValueError:
            host = stamp.server_addr
        try:
            ip = ipaddress.ip_address(host)
        except ValueError:
            raise UpstreamConfigError(
                f"invalid server stamp address {stamp.server_addr}"
            ) from None
        opts.bootstrap = StaticResolver([ip])

    if stamp.proto == _PROTO_PLAIN:
        return PlainDNS(UpstreamURL(scheme="udp", host=stamp.server_addr), opts)
    if stamp.proto == _PROTO_DOH:
        return DNSOverHTTPS(
            UpstreamURL(scheme="https", host=stamp.provider_name, path=stamp.path), opts
        )
    if stamp.proto == _PROTO_TLS:
        return DNSOverTLS(UpstreamURL(scheme="tls", host=stamp.provider_name), opts)
    raise UpstreamConfigError(
        f"unsupported stamp protocol {_PROTO_NAMES.get(stamp.proto, stamp.proto)}"
    )