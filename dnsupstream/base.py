"""Shared types and helpers for DNS upstreams: options, URLs, dialing and validation."""

from __future__ import annotations

import abc
import concurrent.futures
import dataclasses
import enum
import ipaddress
import logging
import socket
from typing import Any, Callable, Optional
from urllib.parse import urlsplit

import dns.exception
import dns.message

logger = logging.getLogger("dnsupstream")

DialHandler = Callable[[str], socket.socket]
DialerInitializer = Callable[[], DialHandler]

NETWORK_UDP = "udp"
NETWORK_TCP = "tcp"

DEFAULT_PORT_PLAIN = 53
DEFAULT_PORT_DOH = 443
DEFAULT_PORT_DOT = 853
DEFAULT_PORT_DOQ = 853


class HTTPVersion(str, enum.Enum):
    """HTTP versions supported by DNS-over-HTTPS; the values are ALPN tokens."""

    HTTP11 = "http/1.1"
    HTTP2 = "h2"
    HTTP3 = "h3"


DEFAULT_HTTP_VERSIONS = (HTTPVersion.HTTP11, HTTPVersion.HTTP2)


class UpstreamConfigError(ValueError):
    """Raised when an upstream address or its configuration is invalid."""


@dataclasses.dataclass
class Options:
    """Configuration shared by all upstream kinds.

    ``timeout`` is in seconds; zero disables it.
    """

    verify_server_certificate: Optional[Callable[..., Any]] = None
    verify_connection: Optional[Callable[..., Any]] = None
    verify_dnscrypt_certificate: Optional[Callable[..., Any]] = None
    root_cas: Optional[str] = None
    cipher_suites: Optional[list] = None
    bootstrap: Any = None
    http_versions: Optional[list] = None
    timeout: float = 0.0
    insecure_skip_verify: bool = False
    prefer_ipv6: bool = False

    def clone(self) -> "Options":
        """Return a shallow copy."""
        return dataclasses.replace(self)


def _split_host_port(hostport: str) -> tuple[str, str]:
    """Split ``host:port``; raise ValueError when there is no port."""
    if hostport.startswith("["):
        end = hostport.find("]")
        if end < 0:
            raise ValueError(f"address {hostport}: missing ']' in address")
        rest = hostport[end + 1:]
        if not rest:
            raise ValueError(f"address {hostport}: missing port in address")
        if not rest.startswith(":") or ":" in rest[1:]:
            raise ValueError(f"address {hostport}: too many colons in address")
        return hostport[1:end], rest[1:]
    idx = hostport.rfind(":")
    if idx < 0:
        raise ValueError(f"address {hostport}: missing port in address")
    host = hostport[:idx]
    if ":" in host:
        raise ValueError(f"address {hostport}: too many colons in address")
    return host, hostport[idx + 1:]


def _join_host_port(host: str, port: int) -> str:
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def _parse_ip(text: str):
    try:
        return ipaddress.ip_address(text)
    except ValueError:
        return None


def add_port(host: str, port: int) -> str:
    """Return ``host`` with ``port`` appended unless it already has one."""
    try:
        _split_host_port(host)
    except ValueError:
        return _join_host_port(host, port)
    return host


@dataclasses.dataclass
class UpstreamURL:
    """An upstream URL; ``host`` may include a port."""

    scheme: str
    host: str
    path: str = ""
    query: str = ""
    username: Optional[str] = None
    password: Optional[str] = None

    @classmethod
    def parse(cls, raw: str) -> "UpstreamURL":
        """Parse a URL, or a bare address which is taken as plain UDP."""
        if "://" not in raw:
            return cls(scheme="udp", host=raw)
        try:
            parts = urlsplit(raw)
        except ValueError as err:
            raise UpstreamConfigError(f"failed to parse {raw}: {err}") from err
        netloc = parts.netloc
        username = password = None
        if "@" in netloc:
            userinfo, netloc = netloc.rsplit("@", 1)
            username, sep, pw = userinfo.partition(":")
            password = pw if sep else None
        return cls(
            scheme=parts.scheme,
            host=netloc,
            path=parts.path,
            query=parts.query,
            username=username,
            password=password,
        )

    def hostname(self) -> str:
        """Return the host without port and brackets."""
        host = self.host
        if host.startswith("["):
            end = host.find("]")
            return host[1:end] if end >= 0 else host[1:]
        if host.count(":") == 1:
            return host.split(":", 1)[0]
        return host

    def _render(self, password: Optional[str]) -> str:
        userinfo = ""
        if self.username is not None:
            userinfo = self.username
            if password is not None:
                userinfo += f":{password}"
            userinfo += "@"
        text = f"{self.scheme}://{userinfo}{self.host}{self.path}"
        if self.query:
            text += f"?{self.query}"
        return text

    def redacted(self) -> str:
        """Return the URL with any password replaced by ``xxxxx``."""
        return self._render("xxxxx" if self.password is not None else None)

    def __str__(self) -> str:
        return self._render(self.password)


def validate_hostname(host: str) -> None:
    """Raise UpstreamConfigError if ``host`` is not a valid hostname."""

    def fail(reason: str) -> None:
        raise UpstreamConfigError(f'bad hostname "{host}": {reason}')

    if not host:
        fail("hostname is empty")
    if len(host) > 253:
        fail("hostname is too long")
    labels = host[:-1].split(".") if host.endswith(".") else host.split(".")
    *inner, tld = labels
    for label, kind in [(lbl, "hostname") for lbl in inner] + [(tld, "top-level domain name")]:
        if not label:
            fail(f'bad {kind} label "": label is empty')
        if len(label) > 63:
            fail(f'bad {kind} label "{label}": label is too long')
        for pos, ch in enumerate(label):
            ok = (ch.isascii() and ch.isalnum()) or (ch == "-" and 0 < pos < len(label) - 1)
            if not ok:
                fail(f"bad {kind} label \"{label}\": bad {kind} label rune '{ch}'")
    if tld.isdigit():
        fail(f'bad top-level domain name label "{tld}": all octets are numeric')


def validate_upstream_url(url: UpstreamURL) -> None:
    """Raise UpstreamConfigError if the host or port of ``url`` is invalid."""
    if url.scheme == "sdns":
        return
    host = url.host
    try:
        h, port = _split_host_port(host)
    except ValueError:
        pass
    else:
        if not port.isdigit():
            raise UpstreamConfigError(f'invalid port {port}: parsing "{port}": invalid syntax')
        if int(port) > 0xFFFF:
            raise UpstreamConfigError(f'invalid port {port}: parsing "{port}": value out of range')
        host = h
    candidate = host[1:-1] if host.startswith("[") and host.endswith("]") else host
    if _parse_ip(candidate) is not None:
        return
    try:
        validate_hostname(host)
    except UpstreamConfigError as err:
        raise UpstreamConfigError(f"invalid address {host}: {err}") from err


def is_timeout(err: BaseException) -> bool:
    """Tell whether ``err``, or anything it was raised from, is a timeout."""
    kinds = (
        TimeoutError,
        dns.exception.Timeout,
        concurrent.futures.TimeoutError,
        concurrent.futures.CancelledError,
    )
    seen = set()
    current: Optional[BaseException] = err
    while current is not None and id(current) not in seen:
        if isinstance(current, kinds):
            return True
        seen.add(id(current))
        current = current.__cause__ or current.__context__
    return False


def _connect(network: str, ip: str, port: int, timeout: float) -> socket.socket:
    family = socket.AF_INET6 if ":" in ip else socket.AF_INET
    kind = socket.SOCK_DGRAM if network == NETWORK_UDP else socket.SOCK_STREAM
    sock = socket.socket(family, kind)
    sock.settimeout(timeout or None)
    try:
        sock.connect((ip, port))
    except BaseException:
        sock.close()
        raise
    return sock


def _dial_any(network: str, ips: list, port: int, timeout: float) -> socket.socket:
    last: Optional[BaseException] = None
    for ip in ips:
        try:
            return _connect(network, ip, port, timeout)
        except OSError as err:
            last = err
    if last is None:
        raise OSError("no addresses to dial")
    raise last


def _resolve(host: str, opts: Options) -> list:
    if opts.bootstrap is not None:
        found = [str(a) for a in opts.bootstrap.lookup_net_ip("ip", host)]
    else:
        infos = socket.getaddrinfo(host, None, type=socket.SOCK_STREAM)
        found = list(dict.fromkeys(info[4][0] for info in infos))
    if not found:
        raise OSError(f"no addresses for host {host}")
    return sorted(found, key=lambda ip: (":" in ip) != opts.prefer_ipv6)


def make_dialer(url: UpstreamURL, opts: Options) -> DialerInitializer:
    """Return a callable producing a dial handler for the address of ``url``.

    The handler takes a network (``"udp"`` or ``"tcp"``) and returns a
    connected socket.
    """
    try:
        host, port_text = _split_host_port(url.host)
        port = int(port_text)
    except ValueError:
        host, port = url.hostname(), 0
    timeout = opts.timeout

    if _parse_ip(host) is not None:
        def handler(network: str) -> socket.socket:
            return _connect(network, host, port, timeout)

        return lambda: handler

    def initializer() -> DialHandler:
        ips = _resolve(host, opts)

        def resolved(network: str) -> socket.socket:
            return _dial_any(network, ips, port, timeout)

        return resolved

    return initializer


def _log_begin(addr: str, network: str, req: dns.message.Message) -> None:
    qtype, qname = "", ""
    if req.question:
        q = req.question[0]
        qtype, qname = dns.rdatatype.to_text(q.rdtype), q.name.to_text()
    logger.debug("sending request to %s over %s: %s %r", addr, network, qtype, qname)


def _log_finish(addr: str, network: str, err: Optional[BaseException]) -> None:
    status = "ok" if err is None else str(err)
    level = logging.ERROR if err is not None and is_timeout(err) else logging.DEBUG
    logger.log(level, "%s: response received over %s: %r", addr, network, status)


class Upstream(abc.ABC):
    """A DNS resolver that queries are sent to."""

    @abc.abstractmethod
    def exchange(self, req: dns.message.Message) -> dns.message.Message:
        """Send ``req`` and return the response."""

    @abc.abstractmethod
    def address(self) -> str:
        """Return the address of the upstream."""

    @abc.abstractmethod
    def close(self) -> None:
        """Release resources; exchange must not be called afterwards."""

    def __enter__(self) -> "Upstream":
        return self

    def __exit__(self, *args) -> None:
        self.close()


import dns.rdatatype  # noqa: E402