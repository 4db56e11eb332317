"""DNS-over-TLS upstream with a pool of reusable connections."""

from __future__ import annotations

import dataclasses
import errno
import socket
import ssl
import struct
import sys
import threading
from typing import Iterator, Optional

import dns.exception
import dns.message

from .base import (
    DEFAULT_PORT_DOT,
    NETWORK_TCP,
    DialHandler,
    Options,
    Upstream,
    UpstreamConfigError,
    UpstreamURL,
    _log_begin,
    _log_finish,
    add_port,
    is_timeout,
    logger,
    make_dialer,
)

# Timeout covering the TCP connection and the TLS handshake, in seconds.
DIAL_TIMEOUT = 10.0


class _IDMismatchError(dns.exception.DNSException):
    """The response ID does not match the request ID."""

    msg = "id mismatch"


def _wrap(message: str, err: BaseException) -> OSError:
    return TimeoutError(message) if is_timeout(err) else OSError(message)


def _close_quietly(conn: socket.socket) -> None:
    try:
        conn.close()
    except OSError as err:
        logger.debug("closing connection: %s", err)


def _recv_exactly(sock: socket.socket, n: int) -> bytes:
    data = bytearray()
    while len(data) < n:
        chunk = sock.recv(n - len(data))
        if not chunk:
            raise EOFError("connection closed")
        data += chunk
    return bytes(data)


def make_tls_context(server_name: str, opts: Options) -> ssl.SSLContext:
    """Build the client TLS context for a DoT server named ``server_name``."""
    if not server_name and not opts.insecure_skip_verify:
        raise UpstreamConfigError(
            "either a server name or insecure_skip_verify must be specified"
        )
    if opts.root_cas:
        context = ssl.create_default_context(cafile=opts.root_cas)
    else:
        context = ssl.create_default_context()
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    if opts.cipher_suites:
        context.set_ciphers(":".join(str(c) for c in opts.cipher_suites))
    if opts.insecure_skip_verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


def _handshake(
    raw: socket.socket,
    context: ssl.SSLContext,
    server_name: str,
    session: Optional[ssl.SSLSession],
) -> ssl.SSLSocket:
    raw.settimeout(DIAL_TIMEOUT)
    try:
        conn = context.wrap_socket(
            raw,
            server_hostname=server_name or None,
            do_handshake_on_connect=False,
            session=session,
        )
    except BaseException:
        raw.close()
        raise
    try:
        conn.do_handshake()
    except BaseException:
        _close_quietly(conn)
        raise
    return conn


def tls_dial(dial: DialHandler, context: ssl.SSLContext, server_name: str) -> ssl.SSLSocket:
    """Dial over TCP with ``dial`` and complete a TLS handshake."""
    return _handshake(dial(NETWORK_TCP), context, server_name, None)


def _chain(err: BaseException) -> Iterator[BaseException]:
    seen = set()
    current: Optional[BaseException] = err
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def _is_conn_broken(err: BaseException) -> bool:
    if sys.platform == "win32":
        return getattr(err, "winerror", None) in (10053, 10054)
    return isinstance(err, OSError) and err.errno in (errno.EPIPE, errno.ETIMEDOUT)


def is_critical_tcp(err: BaseException) -> bool:
    """Tell whether ``err`` is unexpected when closing a TCP connection."""
    if is_timeout(err):
        return False
    for cause in _chain(err):
        if isinstance(cause, (EOFError, ssl.SSLEOFError, ssl.SSLZeroReturnError)):
            return False
        if isinstance(cause, OSError) and cause.errno == errno.EBADF:
            return False
        if _is_conn_broken(cause):
            return False
    return True


class DNSOverTLS(Upstream):
    """An upstream speaking DNS over TLS, reusing connections in LIFO order."""

    def __init__(self, url: UpstreamURL, opts: Options) -> None:
        self._url = dataclasses.replace(url, host=add_port(url.host, DEFAULT_PORT_DOT))
        self._get_dialer = make_dialer(self._url, opts)
        self._server_name = self._url.hostname()
        self._context = make_tls_context(self._server_name, opts)
        self._verify_server_certificate = opts.verify_server_certificate
        self._verify_connection = opts.verify_connection
        self._lock = threading.Lock()
        self._conns: list = []
        self._session: Optional[ssl.SSLSession] = None

    def address(self) -> str:
        return str(self._url)

    def _verify(self, conn: ssl.SSLSocket) -> None:
        if self._verify_server_certificate is not None:
            der = conn.getpeercert(binary_form=True)
            self._verify_server_certificate([der] if der else [], [])
        if self._verify_connection is not None:
            self._verify_connection(conn)

    def _dial_new(self, dial: DialHandler) -> ssl.SSLSocket:
        with self._lock:
            session = self._session
        conn = _handshake(dial(NETWORK_TCP), self._context, self._server_name, session)
        try:
            self._verify(conn)
        except BaseException:
            _close_quietly(conn)
            raise
        return conn

    def _conn(self, dial: DialHandler) -> socket.socket:
        """Return the last pooled connection if usable, or dial a new one."""
        with self._lock:
            conn = self._conns.pop() if self._conns else None
        if conn is not None:
            try:
                if conn.fileno() == -1:
                    raise OSError(errno.EBADF, "connection is closed")
                conn.settimeout(DIAL_TIMEOUT)
            except OSError as err:
                logger.debug("dot upstream: setting deadline to conn from pool: %s", err)
            else:
                logger.debug("dot upstream: using existing conn %d", conn.fileno())
                return conn
        try:
            return self._dial_new(dial)
        except (OSError, ValueError) as err:
            raise _wrap(f"connecting to {self._server_name}: {err}", err) from err

    def _put_back(self, conn: socket.socket) -> None:
        with self._lock:
            self._conns.append(conn)
            session = getattr(conn, "session", None)
            if session is not None:
                self._session = session

    def _exchange_with_conn(
        self, conn: socket.socket, req: dns.message.Message
    ) -> dns.message.Message:
        addr = self.address()
        _log_begin(addr, NETWORK_TCP, req)
        failure: Optional[BaseException] = None
        try:
            wire = req.to_wire()
            try:
                conn.sendall(struct.pack("!H", len(wire)) + wire)
            except OSError as err:
                raise _wrap(f"sending request to {addr}: {err}", err) from err
            try:
                (length,) = struct.unpack("!H", _recv_exactly(conn, 2))
                reply = dns.message.from_wire(_recv_exactly(conn, length))
            except (OSError, EOFError, dns.exception.DNSException) as err:
                raise _wrap(f"reading response from {addr}: {err}", err) from err
            if reply.id != req.id:
                raise _IDMismatchError(f"id mismatch: got {reply.id}, want {req.id}")
            return reply
        except Exception as err:
            failure = err
            raise
        finally:
            _log_finish(addr, NETWORK_TCP, failure)

    def exchange(self, req: dns.message.Message) -> dns.message.Message:
        addr = self.address()
        try:
            dial = self._get_dialer()
            conn = self._conn(dial)
        except OSError as err:
            raise _wrap(f"getting conn to {addr}: {err}", err) from err

        try:
            reply = self._exchange_with_conn(conn, req)
        except (OSError, dns.exception.DNSException) as err:
            # The pooled connection may have been closed by the server.
            _close_quietly(conn)
            logger.debug("dot %s: bad conn from pool: %s", addr, err)
            try:
                conn = self._dial_new(dial)
            except (OSError, ValueError) as dial_err:
                raise _wrap(
                    f"dialing {addr}: connecting to {self._server_name}: {dial_err}",
                    dial_err,
                ) from dial_err
            try:
                reply = self._exchange_with_conn(conn, req)
            except BaseException:
                _close_quietly(conn)
                raise

        self._put_back(conn)
        return reply

    def close(self) -> None:
        with self._lock:
            conns, self._conns = self._conns, []
        errs = []
        for conn in conns:
            try:
                conn.close()
            except OSError as err:
                if is_critical_tcp(err):
                    errs.append(err)
        if errs:
            raise OSError("; ".join(str(e) for e in errs))