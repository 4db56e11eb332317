"""Plain DNS over UDP or TCP."""

from __future__ import annotations

import dataclasses
import socket
import struct

import dns.exception
import dns.flags
import dns.message
import dns.rdatatype

from .base import (
    DEFAULT_PORT_PLAIN,
    NETWORK_TCP,
    NETWORK_UDP,
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

_DEFAULT_TIMEOUT = 2.0


class QuestionError(ValueError):
    """The response has a malformed question section."""

    def __init__(self, detail: str) -> None:
        super().__init__(f"bad question section: {detail}")


def validate_plain_response(req: dns.message.Message, resp: dns.message.Message) -> None:
    """Raise QuestionError unless the question of ``resp`` matches ``req``."""
    if len(resp.question) != 1:
        raise QuestionError(f"only 1 question allowed; got {len(resp.question)}")
    req_q, resp_q = req.question[0], resp.question[0]
    if req_q.rdtype != resp_q.rdtype:
        raise QuestionError(f"mismatched type {dns.rdatatype.to_text(resp_q.rdtype)}")
    if req_q.name.to_text().lower() != resp_q.name.to_text().lower():
        raise QuestionError(f'mismatched name "{resp_q.name.to_text()}"')


def _wrap(message: str, err: BaseException) -> OSError:
    return TimeoutError(message) if is_timeout(err) else OSError(message)


def _recv_exactly(sock: socket.socket, n: int) -> bytes:
    chunks = bytearray()
    while len(chunks) < n:
        chunk = sock.recv(n - len(chunks))
        if not chunk:
            raise EOFError("connection closed")
        chunks += chunk
    return bytes(chunks)


def _read_msg(sock: socket.socket, network: str) -> dns.message.Message:
    if network == NETWORK_UDP:
        data = sock.recv(65535)
    else:
        (length,) = struct.unpack("!H", _recv_exactly(sock, 2))
        data = _recv_exactly(sock, length)
    return dns.message.from_wire(data)


def _exchange_with_conn(sock, network, req, timeout) -> dns.message.Message:
    sock.settimeout(timeout)
    wire = req.to_wire()
    if network == NETWORK_UDP:
        sock.send(wire)
    else:
        sock.sendall(struct.pack("!H", len(wire)) + wire)
    while True:
        resp = _read_msg(sock, network)
        if resp.id == req.id:
            return resp


class PlainDNS(Upstream):
    """An upstream speaking regular DNS over UDP or TCP."""

    def __init__(self, url: UpstreamURL, opts: Options) -> None:
        if url.scheme not in (NETWORK_UDP, NETWORK_TCP):
            raise UpstreamConfigError(f"unsupported url scheme: {url.scheme}")
        self._url = dataclasses.replace(url, host=add_port(url.host, DEFAULT_PORT_PLAIN))
        self._get_dialer = make_dialer(self._url, opts)
        self._net = url.scheme
        self._timeout = opts.timeout or _DEFAULT_TIMEOUT

    def address(self) -> str:
        if self._net == NETWORK_UDP:
            return self._url.host
        return str(self._url)

    def _dial(self, dial: DialHandler, network: str, again: str = "") -> socket.socket:
        try:
            return dial(network)
        except OSError as err:
            raise _wrap(f"dialing {self._url.host} over {network}{again}: {err}", err) from err

    def _dial_exchange(self, network, dial, req) -> dns.message.Message:
        addr = self.address()
        _log_begin(addr, network, req)
        failure = None
        try:
            resp = None
            with self._dial(dial, network) as sock:
                try:
                    resp = _exchange_with_conn(sock, network, req, self._timeout)
                except (OSError, EOFError):
                    pass
                except dns.exception.DNSException as err:
                    raise _wrap(f"exchanging with {addr} over {network}: {err}", err) from err
            if resp is None:
                with self._dial(dial, network, " again") as sock:
                    try:
                        resp = _exchange_with_conn(sock, network, req, self._timeout)
                    except (OSError, EOFError, dns.exception.DNSException) as err:
                        raise _wrap(f"exchanging with {addr} over {network}: {err}", err) from err
            validate_plain_response(req, resp)
            return resp
        except Exception as err:
            failure = err
            raise
        finally:
            _log_finish(addr, network, failure)

    def exchange(self, req: dns.message.Message) -> dns.message.Message:
        dial = self._get_dialer()
        addr = self.address()
        if self._net != NETWORK_UDP:
            return self._dial_exchange(self._net, dial, req)
        try:
            resp = self._dial_exchange(NETWORK_UDP, dial, req)
        except QuestionError as err:
            logger.debug("plain %s: %s, using tcp", addr, err)
            return self._dial_exchange(NETWORK_TCP, dial, req)
        if resp.flags & dns.flags.TC:
            logger.debug("plain %s: resp for %s is truncated, using tcp", addr, req.question[0])
            return self._dial_exchange(NETWORK_TCP, dial, req)
        return resp

    def close(self) -> None:
        return None