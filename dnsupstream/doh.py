"""DNS-over-HTTPS upstream."""

from __future__ import annotations

import base64
import dataclasses
import threading
import time
from typing import Optional

import dns.exception
import dns.message
import httpx

from .base import (
    DEFAULT_HTTP_VERSIONS,
    DEFAULT_PORT_DOH,
    NETWORK_TCP,
    DialHandler,
    HTTPVersion,
    Options,
    Upstream,
    UpstreamURL,
    _join_host_port,
    _log_begin,
    _log_finish,
    add_port,
    is_timeout,
    logger,
    make_dialer,
)
from .dot import make_tls_context

# Timeout for idle connections kept by the HTTP client, in seconds.
TRANSPORT_IDLE_CONN_TIMEOUT = 300.0

# Maximum number of connections per host and of idle connections.
DOH_MAX_CONNS_PER_HOST = 2
DOH_MAX_IDLE_CONNS = 2

_MEDIA_TYPE = "application/dns-message"


class _IDMismatchError(dns.exception.DNSException):
    """The response ID does not match the request ID."""

    msg = "id mismatch"


def build_query_url(url: UpstreamURL, wire: bytes) -> str:
    """Return the GET URL carrying the DNS message ``wire`` in its ``dns`` parameter."""
    encoded = base64.urlsafe_b64encode(wire).rstrip(b"=").decode("ascii")
    return str(dataclasses.replace(url, query=f"dns={encoded}"))


@dataclasses.dataclass
class _ClientState:
    """An HTTP client bound to the address the bootstrap resolved."""

    client: httpx.Client
    target: str


class DNSOverHTTPS(Upstream):
    """An upstream speaking DNS over HTTPS with GET requests."""

    def __init__(self, url: UpstreamURL, opts: Options) -> None:
        url = dataclasses.replace(url, host=add_port(url.host, DEFAULT_PORT_DOH))
        if url.scheme == "h3":
            url = dataclasses.replace(url, scheme="https")
            versions = [HTTPVersion.HTTP3]
        else:
            versions = list(opts.http_versions or DEFAULT_HTTP_VERSIONS)

        self._url = url
        self._addr_redacted = url.redacted()
        self._get_dialer = make_dialer(url, opts)
        self._server_name = url.hostname()
        self._context = make_tls_context(self._server_name, opts)
        self._next_protos = [HTTPVersion(v).value for v in versions]
        self._verify_server_certificate = opts.verify_server_certificate
        self._verify_connection = opts.verify_connection
        self._timeout = opts.timeout
        self._lock = threading.Lock()
        self._state: Optional[_ClientState] = None

    def address(self) -> str:
        """Return the URL with any password redacted."""
        return self._addr_redacted

    def supports_h3(self) -> bool:
        """Tell whether HTTP/3 is enabled for this upstream."""
        return HTTPVersion.HTTP3.value in self._next_protos

    def supports_http(self) -> bool:
        """Tell whether HTTP/1.1 or HTTP/2 is enabled for this upstream."""
        return any(
            v in (HTTPVersion.HTTP11.value, HTTPVersion.HTTP2.value) for v in self._next_protos
        )

    def exchange(self, req: dns.message.Message) -> dns.message.Message:
        # DoH clients should use an ID of 0 for cache friendliness; the
        # original ID is restored on both the request and the response.
        orig_id = req.id
        req.id = 0
        try:
            resp = self._exchange(req)
            resp.id = orig_id
            return resp
        finally:
            req.id = orig_id

    def close(self) -> None:
        with self._lock:
            state, self._state = self._state, None
        if state is not None:
            state.client.close()

    def _exchange(self, req: dns.message.Message) -> dns.message.Message:
        try:
            state, cached = self._get_client()
        except Exception as err:
            raise _rewrap(f"failed to init http client: {err}", err) from err

        retries = 0
        while True:
            try:
                return self._exchange_https(state, req)
            except Exception as err:
                if cached and retries < 2 and self._should_retry(err):
                    retries += 1
                    try:
                        state = self._reset_client(err)
                    except Exception as reset_err:
                        raise _rewrap(
                            f"failed to reset http client: {reset_err}", reset_err
                        ) from reset_err
                    continue
                # Make sure a failed client is not used again.
                try:
                    self._reset_client(err)
                except Exception as reset_err:
                    logger.debug("resetting http client after failure: %s", reset_err)
                raise

    @staticmethod
    def _should_retry(err: BaseException) -> bool:
        return is_timeout(err)

    def _get_client(self) -> tuple:
        start = time.monotonic()
        with self._lock:
            if self._state is not None:
                return self._state, True
            # The timeout may run out while waiting for the lock.
            elapsed = time.monotonic() - start
            if self._timeout > 0 and elapsed > self._timeout:
                raise TimeoutError(f"timeout exceeded: {elapsed:.3f}s")
            logger.debug("creating a new http client")
            self._state = self._create_client()
            return self._state, False

    def _reset_client(self, reset_err: BaseException) -> _ClientState:
        with self._lock:
            old, self._state = self._state, None
            if old is not None:
                try:
                    old.client.close()
                except Exception as close_err:
                    logger.info("warning: failed to close the old http client: %s", close_err)
            logger.debug("re-creating the http client due to %s", reset_err)
            self._state = self._create_client()
            return self._state

    def _create_client(self) -> _ClientState:
        try:
            return self._create_transport()
        except Exception as err:
            raise _rewrap(f"initializing http transport: {err}", err) from err

    def _create_transport(self) -> _ClientState:
        try:
            dial = self._get_dialer()
        except Exception as err:
            raise _rewrap(f"bootstrapping {self._addr_redacted}: {err}", err) from err

        if self.supports_h3():
            logger.debug("using HTTP/2 for this upstream: HTTP/3 transport is not available")
        if not self.supports_http():
            raise OSError("HTTP1/1 and HTTP2 are not supported by this upstream")

        target = self._remote_address(dial)
        client = httpx.Client(
            verify=self._context,
            http1=HTTPVersion.HTTP11.value in self._next_protos,
            http2=HTTPVersion.HTTP2.value in self._next_protos,
            timeout=httpx.Timeout(self._timeout or None),
            limits=httpx.Limits(
                max_connections=DOH_MAX_CONNS_PER_HOST,
                max_keepalive_connections=DOH_MAX_IDLE_CONNS,
                keepalive_expiry=TRANSPORT_IDLE_CONN_TIMEOUT,
            ),
            trust_env=False,
            follow_redirects=False,
        )
        for name in ("user-agent", "accept-encoding"):
            if name in client.headers:
                del client.headers[name]
        return _ClientState(client=client, target=target)

    def _remote_address(self, dial: DialHandler) -> str:
        """Find the reachable server address without sending anything."""
        try:
            sock = dial("udp")
        except OSError as err:
            raise _rewrap(f"failed to dial: {err}", err) from err
        try:
            host, port = sock.getpeername()[:2]
        finally:
            sock.close()
        return _join_host_port(host, port)

    def _exchange_https(self, state: _ClientState, req: dns.message.Message) -> dns.message.Message:
        _log_begin(self._addr_redacted, NETWORK_TCP, req)
        failure: Optional[BaseException] = None
        try:
            return self._exchange_https_client(state, req)
        except Exception as err:
            failure = err
            raise
        finally:
            _log_finish(self._addr_redacted, NETWORK_TCP, failure)

    def _exchange_https_client(
        self, state: _ClientState, req: dns.message.Message
    ) -> dns.message.Message:
        addr = self._addr_redacted
        try:
            wire = req.to_wire()
        except dns.exception.DNSException as err:
            raise ValueError(f"packing message: {err}") from err

        target = dataclasses.replace(self._url, host=state.target)
        try:
            http_resp = state.client.get(
                build_query_url(target, wire),
                headers={"Accept": _MEDIA_TYPE, "Host": self._url.host},
                extensions={"sni_hostname": self._server_name},
            )
        except httpx.TimeoutException as err:
            raise TimeoutError(f"requesting {addr}: {err}") from err
        except httpx.HTTPError as err:
            raise OSError(f"requesting {addr}: {err}") from err

        self._verify(http_resp)

        if http_resp.status_code != 200:
            raise OSError(
                f"expected status 200, got {http_resp.status_code} from {addr}"
            )

        body = http_resp.content
        try:
            resp = dns.message.from_wire(body)
        except dns.exception.DNSException as err:
            raise dns.exception.FormError(
                f"unpacking response from {addr}: body is {body!r}: {err}"
            ) from err

        if resp.id != req.id:
            raise _IDMismatchError(f"id mismatch: got {resp.id}, want {req.id}")
        return resp

    def _verify(self, http_resp: httpx.Response) -> None:
        """Run the certificate callbacks when the TLS state is available."""
        if self._verify_server_certificate is None and self._verify_connection is None:
            return
        stream = http_resp.extensions.get("network_stream")
        ssl_object = stream.get_extra_info("ssl_object") if stream is not None else None
        if ssl_object is None:
            return
        if self._verify_server_certificate is not None:
            der = ssl_object.getpeercert(binary_form=True)
            self._verify_server_certificate([der] if der else [], [])
        if self._verify_connection is not None:
            self._verify_connection(ssl_object)


def _rewrap(message: str, err: BaseException) -> OSError:
    return TimeoutError(message) if is_timeout(err) else OSError(message)