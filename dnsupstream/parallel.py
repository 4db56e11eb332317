"""Exchanging a query with several upstreams concurrently."""

from __future__ import annotations

import concurrent.futures
import copy
import dataclasses
import time
from typing import Optional, Sequence

import dns.message

from .base import Upstream, logger
from .resolver import ParallelResolver


class NoUpstreamsError(ValueError):
    """No upstreams were given."""

    def __init__(self) -> None:
        super().__init__("no upstream specified")


class NoReplyError(OSError):
    """The upstream returned no response."""

    def __init__(self) -> None:
        super().__init__("no reply")


@dataclasses.dataclass
class ExchangeAllResult:
    """A successful response and the upstream that gave it."""

    resp: dns.message.Message
    upstream: Upstream


def _exchange_and_log(u: Upstream, req: dns.message.Message) -> Optional[dns.message.Message]:
    addr = u.address()
    req = copy.deepcopy(req)
    start = time.monotonic()
    try:
        reply = u.exchange(req)
    except Exception as err:
        if req.question:
            logger.debug(
                "upstream %s failed to exchange %s in %.3fs: %s",
                addr, req.question[0], time.monotonic() - start, err,
            )
        raise
    if req.question:
        logger.debug(
            "upstream %s exchanged %s successfully in %.3fs",
            addr, req.question[0], time.monotonic() - start,
        )
    return reply


def _exchange_checked(u: Upstream, req: dns.message.Message) -> ExchangeAllResult:
    reply = _exchange_and_log(u, req)
    if reply is None:
        raise NoReplyError()
    return ExchangeAllResult(resp=reply, upstream=u)


def _joined(errs: list, message: str) -> OSError:
    err = OSError(f"{message}: " + "; ".join(str(e) for e in errs))
    err.__cause__ = errs[0]
    return err


def exchange_parallel(upstreams: Sequence[Upstream], req: dns.message.Message) -> tuple:
    """Return ``(response, upstream)`` for the first upstream that answers."""
    if not upstreams:
        raise NoUpstreamsError()
    if len(upstreams) == 1:
        return _exchange_and_log(upstreams[0], req), upstreams[0]

    pool = concurrent.futures.ThreadPoolExecutor(max_workers=len(upstreams))
    try:
        futures = [pool.submit(_exchange_checked, u, req) for u in upstreams]
        errs = []
        for fut in concurrent.futures.as_completed(futures):
            try:
                res = fut.result()
            except NoReplyError:
                continue
            except Exception as err:
                errs.append(err)
                continue
            return res.resp, res.upstream
    finally:
        pool.shutdown(wait=False)

    if not errs:
        raise OSError("none of upstream servers responded")
    raise _joined(errs, "all upstreams failed")


def exchange_all(upstreams: Sequence[Upstream], req: dns.message.Message) -> list:
    """Return the results of all upstreams that answered, fastest first.

    Raises only if every upstream failed.
    """
    if not upstreams:
        raise NoUpstreamsError()
    if len(upstreams) == 1:
        return [_exchange_checked(upstreams[0], req)]

    results, errs = [], []
    with concurrent.futures.ThreadPoolExecutor(max_workers=len(upstreams)) as pool:
        futures = [pool.submit(_exchange_checked, u, req) for u in upstreams]
        for fut in concurrent.futures.as_completed(futures):
            try:
                results.append(fut.result())
            except Exception as err:
                errs.append(err)

    if len(errs) == len(upstreams):
        raise _joined(errs, "all upstreams failed to exchange")
    return results


def lookup_parallel(resolvers: Sequence, host: str) -> list:
    """Look up the addresses of ``host`` with all resolvers concurrently."""
    return ParallelResolver(resolvers).lookup_net_ip("ip", host)