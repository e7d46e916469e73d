"""Handlers that turn an incoming DNS query into a response."""

from __future__ import annotations

import copy
import logging
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional

import dns.flags
import dns.message
import dns.rcode

from dnsrelay.query_context import Context, RequestMeta

DEFAULT_QUERY_TIMEOUT = 5.0

# An entry is called with the query context and a deadline on the
# time.monotonic() clock; it stores its answer in qctx.response.
Entry = Callable[[Context, float], None]


class Handler(ABC):
    """Handles one DNS query.

    ``serve_dns`` must not keep req after it returns and should always return
    a response, turning DNS failures into error responses itself. Raising
    means the problem lies with the downstream connection, which the caller
    then closes.
    """

    @abstractmethod
    def serve_dns(self, req, meta: RequestMeta):
        """Return the response to req."""


def _servfail(req):
    resp = dns.message.make_response(req)
    resp.set_rcode(dns.rcode.SERVFAIL)
    return resp


class EntryHandler(Handler):
    """Runs an entry for each query.

    If the entry fails or leaves no response, a SERVFAIL response is returned.
    """

    def __init__(
        self,
        entry: Optional[Entry],
        logger: Optional[logging.Logger] = None,
        query_timeout: float = DEFAULT_QUERY_TIMEOUT,
        recursion_available: bool = False,
    ) -> None:
        if entry is None:
            raise ValueError("nil entry")
        self.entry = entry
        self.logger = logger or logging.getLogger(__name__)
        self.query_timeout = (
            query_timeout if query_timeout and query_timeout > 0 else DEFAULT_QUERY_TIMEOUT
        )
        self.recursion_available = recursion_available

    def serve_dns(self, req, meta: RequestMeta):
        deadline = time.monotonic() + self.query_timeout
        qctx = Context(req, meta)
        failed = False
        try:
            self.entry(qctx, deadline)
        except Exception as e:
            failed = True
            self.logger.warning("entry returned an err: %s, query: %s", e, qctx)
        else:
            self.logger.debug("entry returned, query: %s", qctx)

        resp = qctx.response
        if not failed and resp is None:
            self.logger.error("entry returned an nil response, query: %s", qctx)
        if resp is None or failed:
            resp = _servfail(req)
        if self.recursion_available:
            resp.flags |= dns.flags.RA
        return resp


class DummyServerHandler(Handler):
    """Answers every query with a fixed message, a plain reply, or an error."""

    def __init__(self, want_msg=None, want_err: Optional[BaseException] = None) -> None:
        self.want_msg = want_msg
        self.want_err = want_err

    def serve_dns(self, req, meta: RequestMeta):
        if self.want_err is not None:
            raise self.want_err
        if self.want_msg is not None:
            resp = copy.deepcopy(self.want_msg)
            resp.id = req.id
            return resp
        return dns.message.make_response(req)