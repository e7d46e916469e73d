"""The per-query context handed from one processing step to the next."""

from __future__ import annotations

import copy
import ipaddress
import threading
import time
from dataclasses import dataclass
from typing import Optional, Union

import dns.rdataclass
import dns.rdatatype

_Address = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

_MAX_MARK = (1 << 64) - 1


@dataclass(frozen=True)
class RequestMeta:
    """Metadata about a request: the client address (may be None) and transport."""

    client_addr: Optional[_Address] = None
    from_udp: bool = False


class MarkOverflowError(RuntimeError):
    """No more marks can be allocated."""

    def __init__(self) -> None:
        super().__init__("too many allocated marks")


_ZERO_META = RequestMeta()

_id_lock = threading.Lock()
_last_id = 0


def _next_context_id() -> int:
    global _last_id
    with _id_lock:
        _last_id = (_last_id + 1) & 0xFFFFFFFF
        return _last_id


def _copy_msg(msg):
    return copy.deepcopy(msg)


class Context:
    """A query context. It always holds a query; the response may be None.

    Not safe for concurrent use.
    """

    def __init__(self, q, meta: Optional[RequestMeta] = None) -> None:
        if q is None:
            raise ValueError("query msg is nil")
        self.start_time = time.time()
        self.q = q
        self.original_query = _copy_msg(q)
        self.id = _next_context_id()
        self.req_meta = meta if meta is not None else _ZERO_META
        self.response = None
        self._marks: set[int] = set()

    def __str__(self) -> str:
        if self.q.question:
            rrset = self.q.question[0]
            question = (
                f"{rrset.name.to_text()} "
                f"{dns.rdataclass.to_text(rrset.rdclass)} "
                f"{dns.rdatatype.to_text(rrset.rdtype)}"
            )
        else:
            question = "empty question"
        addr = self.req_meta.client_addr
        client = str(addr) if addr is not None else "unknown client"
        return f"{question} {self.q.id} {self.id} {client}"

    def copy(self) -> "Context":
        """Return a deep copy of this context."""
        return self.copy_to(Context.__new__(Context))

    def copy_to(self, other: "Context") -> "Context":
        """Deep copy this context into other and return other."""
        other.start_time = self.start_time
        other.q = _copy_msg(self.q)
        other.original_query = self.original_query
        other.req_meta = self.req_meta
        other.id = self.id
        if self.response is not None:
            other.response = _copy_msg(self.response)
        elif not hasattr(other, "response"):
            other.response = None
        if not hasattr(other, "_marks"):
            other._marks = set()
        for mark in self._marks:
            other.add_mark(mark)
        return other

    def add_mark(self, mark: int) -> None:
        self._marks.add(mark)

    def has_mark(self, mark: int) -> bool:
        return mark in self._marks

    @property
    def marks(self) -> frozenset:
        return frozenset(self._marks)


_mark_lock = threading.Lock()
_last_mark = 0


def allocate_mark() -> int:
    """Return a new, never used mark."""
    global _last_mark
    with _mark_lock:
        m = _last_mark + 1
        if m > _MAX_MARK:
            raise MarkOverflowError()
        _last_mark = m
        return m