"""Helpers that load IP prefixes into lists and combine IP matchers."""

from __future__ import annotations

import ipaddress
from typing import Callable, Iterable, Optional

from dnsrelay.netlist import NetList, NetMatcher


class NetMatcherGroup(NetMatcher):
    """A sequence of IP matchers; an address matches if any of them matches."""

    def __init__(self) -> None:
        self._matchers: list[NetMatcher] = []
        self._closers: list[Callable[[], None]] = []

    def append(self, matcher: NetMatcher) -> None:
        self._matchers.append(matcher)

    def append_closer(self, closer: Callable[[], None]) -> None:
        """Register a function to be called by ``close``."""
        self._closers.append(closer)

    def match(self, addr) -> bool:
        return any(m.match(addr) for m in self._matchers)

    def __len__(self) -> int:
        return sum(len(m) for m in self._matchers)

    def close(self) -> None:
        """Call every registered closer."""
        for closer in self._closers:
            closer()

    def __enter__(self) -> "NetMatcherGroup":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class DynamicNetMatcher(NetMatcher):
    """An IP matcher whose list is rebuilt from raw data on every update."""

    def __init__(self, parse_func: Callable[[bytes], NetList]) -> None:
        self._parse_func = parse_func
        self._list: Optional[NetList] = None

    def _current(self) -> NetList:
        current = self._list
        if current is None:
            raise RuntimeError("dynamic matcher has no data loaded")
        return current

    def update(self, data: bytes) -> None:
        """Parse data and replace the current list with the result."""
        self._list = self._parse_func(data)

    def match(self, addr) -> bool:
        return self._current().match(addr)

    def __len__(self) -> int:
        return len(self._current())


def load_from_text(netlist: NetList, s: str) -> None:
    """Add one address or "addr/bits" prefix to netlist (leaving it unsorted)."""
    if "/" in s:
        netlist.append(ipaddress.ip_network(s, strict=False))
        return
    addr = ipaddress.ip_address(s)
    netlist.append(ipaddress.ip_network((addr, addr.max_prefixlen)))


def load(netlist: NetList, ip: str) -> None:
    """Add one entry, ignoring surrounding whitespace."""
    load_from_text(netlist, ip.strip())


def _lines(reader: Iterable) -> Iterable[str]:
    for line in reader:
        if isinstance(line, (bytes, bytearray)):
            line = line.decode("utf-8")
        yield line


def load_from_reader(netlist: NetList, reader) -> None:
    """Load one entry per line; '#' starts a comment, text after a space is ignored."""
    for number, line in enumerate(_lines(reader), start=1):
        s = line.strip()
        s = s.partition("#")[0]
        s = s.partition(" ")[0]
        if not s:
            continue
        try:
            load_from_text(netlist, s)
        except ValueError as e:
            raise ValueError(f"invalid data at line #{number}: {e}") from e