"""A sorted list of IP prefixes with binary-search lookup.

IPv4 prefixes are stored in their IPv4-mapped IPv6 form, so one list holds
both families.
"""

from __future__ import annotations

import ipaddress
from abc import ABC, abstractmethod
from bisect import bisect_right
from typing import Union

_Address = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
_Network = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

_V4_MAPPED = 0xFFFF << 32


class NotSortedError(RuntimeError):
    """The list was modified and not sorted before a lookup."""

    def __init__(self) -> None:
        super().__init__("list is not sorted")


class InvalidAddrError(ValueError):
    """The address to look up is not a valid IP address."""

    def __init__(self) -> None:
        super().__init__("addr is invalid")


class NetMatcher(ABC):
    """Something that matches IP addresses."""

    @abstractmethod
    def match(self, addr) -> bool:
        """Report whether addr is matched."""

    @abstractmethod
    def __len__(self) -> int:
        """Return the number of entries."""


def _to_network(prefix) -> _Network:
    if isinstance(prefix, (ipaddress.IPv4Network, ipaddress.IPv6Network)):
        return prefix
    return ipaddress.ip_network(prefix, strict=False)


def _to6_network(prefix) -> ipaddress.IPv6Network:
    net = _to_network(prefix)
    if net.version == 4:
        return ipaddress.IPv6Network(
            (_V4_MAPPED | int(net.network_address), net.prefixlen + 96)
        )
    return net


def _to6_int(addr) -> int:
    if isinstance(addr, str):
        try:
            addr = ipaddress.ip_address(addr)
        except ValueError:
            raise InvalidAddrError() from None
    if isinstance(addr, ipaddress.IPv4Address):
        return _V4_MAPPED | int(addr)
    if isinstance(addr, ipaddress.IPv6Address):
        return int(addr)
    raise InvalidAddrError()


class NetList(NetMatcher):
    """A list of IP prefixes, searched by binary search once sorted.

    Call ``sort`` after appending and before looking anything up.
    """

    def __init__(self) -> None:
        self._nets: list[ipaddress.IPv6Network] = []
        self._starts: list[int] = []
        self._sorted = False

    def append(self, *args) -> None:
        """Add prefixes (network objects, "addr/bits" or bare addresses)."""
        converted = [_to6_network(p) for p in args]
        self._nets.extend(converted)
        self._sorted = False

    def sort(self) -> None:
        """Sort the list and merge prefixes contained in others."""
        if self._sorted:
            return
        self._nets.sort(key=lambda n: int(n.network_address))
        merged: list[ipaddress.IPv6Network] = []
        for net in self._nets:
            if merged:
                last = merged[-1]
                if net.network_address == last.network_address:
                    if net.prefixlen < last.prefixlen:
                        merged[-1] = net
                    continue
                if net.network_address in last:
                    continue
            merged.append(net)
        self._nets = merged
        self._starts = [int(n.network_address) for n in merged]
        self._sorted = True

    def __len__(self) -> int:
        return len(self._nets)

    def match(self, addr) -> bool:
        return self.contains(addr)

    def contains(self, addr) -> bool:
        """Report whether any prefix in the list includes addr."""
        if not self._sorted:
            raise NotSortedError()
        value = _to6_int(addr)
        i = bisect_right(self._starts, value)
        if i == 0:
            return False
        return value <= int(self._nets[i - 1].broadcast_address)