"""Matching of plain integer values such as query types and rcodes."""

from __future__ import annotations

from typing import Iterable, Optional


class IntMatcher:
    """Matches integers against a fixed set."""

    def __init__(self, elems: Optional[Iterable[int]] = None) -> None:
        self._elems = frozenset(elems or ())

    def match(self, v: int) -> bool:
        return v in self._elems

    def __contains__(self, v: object) -> bool:
        return v in self._elems