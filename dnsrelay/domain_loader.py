"""Helpers that load domain rules into matchers and combine matchers."""

from __future__ import annotations

import io
import threading
from dataclasses import dataclass, field
from typing import Callable, Generic, Iterable, Optional, TypeVar, Union

from dnsrelay.domain_matcher import MATCHER_DOMAIN, Matcher, MixMatcher

T = TypeVar("T")

ParseStringFunc = Callable[[str], "tuple[str, object]"]


def _pattern_only(s: str) -> tuple[str, None]:
    fields = s.split()
    if len(fields) == 1:
        return fields[0], None
    raise ValueError("string does not only contain pattern")


def _remove_comment(s: str, symbol: str) -> str:
    return s.partition(symbol)[0]


def load(matcher, s: str, parse_string: Optional[ParseStringFunc] = None) -> None:
    """Parse one rule string and add it to matcher.

    parse_string turns the string into ``(pattern, value)``; by default the
    string must hold exactly one pattern and the value is None.
    """
    parse = parse_string or _pattern_only
    pattern, value = parse(s)
    matcher.add(pattern, value)


def batch_load(
    matcher, entries: Iterable[str], parse_string: Optional[ParseStringFunc] = None
) -> None:
    """Load every entry with ``load``, stopping at the first failure."""
    for s in entries:
        try:
            load(matcher, s, parse_string)
        except ValueError as e:
            raise ValueError(f"failed to load data {s}: {e}") from e


class MatcherGroup(Matcher[T]):
    """A sequence of matchers; the first one that matches wins."""

    def __init__(self) -> None:
        self._matchers: list[Matcher[T]] = []
        self._closers: list[Callable[[], None]] = []

    def append(self, matcher: Matcher[T]) -> None:
        self._matchers.append(matcher)

    def append_closer(self, closer: Callable[[], None]) -> None:
        """Register a function to be called by ``close``."""
        self._closers.append(closer)

    def match(self, s: str) -> tuple[bool, Optional[T]]:
        for sub in self._matchers:
            matched, value = sub.match(s)
            if matched:
                return True, value
        return False, None

    def __len__(self) -> int:
        return sum(len(sub) for sub in self._matchers)

    def close(self) -> None:
        """Call every registered closer."""
        for closer in self._closers:
            closer()

    def __enter__(self) -> "MatcherGroup[T]":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class DynamicMatcher(Matcher[T]):
    """A matcher whose rules are rebuilt from raw data on every update."""

    def __init__(self, parser_func: Callable[[bytes], Matcher[T]]) -> None:
        self._parser_func = parser_func
        self._lock = threading.Lock()
        self._matcher: Optional[Matcher[T]] = None

    def _current(self) -> Matcher[T]:
        with self._lock:
            matcher = self._matcher
        if matcher is None:
            raise RuntimeError("dynamic matcher has no data loaded")
        return matcher

    def update(self, data: bytes) -> None:
        """Parse data and replace the current rules with the result."""
        matcher = self._parser_func(data)
        with self._lock:
            self._matcher = matcher

    def match(self, s: str) -> tuple[bool, Optional[T]]:
        return self._current().match(s)

    def __len__(self) -> int:
        return len(self._current())


def _lines(reader: Union[io.IOBase, Iterable]) -> Iterable[str]:
    for line in reader:
        if isinstance(line, (bytes, bytearray)):
            line = line.decode("utf-8")
        yield line.rstrip("\r\n")


def load_from_text_reader(
    matcher, reader, parse_string: Optional[ParseStringFunc] = None
) -> None:
    """Load one rule per line from reader, skipping blanks and '#' comments."""
    for number, line in enumerate(_lines(reader), start=1):
        s = _remove_comment(line, "#").strip()
        if not s:
            continue
        try:
            load(matcher, s, parse_string)
        except ValueError as e:
            raise ValueError(f"line {number}: {e}") from e


@dataclass
class V2Filter:
    """A tag of a geosite list and the attributes its domains must carry."""

    tag: str
    attrs: list[str] = field(default_factory=list)


def parse_v2_suffix(s: str) -> list[V2Filter]:
    """Parse "tag[@attr@attr...],tag[@attr...]..." into filters."""
    filters = []
    for part in s.split(","):
        part = part.strip()
        if not part:
            continue
        tag, *attrs = part.split("@")
        filters.append(V2Filter(tag=tag, attrs=attrs))
    return filters


def new_domain_mix_matcher() -> MixMatcher:
    """A MixMatcher whose untyped patterns are sub-domain rules."""
    matcher: MixMatcher = MixMatcher()
    matcher.set_default_matcher(MATCHER_DOMAIN)
    return matcher


def parse_text_domain_file(data: Union[bytes, str]) -> MixMatcher:
    """Build a domain MixMatcher from a text rule file."""
    if isinstance(data, (bytes, bytearray)):
        data = data.decode("utf-8")
    matcher = new_domain_mix_matcher()
    load_from_text_reader(matcher, io.StringIO(data), None)
    return matcher