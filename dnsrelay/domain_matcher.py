"""Domain name matchers: full, sub-domain, keyword, regexp and mixed.

All matchers are case-insensitive and fqdn-insensitive: "example.com" and
"EXAMPLE.com." give the same outcome. ``match`` returns a ``(matched, value)``
pair, where ``value`` is ``None`` when nothing matched.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from typing import Generic, Iterator, Optional, TypeVar

T = TypeVar("T")

MATCHER_FULL = "full"
MATCHER_DOMAIN = "domain"
MATCHER_REGEXP = "regexp"
MATCHER_KEYWORD = "keyword"


def trim_dot(s: str) -> str:
    """Remove one trailing '.' from s."""
    return s[:-1] if s.endswith(".") else s


def normalize_domain(s: str) -> str:
    """Lower-case s and drop its trailing dot ("GOOGLE.com." -> "google.com")."""
    return trim_dot(s).lower()


class Matcher(ABC, Generic[T]):
    """Something that matches domain names and knows how many rules it holds."""

    @abstractmethod
    def match(self, s: str) -> tuple[bool, Optional[T]]:
        """Return ``(matched, value)`` for the domain s."""

    @abstractmethod
    def __len__(self) -> int:
        """Return the number of rules."""


class ReverseDomainScanner:
    """Walks the labels of a domain from the last one to the first."""

    def __init__(self, s: str) -> None:
        self._s = trim_dot(s)
        self._p = len(self._s)
        self._t = len(self._s)

    def scan(self) -> bool:
        """Advance to the previous label; False once no label is left."""
        if self._p <= 0:
            return False
        self._t = self._p
        self._p = self._s.rfind(".", 0, self._p)
        return True

    def next_label_offset(self) -> int:
        """Offset of the current label in the dot-trimmed domain."""
        return self._p + 1

    def next_label(self) -> str:
        """The current label."""
        return self._s[self._p + 1 : self._t]


def _reverse_labels(s: str) -> Iterator[str]:
    scanner = ReverseDomainScanner(s)
    while scanner.scan():
        yield scanner.next_label()


class _LabelNode(Generic[T]):
    __slots__ = ("children", "value", "has_value")

    def __init__(self) -> None:
        self.children: dict[str, _LabelNode[T]] = {}
        self.value: Optional[T] = None
        self.has_value = False

    def store(self, value: T) -> None:
        self.value = value
        self.has_value = True

    def count(self) -> int:
        return sum(
            child.count() + (1 if child.has_value else 0)
            for child in self.children.values()
        )


class SubDomainMatcher(Matcher[T]):
    """Matches a domain and all of its sub-domains; the deepest rule wins."""

    def __init__(self) -> None:
        self._root: _LabelNode[T] = _LabelNode()

    def add(self, pattern: str, value: T) -> None:
        node = self._root
        for label in _reverse_labels(normalize_domain(pattern)):
            node = node.children.setdefault(label, _LabelNode())
        node.store(value)

    def match(self, s: str) -> tuple[bool, Optional[T]]:
        node = self._root
        matched, value = False, None
        for label in _reverse_labels(normalize_domain(s)):
            child = node.children.get(label)
            if child is None:
                break
            if child.has_value:
                matched, value = True, child.value
            node = child
        return matched, value

    def __len__(self) -> int:
        return self._root.count()


class FullMatcher(Matcher[T]):
    """Matches domains exactly."""

    def __init__(self) -> None:
        self._rules: dict[str, T] = {}

    def add(self, pattern: str, value: T) -> None:
        self._rules[normalize_domain(pattern)] = value

    def match(self, s: str) -> tuple[bool, Optional[T]]:
        key = normalize_domain(s)
        if key in self._rules:
            return True, self._rules[key]
        return False, None

    def __len__(self) -> int:
        return len(self._rules)


class KeywordMatcher(Matcher[T]):
    """Matches domains that contain a keyword."""

    def __init__(self) -> None:
        self._keywords: dict[str, T] = {}

    def add(self, pattern: str, value: T) -> None:
        self._keywords[normalize_domain(pattern)] = value

    def match(self, s: str) -> tuple[bool, Optional[T]]:
        s = normalize_domain(s)
        for keyword, value in self._keywords.items():
            if keyword in s:
                return True, value
        return False, None

    def __len__(self) -> int:
        return len(self._keywords)


class RegexMatcher(Matcher[T]):
    """Matches domains against regular expressions.

    Expressions are searched in the lower-case, non-fqdn form of the domain.
    """

    def __init__(self) -> None:
        self._regs: dict[str, tuple[re.Pattern[str], T]] = {}

    def add(self, pattern: str, value: T) -> None:
        existing = self._regs.get(pattern)
        if existing is not None:
            self._regs[pattern] = (existing[0], value)
            return
        try:
            compiled = re.compile(pattern)
        except re.error as e:
            raise ValueError(f"invalid regexp {pattern!r}: {e}") from e
        self._regs[pattern] = (compiled, value)

    def match(self, s: str) -> tuple[bool, Optional[T]]:
        s = normalize_domain(s)
        for compiled, value in self._regs.values():
            if compiled.search(s):
                return True, value
        return False, None

    def __len__(self) -> int:
        return len(self._regs)


class MixMatcher(Matcher[T]):
    """Combines full, domain, regexp and keyword matchers.

    Patterns are written as "type:pattern"; a pattern without a type goes to
    the default matcher. Matching tries full, domain, regexp and keyword in
    that order.
    """

    def __init__(self) -> None:
        self._default = MATCHER_FULL
        self._full: FullMatcher[T] = FullMatcher()
        self._domain: SubDomainMatcher[T] = SubDomainMatcher()
        self._regex: RegexMatcher[T] = RegexMatcher()
        self._keyword: KeywordMatcher[T] = KeywordMatcher()

    def _all(self) -> tuple[Matcher[T], ...]:
        return (self._full, self._domain, self._regex, self._keyword)

    def set_default_matcher(self, typ: str) -> None:
        self._default = typ

    def get_sub_matcher(self, typ: str):
        """Return the sub-matcher for typ, or None if typ is unknown."""
        return {
            MATCHER_FULL: self._full,
            MATCHER_DOMAIN: self._domain,
            MATCHER_REGEXP: self._regex,
            MATCHER_KEYWORD: self._keyword,
        }.get(typ)

    def add(self, pattern: str, value: T) -> None:
        typ, sep, rest = pattern.partition(":")
        if not sep:
            typ, rest = "", pattern
        if not typ:
            typ = self._default or MATCHER_FULL
        sub = self.get_sub_matcher(typ)
        if sub is None:
            raise ValueError(f"unsupported match type [{typ}]")
        sub.add(rest, value)

    def match(self, s: str) -> tuple[bool, Optional[T]]:
        for matcher in self._all():
            matched, value = matcher.match(s)
            if matched:
                return True, value
        return False, None

    def __len__(self) -> int:
        return sum(len(m) for m in self._all())