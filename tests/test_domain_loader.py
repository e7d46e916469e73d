import io

import pytest

from dnsrelay.domain_loader import (
    DynamicMatcher,
    MatcherGroup,
    V2Filter,
    batch_load,
    load,
    load_from_text_reader,
    new_domain_mix_matcher,
    parse_text_domain_file,
    parse_v2_suffix,
)
from dnsrelay.domain_matcher import FullMatcher


@pytest.mark.parametrize(
    "arg, want",
    [
        ("test@a1@a2,,", [V2Filter(tag="test", attrs=["a1", "a2"])]),
        (
            ",test@a1,,test@a1",
            [V2Filter(tag="test", attrs=["a1"]), V2Filter(tag="test", attrs=["a1"])],
        ),
        ("", []),
        (" cn ", [V2Filter(tag="cn", attrs=[])]),
    ],
)
def test_parse_v2_suffix(arg, want):
    assert parse_v2_suffix(arg) == want


def test_load_pattern_only():
    m = FullMatcher()
    load(m, "example.com", None)
    assert m.match("EXAMPLE.com.") == (True, None)


def test_load_rejects_extra_fields():
    m = FullMatcher()
    with pytest.raises(ValueError, match="only contain pattern"):
        load(m, "example.com extra", None)
    assert len(m) == 0


def test_load_custom_parser():
    m = FullMatcher()

    def parse(s):
        pattern, value = s.split()
        return pattern, int(value)

    load(m, "example.com 7", parse)
    assert m.match("example.com") == (True, 7)


def test_batch_load_error_names_entry():
    m = FullMatcher()
    with pytest.raises(ValueError, match="failed to load data bad entry"):
        batch_load(m, ["good.com", "bad entry"], None)
    assert m.match("good.com") == (True, None)


def test_new_domain_mix_matcher_defaults_to_domain():
    m = new_domain_mix_matcher()
    m.add("example.com", None)
    assert m.match("a.example.com")[0] is True
    assert m.match("example.org")[0] is False


def test_parse_text_domain_file():
    data = b"# comment\nexample.com # trailing\nfull:exact.org\n\n"
    m = parse_text_domain_file(data)
    assert len(m) == 2
    assert m.match("sub.example.com")[0] is True
    assert m.match("exact.org")[0] is True
    assert m.match("sub.exact.org")[0] is False


def test_load_from_text_reader_reports_line():
    m = new_domain_mix_matcher()
    reader = io.StringIO("ok.com\n\nunknown:x.com\n")
    with pytest.raises(ValueError, match="line 3"):
        load_from_text_reader(m, reader, None)


def test_matcher_group_first_match_wins():
    a, b = FullMatcher(), FullMatcher()
    a.add("x.com", 1)
    b.add("x.com", 2)
    b.add("y.com", 3)
    g = MatcherGroup()
    g.append(a)
    g.append(b)
    assert g.match("x.com") == (True, 1)
    assert g.match("y.com") == (True, 3)
    assert g.match("z.com") == (False, None)
    assert len(g) == 3


def test_matcher_group_close_calls_closers():
    calls = []
    g = MatcherGroup()
    g.append_closer(lambda: calls.append("a"))
    g.append_closer(lambda: calls.append("b"))
    g.close()
    assert calls == ["a", "b"]


def test_dynamic_matcher_update_replaces_rules():
    d = DynamicMatcher(parse_text_domain_file)
    with pytest.raises(RuntimeError):
        d.match("example.com")
    d.update(b"example.com\n")
    assert d.match("a.example.com")[0] is True
    assert len(d) == 1
    d.update(b"example.org\nexample.net\n")
    assert d.match("a.example.com")[0] is False
    assert len(d) == 2


def test_dynamic_matcher_failed_update_keeps_old():
    d = DynamicMatcher(parse_text_domain_file)
    d.update(b"example.com\n")
    with pytest.raises(ValueError):
        d.update(b"bad:rule\n")
    assert d.match("example.com")[0] is True