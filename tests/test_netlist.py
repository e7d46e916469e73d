import ipaddress

import pytest

from dnsrelay.netlist import InvalidAddrError, NetList, NotSortedError

MERGE_PREFIXES = [
    "192.168.0.0/32",
    "192.168.0.0/24",
    "192.168.0.0/16",
    "192.168.1.1/24",
    "192.168.9.24/24",
    "192.168.3.0/24",
    "192.169.0.0/16",
]


@pytest.fixture
def merged_list():
    nl = NetList()
    nl.append(*MERGE_PREFIXES)
    nl.sort()
    return nl


def test_merge_reduces_length(merged_list):
    assert len(merged_list) == 2


@pytest.mark.parametrize(
    "addr, want",
    [
        ("192.167.255.255", False),
        ("192.168.0.0", True),
        ("192.168.1.1", True),
        ("192.168.9.255", True),
        ("192.168.255.255", True),
        ("192.169.1.1", True),
        ("192.170.1.1", False),
        ("1.1.1.1", False),
    ],
)
def test_merged_contains(merged_list, addr, want):
    assert merged_list.contains(addr) is want


@pytest.mark.parametrize(
    "addr, want",
    [
        ("1.0.0.0", True),
        ("1.0.0.1", True),
        ("1.0.1.0", False),
        ("2.0.0.0", True),
        ("2.0.1.255", True),
        ("2.0.2.0", False),
        ("3.0.0.0", True),
        ("2000:0000::", True),
        ("2000:0000::1", True),
        ("2000:0000:1::", True),
        ("2000:0001::", False),
        ("2000:2000::1", True),
    ],
)
def test_mixed_families(addr, want):
    nl = NetList()
    nl.append("1.0.0.0/24", "2.0.0.0/23", "3.0.0.0", "2000:0000::/32", "2000:2000::1")
    nl.sort()
    assert nl.match(addr) is want


def test_lookup_before_sort_raises():
    nl = NetList()
    nl.append("127.0.0.0/24")
    with pytest.raises(NotSortedError):
        nl.contains("127.0.0.1")


def test_append_after_sort_requires_sort_again():
    nl = NetList()
    nl.append("127.0.0.0/24")
    nl.sort()
    assert nl.contains("127.0.0.1") is True
    nl.append("128.0.0.1")
    with pytest.raises(NotSortedError):
        nl.contains("128.0.0.1")
    nl.sort()
    assert nl.contains("128.0.0.1") is True


@pytest.mark.parametrize("addr", [None, "not an ip", "", 42])
def test_invalid_addr_raises(addr):
    nl = NetList()
    nl.append("127.0.0.0/24")
    nl.sort()
    with pytest.raises(InvalidAddrError):
        nl.contains(addr)


def test_invalid_prefix_raises():
    nl = NetList()
    with pytest.raises(ValueError):
        nl.append("not-a-prefix")
    assert len(nl) == 0


def test_address_objects_and_networks_accepted():
    nl = NetList()
    nl.append(ipaddress.ip_network("127.0.0.0/24"))
    nl.sort()
    assert nl.contains(ipaddress.ip_address("127.0.0.1")) is True
    assert nl.contains(ipaddress.ip_address("128.0.0.1")) is False


def test_ipv4_list_does_not_match_plain_ipv6():
    nl = NetList()
    nl.append("127.0.0.0/24")
    nl.sort()
    assert nl.contains("2000:0000::1") is False


def test_sort_is_idempotent(merged_list):
    before = [merged_list.contains(a) for a in ("192.168.1.1", "192.170.1.1")]
    merged_list.sort()
    assert len(merged_list) == 2
    assert [merged_list.contains(a) for a in ("192.168.1.1", "192.170.1.1")] == before


def test_merge_never_grows_and_keeps_every_appended_address():
    nl = NetList()
    nl.append(*MERGE_PREFIXES)
    appended = len(nl)
    nl.sort()
    assert len(nl) <= appended
    for prefix in MERGE_PREFIXES:
        network = ipaddress.ip_network(prefix, strict=False)
        assert nl.contains(network.network_address)
        assert nl.contains(network.broadcast_address)


def test_empty_list_matches_nothing():
    nl = NetList()
    nl.sort()
    assert len(nl) == 0
    assert nl.contains("127.0.0.1") is False