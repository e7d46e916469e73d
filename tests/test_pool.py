import io

import dns.message
import dns.rdatatype
import pytest

from dnsrelay.pool import (
    PACK_BUF_SIZE,
    Allocator,
    BytesBufPool,
    get_buf,
    pack_buffer,
    shard,
)


@pytest.mark.parametrize(
    "size,want_cap",
    [(0, 1), (1, 1), (2, 2), (12, 16), (256, 256)],
)
def test_allocator_get(size, want_cap):
    alloc = Allocator(8)
    for _ in range(5):
        b = alloc.get(size)
        assert len(b) == size
        assert b.capacity == want_cap
        alloc.release(b)


@pytest.mark.parametrize("size", [-1, 257])
def test_allocator_get_invalid(size):
    alloc = Allocator(8)
    with pytest.raises(ValueError):
        alloc.get(size)


@pytest.mark.parametrize(
    "size,want",
    [
        (-1, 0),
        (0, 0),
        (1, 0),
        (2, 1),
        (3, 2),
        (4, 2),
        (5, 3),
        (8, 3),
        (1023, 10),
        (1024, 10),
        (1025, 11),
    ],
)
def test_shard(size, want):
    assert shard(size) == want


@pytest.mark.parametrize("bits", [0, -1, 64])
def test_allocator_invalid_bits(bits):
    with pytest.raises(ValueError):
        Allocator(bits)


def test_released_buffer_is_reused():
    alloc = Allocator(8)
    b = alloc.get(12)
    storage = b.all_bytes()
    alloc.release(b)
    again = alloc.get(10)
    assert again.all_bytes() is storage
    assert len(again) == 10


def test_release_foreign_capacity_raises():
    big = Allocator(10).get(1024)
    with pytest.raises(ValueError):
        Allocator(8).release(big)


def test_buffer_length_overflow():
    b = Allocator(8).get(12)
    with pytest.raises(ValueError):
        b.length = 17
    b.length = 16
    assert len(b.bytes()) == 16


def test_buffer_context_manager_releases():
    alloc = Allocator(8)
    with alloc.get(4) as b:
        storage = b.all_bytes()
    assert alloc.get(4).all_bytes() is storage


def test_get_buf():
    b = get_buf(1000)
    assert len(b) == 1000
    assert b.capacity == 1024
    b.release()


def test_bytes_buf_pool_reset_on_release():
    pool = BytesBufPool(512)
    buf = pool.get()
    buf.write(b"abc")
    pool.release(buf)
    again = pool.get()
    assert again is buf
    assert again.getvalue() == b""
    assert isinstance(again, io.BytesIO)


def test_bytes_buf_pool_negative_size():
    with pytest.raises(ValueError):
        BytesBufPool(-1)


def test_pack_buffer_no_allocation():
    m = dns.message.make_query("123.", dns.rdatatype.AAAA)
    wire, buf = pack_buffer(m)
    assert wire.obj is buf.all_bytes()
    assert buf.capacity == PACK_BUF_SIZE
    assert bytes(wire) == m.to_wire()
    parsed = dns.message.from_wire(bytes(wire))
    assert parsed.question == m.question
    buf.release()