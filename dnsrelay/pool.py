"""Reusable byte buffers sized in powers of two, and a pool of byte streams.

Buffers of fewer than ``1 << max_pool_bits_len`` bytes are kept in free lists
after release, so the space wasted by rounding up is never more than half.
"""

from __future__ import annotations

import io
import threading
from typing import Optional

_INT_BITS = 64
_MAX_INT = (1 << (_INT_BITS - 1)) - 1

# Packing a DNS message gets a buffer this big, in the hope that it is reused.
PACK_BUF_SIZE = 4096


def shard(size: int) -> int:
    """Index of the free list whose buffers can hold size bytes."""
    if size <= 1:
        return 0
    return (size - 1).bit_length()


class Buffer:
    """A fixed-capacity byte buffer that remembers how much of it is in use."""

    __slots__ = ("_allocator", "_data", "_length")

    def __init__(self, allocator: "Allocator", data: bytearray) -> None:
        self._allocator = allocator
        self._data = data
        self._length = len(data)

    @property
    def length(self) -> int:
        """Number of bytes in use."""
        return self._length

    @length.setter
    def length(self, value: int) -> None:
        if value < 0 or value > len(self._data):
            raise ValueError("buffer length overflowed")
        self._length = value

    @property
    def capacity(self) -> int:
        """Total size of the underlying storage."""
        return len(self._data)

    def __len__(self) -> int:
        return self._length

    def bytes(self) -> memoryview:
        """A view of the bytes in use."""
        return memoryview(self._data)[: self._length]

    def all_bytes(self) -> bytearray:
        """The whole underlying storage."""
        return self._data

    def release(self) -> None:
        """Give the buffer back to the allocator it came from."""
        self._allocator.release(self)

    def __enter__(self) -> "Buffer":
        return self

    def __exit__(self, *exc) -> None:
        self.release()


class Allocator:
    """Hands out buffers whose capacity is the next power of two of the size."""

    def __init__(self, max_pool_bits_len: int) -> None:
        if max_pool_bits_len > _INT_BITS - 1 or max_pool_bits_len <= 0:
            raise ValueError("invalid pool length")
        if max_pool_bits_len == _INT_BITS - 1:
            self._max_pool_len = _MAX_INT
        else:
            self._max_pool_len = 1 << max_pool_bits_len
        self._free: list[list[Buffer]] = [[] for _ in range(max_pool_bits_len + 1)]
        self._lock = threading.Lock()

    @property
    def max_pool_len(self) -> int:
        """The largest size this allocator will hand out."""
        return self._max_pool_len

    def get(self, size: int) -> Buffer:
        """Return a buffer of length size with the most fitting capacity."""
        if size < 0:
            raise ValueError(f"invalid slice size {size}")
        if size > self._max_pool_len:
            raise ValueError(f"slice size {size} is too large")
        i = shard(size)
        buf: Optional[Buffer] = None
        with self._lock:
            if self._free[i]:
                buf = self._free[i].pop()
        if buf is None:
            buf = Buffer(self, bytearray(min(1 << i, _MAX_INT)))
        buf.length = size
        return buf

    def release(self, buf: Buffer) -> None:
        """Put buf back into its free list."""
        c = buf.capacity
        i = shard(c)
        if c == 0 or c > self._max_pool_len or c != 1 << i:
            raise ValueError("unexpected cap size")
        with self._lock:
            self._free[i].append(buf)


_default_allocator = Allocator(_INT_BITS - 1)


def get_buf(size: int) -> Buffer:
    """Return a buffer of length size from the shared allocator."""
    return _default_allocator.get(size)


class BytesBufPool:
    """A pool of in-memory byte streams that are emptied on release."""

    def __init__(self, init_size: int) -> None:
        if init_size < 0:
            raise ValueError(f"negative init size {init_size}")
        self.init_size = init_size
        self._free: list[io.BytesIO] = []
        self._lock = threading.Lock()

    def get(self) -> io.BytesIO:
        with self._lock:
            if self._free:
                return self._free.pop()
        return io.BytesIO()

    def release(self, buf: io.BytesIO) -> None:
        """Empty buf and keep it for the next ``get``."""
        buf.seek(0)
        buf.truncate()
        with self._lock:
            self._free.append(buf)


def pack_buffer(msg) -> tuple[memoryview, Buffer]:
    """Pack a DNS message to wire format inside a pooled buffer.

    Returns the wire bytes and the buffer that holds them; release the buffer
    once the wire bytes are no longer needed.
    """
    wire = msg.to_wire()
    buf = get_buf(max(PACK_BUF_SIZE, len(wire)))
    memoryview(buf.all_bytes())[: len(wire)] = wire
    buf.length = len(wire)
    return buf.bytes(), buf