"""Block checksum headers and the little-endian integers of the wire format."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import BinaryIO

# Largest block length accepted from older peers (OLD_MAX_BLOCK_SIZE).
MAX_BLOCK_LENGTH = 1 << 29
# Longest strong checksum a peer may ask for (MD4 digest size).
MAX_CHECKSUM_LENGTH = 16

_INT32 = struct.Struct("<i")
_INT64 = struct.Struct("<q")
_INT32_MAX = 0x7FFFFFFF


def _read_exact(stream: BinaryIO, size: int) -> bytes:
    """Read exactly ``size`` bytes, raising EOFError on a short stream."""
    parts = []
    remaining = size
    while remaining > 0:
        data = stream.read(remaining)
        if not data:
            raise EOFError(f"unexpected end of stream: wanted {size} bytes, got {size - remaining}")
        parts.append(data)
        remaining -= len(data)
    return b"".join(parts)


def read_int32(stream: BinaryIO) -> int:
    """Read one signed 32-bit little-endian integer."""
    return _INT32.unpack(_read_exact(stream, _INT32.size))[0]


def write_int32(stream: BinaryIO, value: int) -> None:
    """Write one signed 32-bit little-endian integer."""
    stream.write(_INT32.pack(value))


def write_int64(stream: BinaryIO, value: int) -> None:
    """Write a 64-bit integer the way the protocol encodes long values.

    Values in ``0..2**31-1`` go out as a plain 32-bit integer; anything else
    is announced by a 32-bit ``-1`` followed by the full 64-bit value.
    """
    if 0 <= value <= _INT32_MAX:
        write_int32(stream, value)
        return
    stream.write(_INT32.pack(-1) + _INT64.pack(value))


@dataclass
class SumBuf:
    """Checksums of one block of the receiver's copy of a file."""

    offset: int = 0
    length: int = 0
    index: int = 0
    sum1: int = 0
    sum2: bytes = b""


@dataclass
class SumHead:
    """Header describing the block checksums sent for one file."""

    checksum_count: int = 0
    block_length: int = 0
    checksum_length: int = 0
    remainder_length: int = 0
    sums: list[SumBuf] = field(default_factory=list)

    def read_from(self, stream: BinaryIO) -> SumHead:
        """Fill the header fields from ``stream``, validating each one."""
        self.checksum_count = read_int32(stream)
        if self.checksum_count < 0:
            raise ValueError(f"invalid checksum count {self.checksum_count}")

        self.block_length = read_int32(stream)
        if self.block_length < 0 or self.block_length > MAX_BLOCK_LENGTH:
            raise ValueError(f"invalid block length {self.block_length}")

        self.checksum_length = read_int32(stream)
        if self.checksum_length < 0 or self.checksum_length > MAX_CHECKSUM_LENGTH:
            raise ValueError(f"invalid checksum length {self.checksum_length}")

        self.remainder_length = read_int32(stream)
        if self.remainder_length < 0 or self.remainder_length > self.block_length:
            raise ValueError(f"invalid remainder length {self.remainder_length}")

        return self

    def write_to(self, stream: BinaryIO) -> None:
        """Write the four header fields in a single write."""
        stream.write(
            b"".join(
                _INT32.pack(value)
                for value in (
                    self.checksum_count,
                    self.block_length,
                    self.checksum_length,
                    self.remainder_length,
                )
            )
        )


def receive_sums(stream: BinaryIO) -> SumHead:
    """Read a checksum header followed by its per-block checksums."""
    head = SumHead().read_from(stream)
    offset = 0
    for index in range(head.checksum_count):
        sum1 = read_int32(stream) & 0xFFFFFFFF
        if index == head.checksum_count - 1 and head.remainder_length != 0:
            length = head.remainder_length
        else:
            length = head.block_length
        sum2 = _read_exact(stream, head.checksum_length)
        head.sums.append(SumBuf(offset=offset, length=length, index=index, sum1=sum1, sum2=sum2))
        offset += length
    return head