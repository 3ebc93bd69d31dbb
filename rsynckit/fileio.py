"""Windowed, aligned reads over a seekable file."""

from __future__ import annotations

from typing import BinaryIO

ALIGN_BOUNDARY = 1024


class FileChangedError(OSError):
    """Raised when a mapped file ends earlier than its recorded size."""


def aligned_length(length: int) -> int:
    """Round ``length`` up to a multiple of the alignment boundary."""
    return ((length - 1) | (ALIGN_BOUNDARY - 1)) + 1


def aligned_overshoot(offset: int) -> int:
    """Return how far ``offset`` lies past the previous alignment boundary."""
    return offset & (ALIGN_BOUNDARY - 1)


class MapStruct:
    """A sliding read window over a file of known size."""

    def __init__(self, f: BinaryIO, file_size: int, def_window_size: int) -> None:
        self.f = f
        self.file_size = file_size
        self.def_window_size = def_window_size
        self.window = bytearray()
        self.p_offset = 0  # window start
        self.p_fd_offset = 0  # position of the file cursor
        self.p_size = 0  # largest window allocated so far
        self.p_len = 0  # current (rounded) window length
        self.error: BaseException | None = None

    def ptr(self, offset: int, length: int) -> bytes:
        """Return ``length`` bytes of the file starting at ``offset``."""
        if length == 0:
            return b""
        if length < 0:
            raise ValueError(f"invalid length: {length} < 0")

        if offset >= self.p_offset and offset + length <= self.p_offset + self.p_len:
            off = offset - self.p_offset
            return bytes(self.window[off : off + length])

        fudge = aligned_overshoot(offset)
        window_start = offset - fudge
        window_size = self.def_window_size
        if window_start + window_size > self.file_size:
            window_size = self.file_size - window_start
        if window_size < length + fudge:
            window_size = aligned_length(length + fudge)
        if window_size > self.p_size:
            self.window.extend(bytes(window_size - len(self.window)))
            self.p_size = window_size

        read_start = window_start
        read_size = window_size
        read_offset = 0

        window_end = self.p_offset + self.p_len
        if self.p_offset <= window_start < window_end and window_start + window_size >= window_end:
            # Keep the overlapping tail of the old window, read only the rest.
            read_start = window_end
            read_offset = read_start - window_start
            read_size = window_size - read_offset
            off = self.p_len - read_offset
            self.window[:read_offset] = self.window[off : off + read_offset]

        if read_size <= 0:
            raise ValueError(f"invalid readSize: {read_size} <= 0")

        if self.p_fd_offset != read_start:
            try:
                self.f.seek(read_start)
            except OSError as exc:
                raise OSError(f"seek error: {exc}") from exc
            self.p_fd_offset = read_start

        self.p_offset = window_start
        self.p_len = window_size

        while read_size > 0:
            try:
                data = self.f.read(read_size)
            except OSError as exc:
                self.error = exc
                raise FileChangedError("file has changed mid-transfer") from exc
            if not data:
                self.error = EOFError("unexpected end of file")
                raise FileChangedError("file has changed mid-transfer")
            n = len(data)
            self.window[read_offset : read_offset + n] = data
            self.p_fd_offset += n
            read_offset += n
            read_size -= n

        return bytes(self.window[fudge : fudge + length])


def map_file(f: BinaryIO, length: int, read_size: int, block_size: int) -> MapStruct:
    """Create a window over ``f``, sized in whole blocks and aligned."""
    if block_size > 0 and read_size % block_size != 0:
        read_size += block_size - (read_size % block_size)
    return MapStruct(f, length, aligned_length(read_size))