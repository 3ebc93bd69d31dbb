"""Sending literal data and block-match tokens."""

from __future__ import annotations

import logging
from typing import BinaryIO

from rsynckit.fileio import MapStruct
from rsynckit.sumhead import write_int32

CHUNK_SIZE = 256 * 1024

# Token value meaning "flush literal data only, no match follows".
FLUSH_ONLY = -2

_log = logging.getLogger(__name__)


def send_token(stream: BinaryIO, ms: MapStruct, token: int, offset: int, n: int) -> None:
    """Send ``n`` literal bytes from ``offset``, then the match token.

    Literal data goes out in chunks prefixed by their length. A token of -1
    ends the file, a token of -2 sends no token at all, and any other block
    index ``i`` is sent as ``-(i + 1)``.
    """
    if n > 0:
        _log.debug("sending unmatched chunks offset=%d, n=%d", offset, n)
        for start in range(0, n, CHUNK_SIZE):
            n1 = min(CHUNK_SIZE, n - start)
            chunk = ms.ptr(offset + start, n1)
            write_int32(stream, n1)
            stream.write(chunk)
    if token != FLUSH_ONLY:
        write_int32(stream, -(token + 1))