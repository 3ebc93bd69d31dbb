"""Building and sending the sender's file list."""

from __future__ import annotations

import io
import logging
import os
import posixpath
import stat
import struct
from dataclasses import dataclass, field
from typing import BinaryIO, Callable, Iterable

from rsynckit.source import DirectorySource, FileSource, WalkEntry
from rsynckit.sumhead import write_int32, write_int64

try:
    import grp
    import pwd
except ImportError:  # not available on this platform
    grp = None  # type: ignore[assignment]
    pwd = None  # type: ignore[assignment]

XMIT_TOP_DIR = 0x01
XMIT_LONG_NAME = 0x40

# Directories are always announced with this size, whatever the file system says.
DIRECTORY_SIZE = 4096
CHECKSUM_SIZE = 16

_HAVE_IDS = os.name == "posix"
_DEVICE_TYPES = (stat.S_IFCHR, stat.S_IFBLK)
_SPECIAL_TYPES = (stat.S_IFIFO, stat.S_IFSOCK)
_KNOWN_TYPES = (stat.S_IFDIR, stat.S_IFREG, stat.S_IFLNK) + _DEVICE_TYPES + _SPECIAL_TYPES

_log = logging.getLogger(__name__)
_reported_lookup_failures: set[str] = set()

Exclude = Callable[[str, bool], bool]


def _int32(value: int) -> int:
    """Wrap an integer into the signed 32-bit range."""
    return ((value + 0x80000000) & 0xFFFFFFFF) - 0x80000000


def _clean(path: str) -> str:
    cleaned = posixpath.normpath(path)
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    return cleaned


def get_strip(requested: str) -> str:
    """Return the prefix to remove from walked paths for ``requested``."""
    if requested == "/":
        return ""
    if requested.endswith("/"):
        cleaned = _clean(requested)
        if cleaned.startswith("/"):
            cleaned = cleaned[1:]
        return cleaned + "/"
    return ""


class _MD4:
    """Incremental MD4 digest."""

    _ROUNDS = (
        (lambda x, y, z: (x & y) | (~x & z), 0, tuple(range(16)), (3, 7, 11, 19)),
        (
            lambda x, y, z: (x & y) | (x & z) | (y & z),
            0x5A827999,
            (0, 4, 8, 12, 1, 5, 9, 13, 2, 6, 10, 14, 3, 7, 11, 15),
            (3, 5, 9, 13),
        ),
        (
            lambda x, y, z: x ^ y ^ z,
            0x6ED9EBA1,
            (0, 8, 4, 12, 2, 10, 6, 14, 1, 9, 5, 13, 3, 11, 7, 15),
            (3, 9, 11, 15),
        ),
    )

    def __init__(self) -> None:
        self._state = [0x67452301, 0xEFCDAB89, 0x98BADCFE, 0x10325476]
        self._pending = b""
        self._length = 0

    def update(self, data: bytes) -> None:
        self._length += len(data)
        data = self._pending + data
        whole = len(data) - len(data) % 64
        for start in range(0, whole, 64):
            self._compress(data[start : start + 64])
        self._pending = data[whole:]

    def _compress(self, block: bytes) -> None:
        words = struct.unpack("<16I", block)
        regs = list(self._state)
        for func, constant, order, shifts in self._ROUNDS:
            for i, k in enumerate(order):
                t = (4 - i % 4) % 4
                x, y, z, w = regs[t], regs[(t + 1) % 4], regs[(t + 2) % 4], regs[(t + 3) % 4]
                value = (x + (func(y, z, w) & 0xFFFFFFFF) + words[k] + constant) & 0xFFFFFFFF
                s = shifts[i % 4]
                regs[t] = ((value << s) | (value >> (32 - s))) & 0xFFFFFFFF
        self._state = [(a + b) & 0xFFFFFFFF for a, b in zip(self._state, regs)]

    def digest(self) -> bytes:
        bit_length = (self._length * 8) & 0xFFFFFFFFFFFFFFFF
        tail = self._pending + b"\x80"
        tail += bytes((56 - len(tail) % 64) % 64)
        tail += struct.pack("<Q", bit_length)
        state = list(self._state)
        for start in range(0, len(tail), 64):
            self._compress(tail[start : start + 64])
        result = struct.pack("<4I", *self._state)
        self._state = state
        return result


def _reader_checksum(f: BinaryIO) -> bytes:
    digest = _MD4()
    for chunk in iter(lambda: f.read(256 * 1024), b""):
        digest.update(chunk)
    return digest.digest()


@dataclass
class FileEntry:
    """One file announced in the file list."""

    source: FileSource
    path: str
    wpath: str
    regular: bool
    length: int


@dataclass
class FileList:
    """The files sent to the peer, and the sources they come from."""

    total_size: int = 0
    files: list[FileEntry] = field(default_factory=list)
    sources: list[FileSource] = field(default_factory=list)

    def close(self) -> None:
        """Close every source this list opened; the list is unusable afterwards."""
        for source in self.sources:
            source.close()
        self.sources = []

    def __enter__(self) -> FileList:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


@dataclass
class FileListOptions:
    """Settings that decide what goes into the file list."""

    recurse: bool = False
    xfer_dirs: int = 0
    preserve_uid: bool = False
    preserve_gid: bool = False
    preserve_devices: bool = False
    preserve_specials: bool = False
    preserve_links: bool = False
    always_checksum: bool = False
    source: FileSource | None = None


class _Builder:
    def __init__(self, stream: BinaryIO, options: FileListOptions, exclude: Exclude | None) -> None:
        self.stream = stream
        self.options = options
        self.exclude = exclude
        self.file_list = FileList()
        self.uid_names: dict[int, str] = {}
        self.gid_names: dict[int, str] = {}
        self.io_errors = 0

    def io_error(self, exc: BaseException) -> None:
        if isinstance(exc, FileNotFoundError):
            _log.info("file vanished: %s", exc)
        else:
            _log.info("lstat: %s", exc)
        self.io_errors = 1

    def walk_path(self, local: str, requested: str) -> None:
        strip = get_strip(requested)
        _log.debug("path %r (local dir %r), strip=%r", requested, local, strip)
        source = self.options.source
        if source is None:
            try:
                source = DirectorySource(local)
            except OSError as exc:
                _log.info("open root %r: %s", local, exc)
                self.io_error(exc)
                return
            self.file_list.sources.append(source)

        rootname = "." + requested if requested.startswith("/") else requested
        for entry in source.walk(_clean(rootname)):
            self.visit(source, entry, strip)

    def _lookup(self, kind: str, ident: int, names: dict[int, str]) -> None:
        if ident in names or ident == 0 or pwd is None:
            return
        try:
            if kind == "user":
                names[ident] = pwd.getpwuid(ident & 0xFFFFFFFF).pw_name
            else:
                names[ident] = grp.getgrgid(ident & 0xFFFFFFFF).gr_name
        except (KeyError, OverflowError) as exc:
            if kind not in _reported_lookup_failures:
                _reported_lookup_failures.add(kind)
                _log.info("lookup %s(%d) = %s", kind, ident, exc)

    def visit(self, source: FileSource, entry: WalkEntry, strip: str) -> None:
        opts = self.options
        _log.debug("walk(path=%s)", entry.path)
        if entry.error is not None or entry.stat is None:
            self.io_error(entry.error or FileNotFoundError(entry.path))
            return

        info = entry.stat
        path = entry.path
        is_dir = entry.is_dir
        if is_dir and opts.xfer_dirs == 0:
            _log.info("skipping directory %s", path)
            entry.skip()
            return

        flags = XMIT_LONG_NAME
        name = path[len(strip) :] if strip and path.startswith(strip) else path
        if path == ".":
            flags |= XMIT_TOP_DIR

        # The transfer root is always sent; filter rules apply to descendants.
        if path != "." and self.exclude is not None and self.exclude(name, is_dir):
            if is_dir:
                entry.skip()
            return

        file_type = stat.S_IFMT(info.st_mode)
        regular = file_type == stat.S_IFREG
        self.file_list.files.append(
            FileEntry(source=source, path=path, wpath=name, regular=regular, length=info.st_size)
        )

        buf = io.BytesIO()
        buf.write(bytes([flags]))
        encoded = os.fsencode(name)
        write_int32(buf, len(encoded))
        buf.write(encoded)

        size = DIRECTORY_SIZE if is_dir else info.st_size
        write_int64(buf, size)
        self.file_list.total_size += size

        write_int32(buf, _int32(info.st_mtime_ns // 1_000_000_000))

        mode = info.st_mode & 0o777
        if file_type in _KNOWN_TYPES:
            mode |= file_type
        write_int32(buf, _int32(mode))

        if opts.preserve_uid:
            uid = _int32(info.st_uid) if _HAVE_IDS else 0
            if _HAVE_IDS:
                self._lookup("user", uid, self.uid_names)
            write_int32(buf, uid)

        if opts.preserve_gid:
            gid = _int32(info.st_gid) if _HAVE_IDS else 0
            if _HAVE_IDS:
                self._lookup("group", gid, self.gid_names)
            write_int32(buf, gid)

        if (opts.preserve_devices and file_type in _DEVICE_TYPES) or (
            opts.preserve_specials and file_type in _SPECIAL_TYPES
        ):
            rdev = getattr(info, "st_rdev", 0) if _HAVE_IDS else 0
            write_int32(buf, _int32(rdev))

        if opts.preserve_links and file_type == stat.S_IFLNK:
            target = os.fsencode(source.readlink(path))
            write_int32(buf, len(target))
            buf.write(target)

        if opts.always_checksum:
            if regular:
                with source.open(path) as f:
                    buf.write(_reader_checksum(f))
            else:
                buf.write(bytes(CHECKSUM_SIZE))

        self.stream.write(buf.getvalue())

        if is_dir and not opts.recurse:
            entry.skip()

    def finish(self) -> None:
        buf = io.BytesIO()
        buf.write(b"\x00")  # end of file list
        for enabled, names in (
            (self.options.preserve_uid, self.uid_names),
            (self.options.preserve_gid, self.gid_names),
        ):
            if not enabled:
                continue
            for ident, name in names.items():
                encoded = os.fsencode(name)
                write_int32(buf, ident)
                buf.write(bytes([len(encoded) & 0xFF]))
                buf.write(encoded)
            write_int32(buf, 0)  # end of set
        write_int32(buf, self.io_errors)
        self.stream.write(buf.getvalue())


def send_file_list(
    stream: BinaryIO,
    local_dir: str,
    paths: Iterable[str],
    options: FileListOptions,
    exclude: Exclude | None = None,
) -> FileList:
    """Walk ``paths`` below ``local_dir`` and write the file list to ``stream``.

    ``exclude`` is called with each name (after stripping) and whether it is a
    directory; returning True leaves it out, and prunes an excluded directory.
    Unreadable paths set the I/O error flag sent at the end instead of raising.
    """
    builder = _Builder(stream, options, exclude)
    _log.info("building file list")
    try:
        for requested in paths:
            local = local_dir
            if local == "/":
                # Implicit module: the requested path names the local directory.
                local = requested
                if requested.endswith(os.sep):
                    requested = "/"
                else:
                    local = os.path.dirname(requested) or "."
                    requested = os.path.basename(requested) or "."
            builder.walk_path(local, requested)

        _log.debug("%d files to consider", len(builder.file_list.files))
        builder.finish()
    except BaseException:
        builder.file_list.close()
        raise
    return builder.file_list