"""File sources the sender walks and reads from."""

from __future__ import annotations

import errno
import io
import os
import posixpath
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from stat import S_ISDIR
from typing import BinaryIO, Iterator


class PathEscapeError(PermissionError):
    """Raised when a name would resolve outside the source's root."""


@dataclass
class WalkEntry:
    """One visited path; ``error`` is set when it could not be inspected."""

    path: str
    stat: os.stat_result | None = None
    error: OSError | None = None
    _skip: bool = field(default=False, repr=False)

    @property
    def is_dir(self) -> bool:
        return self.stat is not None and S_ISDIR(self.stat.st_mode)

    def skip(self) -> None:
        """Do not descend into this directory."""
        self._skip = True


class FileSource(ABC):
    """Where the sender discovers and reads files."""

    @abstractmethod
    def open(self, name: str) -> BinaryIO:
        """Open a file for seekable binary reading."""

    @abstractmethod
    def readlink(self, name: str) -> str:
        """Return the target of a symbolic link."""

    @abstractmethod
    def stat(self, name: str) -> os.stat_result:
        """Return file information without following a final symlink."""

    @abstractmethod
    def walk(self, top: str = ".") -> Iterator[WalkEntry]:
        """Visit ``top`` and everything below it in lexical order."""

    @abstractmethod
    def close(self) -> None:
        """Release the source."""

    def __enter__(self) -> FileSource:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class DirectorySource(FileSource):
    """A file source confined to one directory tree."""

    def __init__(self, root: str | os.PathLike[str]) -> None:
        real = os.path.realpath(os.fspath(root))
        if not S_ISDIR(os.stat(real).st_mode):
            raise NotADirectoryError(errno.ENOTDIR, os.strerror(errno.ENOTDIR), os.fspath(root))
        self._root = real
        self._closed = False

    @property
    def root(self) -> str:
        return self._root

    def _resolve(self, name: str, follow: bool) -> str:
        if self._closed:
            raise ValueError("source is closed")
        if name.startswith("/") or os.path.isabs(name):
            raise PathEscapeError(errno.EACCES, "path escapes from parent", name)
        rel = posixpath.normpath(name)
        if rel == ".." or rel.startswith("../"):
            raise PathEscapeError(errno.EACCES, "path escapes from parent", name)
        if rel == ".":
            return self._root
        full = os.path.join(self._root, *rel.split("/"))
        if follow:
            real = os.path.realpath(full)
        else:
            real = os.path.join(os.path.realpath(os.path.dirname(full)), os.path.basename(full))
        if os.path.commonpath([real, self._root]) != self._root:
            raise PathEscapeError(errno.EACCES, "path escapes from parent", name)
        return real

    def open(self, name: str) -> BinaryIO:
        return io.open(self._resolve(name, follow=True), "rb")

    def readlink(self, name: str) -> str:
        return os.readlink(self._resolve(name, follow=False))

    def stat(self, name: str) -> os.stat_result:
        return os.lstat(self._resolve(name, follow=False))

    def walk(self, top: str = ".") -> Iterator[WalkEntry]:
        top = posixpath.normpath(top)
        try:
            info = os.stat(self._resolve(top, follow=True))
        except OSError as exc:
            yield WalkEntry(top, error=exc)
            return
        yield from self._walk(WalkEntry(top, info))

    def _walk(self, entry: WalkEntry) -> Iterator[WalkEntry]:
        yield entry
        if entry._skip or not entry.is_dir:
            return
        try:
            names = sorted(os.listdir(self._resolve(entry.path, follow=True)))
        except OSError as exc:
            yield WalkEntry(entry.path, entry.stat, exc)
            return
        for name in names:
            child = name if entry.path == "." else f"{entry.path}/{name}"
            try:
                child_entry = WalkEntry(child, self.stat(child))
            except OSError as exc:
                child_entry = WalkEntry(child, error=exc)
            yield from self._walk(child_entry)

    def close(self) -> None:
        self._closed = True