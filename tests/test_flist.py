import io
import os
import stat
import struct

import pytest

from rsynckit.flist import (
    FileList,
    FileListOptions,
    get_strip,
    send_file_list,
)
from rsynckit.source import DirectorySource


def _read(buf, n):
    data = buf.read(n)
    assert len(data) == n
    return data


def _int32(buf):
    return struct.unpack("<i", _read(buf, 4))[0]


def _int64(buf):
    value = _int32(buf)
    if value == -1:
        return struct.unpack("<q", _read(buf, 8))[0]
    return value


def _parse(data, opts):
    buf = io.BytesIO(data)
    entries = []
    while True:
        flags = _read(buf, 1)[0]
        if flags == 0:
            break
        entry = {"flags": flags}
        entry["name"] = _read(buf, _int32(buf)).decode()
        entry["size"] = _int64(buf)
        entry["mtime"] = _int32(buf)
        entry["mode"] = mode = _int32(buf) & 0xFFFFFFFF
        if opts.preserve_uid:
            entry["uid"] = _int32(buf)
        if opts.preserve_gid:
            entry["gid"] = _int32(buf)
        if (opts.preserve_devices and (stat.S_ISCHR(mode) or stat.S_ISBLK(mode))) or (
            opts.preserve_specials and (stat.S_ISFIFO(mode) or stat.S_ISSOCK(mode))
        ):
            entry["rdev"] = _int32(buf)
        if opts.preserve_links and stat.S_ISLNK(mode):
            entry["link"] = _read(buf, _int32(buf)).decode()
        if opts.always_checksum:
            entry["checksum"] = _read(buf, 16)
        entries.append(entry)
    id_sets = []
    for enabled in (opts.preserve_uid, opts.preserve_gid):
        names = {}
        if enabled:
            while True:
                ident = _int32(buf)
                if ident == 0:
                    break
                names[ident] = _read(buf, _read(buf, 1)[0]).decode()
        id_sets.append(names)
    io_errors = _int32(buf)
    assert buf.read() == b""
    return entries, id_sets[0], id_sets[1], io_errors


@pytest.fixture
def tree(tmp_path):
    src = tmp_path / "src"
    (src / "sub").mkdir(parents=True)
    (src / "hello").write_bytes(b"world")
    (src / "sub" / "a.txt").write_bytes(b"space")
    for f in (src / "hello", src / "sub" / "a.txt"):
        os.chmod(f, 0o644)
    for d in (src, src / "sub"):
        os.chmod(d, 0o755)
    return src


def _send(local_dir, paths, opts, exclude=None):
    out = io.BytesIO()
    file_list = send_file_list(out, local_dir, paths, opts, exclude)
    return file_list, _parse(out.getvalue(), opts)


@pytest.mark.parametrize(
    "requested, want",
    [
        ("/", ""),
        ("tr/man5", ""),
        ("tr/", "tr/"),
        ("", ""),
    ],
)
def test_get_strip(requested, want):
    assert get_strip(requested) == want


def test_recursive_list(tree):
    opts = FileListOptions(recurse=True, xfer_dirs=1)
    file_list, (entries, _, _, io_errors) = _send(str(tree), ["."], opts)
    assert [e["name"] for e in entries] == [".", "hello", "sub", "sub/a.txt"]
    assert [e["flags"] for e in entries] == [0x41, 0x40, 0x40, 0x40]
    assert [e["size"] for e in entries] == [4096, 5, 4096, 5]
    assert entries[1]["mode"] == stat.S_IFREG | 0o644
    assert entries[0]["mode"] == stat.S_IFDIR | 0o755
    assert io_errors == 0
    assert file_list.total_size == 8202
    assert [f.wpath for f in file_list.files] == [".", "hello", "sub", "sub/a.txt"]
    assert [f.regular for f in file_list.files] == [False, True, False, True]
    file_list.close()


def test_not_recursive_sends_only_root(tree):
    opts = FileListOptions(recurse=False, xfer_dirs=1)
    file_list, (entries, _, _, _) = _send(str(tree), ["."], opts)
    assert [e["name"] for e in entries] == ["."]
    file_list.close()


def test_no_dirs_skips_directories(tree):
    opts = FileListOptions(recurse=False, xfer_dirs=0)
    file_list, (entries, _, _, _) = _send(str(tree), ["."], opts)
    assert entries == []
    file_list.close()
    file_list, (entries, _, _, _) = _send(str(tree), ["hello"], opts)
    assert [(e["name"], e["flags"], e["size"]) for e in entries] == [("hello", 0x40, 5)]
    file_list.close()


def test_strip_trailing_slash(tree):
    opts = FileListOptions(recurse=True, xfer_dirs=1)
    file_list, (entries, _, _, _) = _send(str(tree), ["sub/"], opts)
    assert [e["name"] for e in entries] == ["sub", "a.txt"]
    file_list.close()


def test_implicit_module_trailing_slash(tree):
    opts = FileListOptions(recurse=True, xfer_dirs=1)
    file_list, (entries, _, _, _) = _send("/", [str(tree) + os.sep], opts)
    assert [e["name"] for e in entries] == [".", "hello", "sub", "sub/a.txt"]
    assert entries[0]["flags"] == 0x41
    file_list.close()


def test_implicit_module_without_slash(tree):
    opts = FileListOptions(recurse=True, xfer_dirs=1)
    file_list, (entries, _, _, _) = _send("/", [str(tree)], opts)
    assert [e["name"] for e in entries] == ["src", "src/hello", "src/sub", "src/sub/a.txt"]
    assert entries[0]["flags"] == 0x40
    file_list.close()


def test_exclude_files(tree):
    opts = FileListOptions(recurse=True, xfer_dirs=1)
    file_list, (entries, _, _, _) = _send(
        str(tree), ["."], opts, lambda name, is_dir: name.endswith(".txt")
    )
    assert [e["name"] for e in entries] == [".", "hello", "sub"]
    file_list.close()


def test_exclude_directory_prunes_subtree(tree):
    opts = FileListOptions(recurse=True, xfer_dirs=1)
    file_list, (entries, _, _, _) = _send(
        str(tree), ["."], opts, lambda name, is_dir: is_dir and name == "sub"
    )
    assert [e["name"] for e in entries] == [".", "hello"]
    file_list.close()


def test_exclude_everything_keeps_root(tree):
    opts = FileListOptions(recurse=True, xfer_dirs=1)
    file_list, (entries, _, _, _) = _send(str(tree), ["."], opts, lambda name, is_dir: True)
    assert [e["name"] for e in entries] == ["."]
    file_list.close()


def test_symlink_target(tree):
    os.symlink("hello", tree / "hey")
    opts = FileListOptions(recurse=True, xfer_dirs=1, preserve_links=True)
    file_list, (entries, _, _, _) = _send(str(tree), ["."], opts)
    link = next(e for e in entries if e["name"] == "hey")
    assert stat.S_ISLNK(link["mode"])
    assert link["link"] == "hello"
    file_list.close()


def test_always_checksum(tmp_path):
    (tmp_path / "a").write_bytes(b"")
    (tmp_path / "b").write_bytes(b"abc")
    (tmp_path / "c").write_bytes(b"message digest")
    opts = FileListOptions(recurse=True, xfer_dirs=1, always_checksum=True)
    file_list, (entries, _, _, _) = _send(str(tmp_path), ["."], opts)
    sums = {e["name"]: e["checksum"].hex() for e in entries}
    assert sums == {
        ".": "00" * 16,
        "a": "31d6cfe0d16ae931b73c59d7e0c089c0",
        "b": "a448017aaf21d8525fc10ae87aa6729d",
        "c": "d9130a8164549fe818874806e1c7014b",
    }
    file_list.close()


def test_mtime(tree):
    os.utime(tree / "hello", (1257894000, 1257894000))
    opts = FileListOptions(recurse=True, xfer_dirs=1)
    file_list, (entries, _, _, _) = _send(str(tree), ["."], opts)
    hello = next(e for e in entries if e["name"] == "hello")
    assert hello["mtime"] == 1257894000
    file_list.close()


def test_uid_and_gid(tree):
    opts = FileListOptions(recurse=True, xfer_dirs=1, preserve_uid=True, preserve_gid=True)
    file_list, (entries, uid_names, gid_names, io_errors) = _send(str(tree), ["."], opts)
    info = os.stat(tree / "hello")
    hello = next(e for e in entries if e["name"] == "hello")
    expected_uid = info.st_uid if os.name == "posix" else 0
    assert hello["uid"] == expected_uid
    assert 0 not in uid_names
    assert 0 not in gid_names
    assert io_errors == 0
    file_list.close()


def test_missing_directory_sets_io_error(tmp_path):
    opts = FileListOptions(recurse=True, xfer_dirs=1)
    file_list, (entries, _, _, io_errors) = _send(str(tmp_path / "nope"), ["."], opts)
    assert entries == []
    assert io_errors == 1
    assert file_list.files == []


def test_traversal_is_refused(tree):
    (tree.parent / "passwd").write_bytes(b"secret")
    opts = FileListOptions(recurse=True, xfer_dirs=1)
    file_list, (entries, _, _, io_errors) = _send(str(tree), ["../"], opts)
    assert entries == []
    assert io_errors == 1
    file_list.close()


def test_close_releases_sources(tree):
    opts = FileListOptions(recurse=True, xfer_dirs=1)
    file_list, _ = _send(str(tree), ["."], opts)
    assert len(file_list.sources) == 1
    source = file_list.sources[0]
    file_list.close()
    assert file_list.sources == []
    with pytest.raises(ValueError):
        source.open("hello")


def test_given_source_is_used_and_not_owned(tree):
    source = DirectorySource(tree)
    opts = FileListOptions(recurse=True, xfer_dirs=1, source=source)
    file_list, (entries, _, _, _) = _send("/ignored", ["."], opts)
    assert [e["name"] for e in entries] == [".", "hello", "sub", "sub/a.txt"]
    assert file_list.sources == []
    assert all(f.source is source for f in file_list.files)


def test_file_list_context_manager(tree):
    opts = FileListOptions(recurse=True, xfer_dirs=1)
    out = io.BytesIO()
    with send_file_list(out, str(tree), ["."], opts) as file_list:
        assert isinstance(file_list, FileList)
        assert len(file_list.files) == 4
    assert file_list.sources == []