# rsynckit

rsynckit holds building blocks for the sending side of the rsync wire
protocol (protocol version 27), and for the inband exchange an rsync daemon
runs with its clients. It is plain Python and needs nothing outside the
standard library.

## Modules

- `rsynckit.sumhead`: the little-endian integer helpers `read_int32`,
  `write_int32` and `write_int64`. `write_int64` sends values from 0 to
  2**31-1 as a 32-bit integer. Any other value goes out as a 32-bit `-1`
  followed by 64 bits. The module also has the block checksum header
  `SumHead` with `read_from` and `write_to`, and the per-block `SumBuf`.
  `receive_sums(stream)` reads a header and all of its block checksums, and
  gives each block its offset and length.
- `rsynckit.fileio`: `map_file(f, length, read_size, block_size)` returns a
  `MapStruct`, a sliding read window over a seekable file, aligned to 1 KiB.
  `MapStruct.ptr(offset, length)` returns the requested bytes. It raises
  `FileChangedError` if the file ends before its recorded size.
  `aligned_length` and `aligned_overshoot` are the alignment helpers.
- `rsynckit.token`: `send_token(stream, ms, token, offset, n)` writes `n`
  literal bytes in chunks of at most `CHUNK_SIZE` (256 KiB), each preceded
  by its length. After the data it writes the token as `-(token + 1)`. A
  token of `-1` marks the end of the file. `FLUSH_ONLY` (`-2`) sends the
  data with no token after it.
- `rsynckit.source`: the abstract `FileSource` and `DirectorySource`, a source
  confined to one directory. `open`, `readlink`, `stat` and `walk` take
  relative, slash-separated names. A name that resolves outside the root
  raises `PathEscapeError`. `walk` yields `WalkEntry` objects in lexical
  order. Calling `entry.skip()` stops the walk from descending into that
  directory.
- `rsynckit.flist`: `send_file_list(stream, local_dir, paths, options,
  exclude=None)` walks the requested paths and writes the file list entries.
  It then writes the uid and gid name tables when those are enabled, and the
  I/O error flag. Unreadable paths set that flag; they do not raise. It
  returns a `FileList` of `FileEntry` items. Close the list when done with
  it; it also works as a context manager. `FileListOptions` selects
  recursion, directory transfer, and which of uid, gid, devices, specials,
  symlinks and whole-file MD4 checksums to send. `exclude(name, is_dir)`
  returns True to leave a name out, and leaving out a directory also leaves
  out everything below it. The transfer root `.` is always sent.
  `get_strip(requested)` gives the prefix removed from transmitted names
  (`"tr/"` for `"tr/"`, `""` for `"/"` or `"tr/man5"`).
- `rsynckit.daemon`: `Module`, `validate_module`, `check_acl` and `Server`.

## Example: modules and ACLs

```python
from rsynckit.daemon import AccessDenied, Module, Server, check_acl

server = Server([Module(name="music", path="/srv/music")])
print(server.format_module_list(), end="")   # "music\tmusic\n"

rules = ["allow 192.168.1.0/24", "deny all"]
check_acl(rules, "192.168.1.1:1234")          # returns None
try:
    check_acl(rules, "10.0.0.1:1234")
except AccessDenied as exc:
    print(exc)                                 # access denied (acl "deny all")
```

A module must have a name, and it needs either a `path` or an `fs` source,
not both. A module with an `fs` source may not be writable. `Server` checks
this and raises `ValueError` for a module that breaks these rules.

`Server.handle_daemon_conn(reader, writer, remote_addr)` runs the daemon
greeting over a pair of binary streams. If the client only asks for the
module list, it sends the list and `@RSYNCD: EXIT` and returns `None`.
Otherwise it looks up the module and applies its ACL. On a refusal it writes
an `@ERROR:` line to the client and raises `UnknownModuleError`,
`AccessDenied` or `ValueError`. On success it replies `@RSYNCD: OK` and reads
the client's argument lines. It returns a `DaemonRequest` with the module,
the option arguments, and the paths with the module name stripped.

## Example: checksum headers

```python
import io

from rsynckit.sumhead import SumHead

buf = io.BytesIO()
SumHead(checksum_count=2, block_length=700, checksum_length=16,
        remainder_length=100).write_to(buf)
buf.seek(0)
head = SumHead().read_from(buf)
```

An invalid header raises `ValueError`. A stream that ends early raises
`EOFError`.

## What it does not do

rsynckit provides pieces of an rsync implementation, not a complete one. It
has no receiver, no client, and no loop that answers a receiver's block
checksums with matches or sends whole files. It does not listen on a
network socket; `handle_daemon_conn` stops once the inband exchange is done.
It also has no command-line program.

## Tests

```
pip install -e .[test]
pytest
```