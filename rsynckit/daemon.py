"""The daemon side of the inband exchange: greeting, module choice, access control."""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass, field
from typing import BinaryIO, Iterable

from rsynckit.source import FileSource

PROTOCOL_VERSION = 27

_GREETING_PREFIX = "@RSYNCD: "
_OK = "@RSYNCD: OK\n"
_EXIT = "@RSYNCD: EXIT\n"
_ACL_SYNTAX = "(syntax: allow|deny <all|ipnet>)"


class UnknownModuleError(LookupError):
    """Raised when a client asks for a module the server does not have."""


class AccessDenied(PermissionError):
    """Raised when a module's access list refuses the remote address."""


def _quote(text: str) -> str:
    escaped = text.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n").replace("\t", "\\t")
    return f'"{escaped}"'


@dataclass
class Module:
    """A named tree the daemon serves, backed by a path or a file source."""

    name: str
    path: str = ""
    fs: FileSource | None = None
    acl: list[str] = field(default_factory=list)
    writable: bool = False


@dataclass
class DaemonRequest:
    """What a client asked for once the inband exchange has succeeded."""

    module: Module
    args: list[str]
    paths: list[str]


def validate_module(module: Module) -> None:
    """Raise ValueError if ``module`` is not a usable configuration."""
    if not module.name:
        raise ValueError("module has no name")
    if module.fs is not None:
        if module.writable:
            raise ValueError(f"module {_quote(module.name)}: FS modules cannot be writable")
        if module.path:
            raise ValueError(f"module {_quote(module.name)}: cannot specify both Path and FS")
    elif not module.path:
        raise ValueError(f"module {_quote(module.name)} has empty path")


def _split_host_port(address: str) -> str:
    if address.startswith("["):
        end = address.find("]")
        if end < 0 or not address[end + 1 :].startswith(":"):
            raise ValueError(address)
        return address[1:end]
    host, sep, _port = address.rpartition(":")
    if not sep or ":" in host:
        raise ValueError(address)
    return host


def check_acl(acls: Iterable[str], remote_addr: str) -> None:
    """Apply the first access rule matching ``remote_addr`` (``host:port``).

    Rules read ``allow <who>`` or ``deny <who>`` where ``who`` is ``all`` or a
    network in CIDR form. No matching rule, or no rules at all, allows access.
    """
    acls = list(acls)
    if not acls:
        return
    try:
        host = _split_host_port(remote_addr)
    except ValueError:
        raise ValueError(f"BUG: invalid remote address {_quote(remote_addr)}") from None
    try:
        remote_ip = ipaddress.ip_address(host)
    except ValueError:
        raise ValueError(f"BUG: invalid remote host {_quote(host)}") from None
    if isinstance(remote_ip, ipaddress.IPv6Address) and remote_ip.ipv4_mapped is not None:
        mapped: ipaddress.IPv4Address | None = remote_ip.ipv4_mapped
    else:
        mapped = None

    for acl in acls:
        action, sep, who = acl.partition(" ")
        if not sep:
            raise ValueError(f"invalid acl: {_quote(acl)} (no space found)")
        if action not in ("allow", "deny"):
            raise ValueError(f"invalid acl: {_quote(acl)} {_ACL_SYNTAX}")
        if who != "all":
            if "/" not in who:
                raise ValueError(f"invalid acl: {_quote(acl)} {_ACL_SYNTAX}")
            try:
                network = ipaddress.ip_network(who, strict=False)
            except ValueError:
                raise ValueError(f"invalid acl: {_quote(acl)} {_ACL_SYNTAX}") from None
            if remote_ip not in network and not (mapped is not None and mapped in network):
                continue
        if action == "allow":
            return
        raise AccessDenied(f"access denied (acl {_quote(acl)})")


def _read_line(reader: BinaryIO) -> str:
    line = reader.readline()
    if not line.endswith(b"\n"):
        raise EOFError("connection closed before end of line")
    return line.decode("utf-8", errors="replace")


class Server:
    """Serves a fixed set of modules to daemon-protocol clients."""

    def __init__(self, modules: Iterable[Module] = (), logger: logging.Logger | None = None) -> None:
        modules = list(modules)
        for module in modules:
            validate_module(module)
        self.modules = modules
        self.logger = logger or logging.getLogger(__name__)

    def get_module(self, name: str) -> Module:
        """Return the module called ``name``."""
        for module in self.modules:
            if module.name == name:
                return module
        raise UnknownModuleError(f"no such module: {name}")

    def format_module_list(self) -> str:
        """Return the listing sent to clients: one ``name<TAB>comment`` line each."""
        return "".join(f"{module.name}\t{module.name}\n" for module in self.modules)

    def handle_daemon_conn(
        self, reader: BinaryIO, writer: BinaryIO, remote_addr: str
    ) -> DaemonRequest | None:
        """Run the inband exchange with one client.

        Returns None when the client only asked for the module list, and the
        parsed request otherwise. Refusals are reported to the client with an
        ``@ERROR:`` line and raised.
        """

        def send(text: str) -> None:
            writer.write(text.encode("utf-8"))
            flush = getattr(writer, "flush", None)
            if flush is not None:
                flush()

        send(f"{_GREETING_PREFIX}{PROTOCOL_VERSION}\n")

        greeting = _read_line(reader)
        if not greeting.startswith(_GREETING_PREFIX):
            raise ValueError(f"invalid client greeting: got {_quote(greeting)}")

        requested = _read_line(reader).strip()
        if requested in ("", "#list"):
            self.logger.info("client %s requested rsync module listing", remote_addr)
            send(self.format_module_list())
            send(_EXIT)
            return None

        self.logger.info("client %s requested rsync module %s", remote_addr, _quote(requested))
        try:
            module = self.get_module(requested)
        except UnknownModuleError:
            send(f"@ERROR: Unknown module {_quote(requested)}\n")
            raise

        try:
            check_acl(module.acl, remote_addr)
        except (AccessDenied, ValueError) as exc:
            send(f"@ERROR: {exc}\n")
            raise

        send(_OK)

        flags: list[str] = []
        while True:
            flag = _read_line(reader).strip()
            self.logger.debug("client sent: %s", _quote(flag))
            if not flag:
                break
            flags.append(flag)
        self.logger.debug("flags: %r", flags)

        split = len(flags)
        for index, flag in enumerate(flags):
            if not flag.startswith("-"):
                split = index
                break
        args, remaining = flags[:split], flags[split:]

        if len(remaining) < 2:
            raise ValueError("invalid args: at least one directory required")
        if remaining[0] != ".":
            raise ValueError(f"protocol error: got {_quote(remaining[0])}, expected \".\"")

        # Paths arrive as module_name/...; strip the module name.
        paths = []
        for path in remaining[1:]:
            trimmed = path[len(module.name) :] if path.startswith(module.name) else path
            paths.append(trimmed or ".")
        self.logger.debug("trimmed paths: %r", paths)

        return DaemonRequest(module=module, args=args, paths=paths)