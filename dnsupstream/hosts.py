"""A resolver looking names up in system hosts files."""

from __future__ import annotations

import ipaddress
import os
import sys
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import Iterable, Union

from .base import logger

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


def default_hosts_paths() -> list:
    """Return the system hosts file paths, relative to the filesystem root."""
    if sys.platform == "win32":
        root = PureWindowsPath(os.environ.get("SystemRoot", "C:\\Windows"))
        relative = root.relative_to(root.anchor) if root.anchor else root
        path = PurePosixPath(*relative.parts, "System32", "drivers", "etc", "hosts")
        return [str(path)]
    return ["etc/hosts"]


def parse_hosts(text: str) -> list:
    """Parse hosts file text into ``(address, names)`` pairs.

    Comments, blank lines and lines with an invalid address are skipped.
    """
    entries = []
    for line in text.splitlines():
        fields = line.split("#", 1)[0].split()
        if len(fields) < 2:
            continue
        try:
            addr = ipaddress.ip_address(fields[0])
        except ValueError:
            logger.debug("hosts: skipping line with bad address %r", fields[0])
            continue
        entries.append((addr, tuple(fields[1:])))
    return entries


class HostsResolver:
    """Resolves hostnames from hosts file entries."""

    def __init__(self, entries: Iterable) -> None:
        self._by_name: dict = {}
        for addr, names in entries:
            for name in names:
                addrs = self._by_name.setdefault(name.lower(), [])
                if addr not in addrs:
                    addrs.append(addr)

    @classmethod
    def from_default_paths(cls, root: Union[str, os.PathLike]) -> "HostsResolver":
        """Read the default hosts files found under the directory ``root``."""
        entries = []
        for relative in default_hosts_paths():
            path = Path(root) / relative
            try:
                text = path.read_text(encoding="utf-8", errors="replace")
            except FileNotFoundError:
                logger.debug("hosts file %r doesn't exist", relative)
                continue
            entries.extend(parse_hosts(text))
        return cls(entries)

    def lookup_net_ip(self, network: str, host: str) -> list:
        """Return the addresses of ``host`` for ``"ip"``, ``"ip4"`` or ``"ip6"``."""
        addrs = self._by_name.get(host.lower(), [])
        if network == "ip":
            return list(addrs)
        if network == "ip4":
            return [a for a in addrs if a.version == 4]
        if network == "ip6":
            return [a for a in addrs if a.version == 6]
        raise ValueError(f'unsupported network "{network}"')