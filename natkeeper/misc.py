"""Helpers for daemonising and for sharing a port with another listener."""

from __future__ import annotations

import logging
import os
import re
import socket
import sys
from pathlib import Path
from typing import Optional

log = logging.getLogger(__name__)

_LISTEN_STATE = 0x0A
_LEADING_INT = re.compile(r"\s*\+?(\d+)")
SO_REUSEPORT = getattr(socket, "SO_REUSEPORT", socket.SO_REUSEADDR)


def _leading_int(text: str) -> int:
    match = _LEADING_INT.match(text)
    return int(match.group(1)) if match else 0


def _parse_tcp_line(line: str) -> Optional[tuple[int, int, int]]:
    """Return (local port, state, inode) of a /proc/net/tcp row, or None."""
    parts = line.split()
    if len(parts) < 10 or not parts[0].endswith(":"):
        return None
    try:
        int(parts[0][:-1])
        _, local_port = parts[1].rsplit(":", 1)
        _, remote_port = parts[2].rsplit(":", 1)
        port = int(local_port, 16)
        int(remote_port, 16)
        state = int(parts[3], 16)
        for pair in (parts[4], parts[5]):
            left, right = pair.split(":")
            int(left, 16)
            int(right, 16)
        int(parts[6], 16)
        int(parts[7])
        int(parts[8])
        inode = int(parts[9])
    except ValueError:
        return None
    return port, state, inode


def find_listen_inode(port: int, family: int, proc_root: str = "/proc") -> Optional[int]:
    """Return the inode of the TCP socket listening on *port*, if any."""
    name = "tcp6" if family == socket.AF_INET6 else "tcp"
    try:
        with Path(proc_root, "net", name).open() as table:
            if next(table, None) is None:
                return None
            for line in table:
                entry = _parse_tcp_line(line)
                if entry and entry[1] == _LISTEN_STATE and entry[0] == port:
                    return entry[2]
    except OSError:
        return None
    return None


def find_socket_owner(inode: int, proc_root: str = "/proc") -> Optional[tuple[int, int]]:
    """Return (pid, fd) of the process holding socket *inode*, if any."""
    target = f"socket:[{inode}]"
    try:
        processes = os.scandir(proc_root)
    except OSError:
        return None
    with processes:
        for proc in processes:
            if not proc.is_dir(follow_symlinks=False):
                continue
            try:
                descriptors = os.scandir(os.path.join(proc.path, "fd"))
            except OSError:
                continue
            with descriptors:
                for entry in descriptors:
                    if not entry.is_symlink():
                        continue
                    try:
                        link = os.readlink(entry.path)
                    except OSError:
                        continue
                    if link == target:
                        return _leading_int(proc.name), _leading_int(entry.name)
    return None


def _set_reuse_port(pid: int, fd: int) -> bool:
    if pid != os.getpid():
        log.error("cannot take descriptor %d of process %d", fd, pid)
        return False
    try:
        sock = socket.socket(fileno=os.dup(fd))
    except OSError as exc:
        log.error("cannot open descriptor %d: %s", fd, exc)
        return False
    with sock:
        try:
            sock.setsockopt(socket.SOL_SOCKET, SO_REUSEPORT, 1)
        except OSError as exc:
            log.error("cannot set reuse-port on descriptor %d: %s", fd, exc)
            return False
    return True


def reuse_port(port: str, proc_root: str = "/proc") -> bool:
    """Set the reuse-port flag on whatever socket listens on *port*.

    Returns False if a listener was found but could not be updated.
    """
    number = _leading_int(str(port))
    ok = True
    for family in (socket.AF_INET, socket.AF_INET6):
        inode = find_listen_inode(number, family, proc_root)
        if not inode:
            continue
        owner = find_socket_owner(inode, proc_root)
        if owner is not None:
            ok = _set_reuse_port(*owner) and ok
    return ok


def run_daemon() -> int:
    """Detach into a new session; the parent exits. Returns the session id."""
    if os.fork():
        sys.stdout.flush()
        sys.stderr.flush()
        os._exit(0)
    os.setsid()
    return os.getsid(0)