"""Report a new public mapping on stdout or to a user script."""

from __future__ import annotations

import ipaddress
import logging
import socket
import subprocess
import sys
from dataclasses import dataclass
from typing import Optional, TextIO

from .conf import Mode

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Mapping:
    """A public address and port mapped onto a locally bound one."""

    family: int
    mapped_addr: str
    mapped_port: int
    bound_addr: str
    bound_port: int


def ip4p_address(addr: str, port: int) -> str:
    """Encode an IPv4 address and port as an IP4P IPv6 address string."""
    q = ipaddress.IPv4Address(addr).packed
    p = port.to_bytes(2, "big")
    return "2001::%02x%02x:%02x%02x:%02x%02x" % (p[0], p[1], q[0], q[1], q[2], q[3])


def notify_fields(mapping: Mapping, mode: Optional[Mode]) -> tuple[str, ...]:
    """Return the six values handed to the notify script, in order."""
    if mapping.family == socket.AF_INET:
        ip4p = ip4p_address(mapping.mapped_addr, mapping.mapped_port)
    else:
        ip4p = ""
    return (
        mapping.mapped_addr,
        str(mapping.mapped_port),
        ip4p,
        str(mapping.bound_port),
        mode.value if mode is not None else "",
        mapping.bound_addr,
    )


def notify(
    mapping: Mapping,
    mode: Optional[Mode],
    path: Optional[str] = None,
    stream: Optional[TextIO] = None,
) -> Optional[subprocess.Popen]:
    """Print the mapping, or start the script at *path* with it as arguments.

    Returns the started process, or None when nothing was started.
    """
    fields = notify_fields(mapping, mode)
    if path is None:
        out = stream if stream is not None else sys.stdout
        print(" ".join(fields), file=out)
        out.flush()
        return None
    try:
        return subprocess.Popen([path, *fields])
    except OSError as exc:
        log.error("Run script failed, Please check is it executable? (%s)", exc)
        return None