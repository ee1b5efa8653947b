"""Command-line configuration for the NAT keeper."""

from __future__ import annotations

import enum
import getopt
import re
import socket
from dataclasses import dataclass, field
from typing import Optional, Sequence

_UINT_MASK = 0xFFFFFFFF

_HELP = (
    "Usage:\n"
    " natkeeper [options]\n"
    "\n"
    "Options:\n"
    " -4                  use IPv4\n"
    " -6                  use IPv6\n"
    " -u                  UDP mode\n"
    " -d                  run as daemon\n"
    " -i <interface>      network interface or IP address\n"
    " -k <interval>       seconds between each keep-alive\n"
    " -c <count>          UDP STUN check cycle (every <count> intervals)\n"
    " -s <addr>[:port]    domain name or address of STUN server\n"
    " -h <addr>[:port]    domain name or address of HTTP server\n"
    " -e <path>           script path for notify mapped address\n"
    " -f <mark>           fwmark value (hex: 0x1, dec: 1, oct: 01)\n"
    "\n"
    "Bind options:\n"
    " -b <port>[-port]    port number range for binding\n"
    "                     - <0>: random allocation\n"
    "                     - <port>: specified\n"
    "                     - <port>-<port>: sequential allocation within the range\n"
    "\n"
    "Forward options:\n"
    " -T <timeout>        port forwarding timeout in seconds\n"
    " -t <address>        domain name or address of forward target\n"
    " -p <port>           port number of forward target (0: use public port)\n"
)

_OPTSTRING = "46udk:c:s:h:e:f:b:T:t:p:i:"

_HOST_RE = re.compile(r"[^:]{1,255}")
_PORT_RE = re.compile(r":([0-9]{1,5})")
_RANGE_LO_RE = re.compile(r"\s*\+?(\d+)")
_RANGE_HI_RE = re.compile(r"-\s*\+?(\d+)")


class Mode(enum.Enum):
    """Transport protocol whose NAT mapping is kept alive."""

    TCP = "tcp"
    UDP = "udp"

    @property
    def socktype(self) -> int:
        return socket.SOCK_STREAM if self is Mode.TCP else socket.SOCK_DGRAM


class ConfigError(ValueError):
    """Raised when the command line is invalid or incomplete."""


@dataclass
class Config:
    """Runtime settings taken from the command line."""

    mode: Mode = Mode.TCP
    family: int = socket.AF_INET
    stun_host: str = ""
    stun_port: str = "3478"
    http_host: str = ""
    http_port: str = "80"
    keep_interval_ms: int = 30000
    check_cycle: int = 10
    daemon: bool = False
    script: Optional[str] = None
    mark: int = 0
    bind_addr: str = "0.0.0.0"
    bind_port_min: int = 0
    bind_port_max: int = 0
    target_addr: Optional[str] = None
    target_port: Optional[str] = None
    forward_timeout_ms: int = 120000
    iface: Optional[str] = None
    mapped_port: str = ""
    _bind_cursor: int = field(init=False, repr=False, compare=False, default=0)

    def __post_init__(self) -> None:
        self._bind_cursor = self.bind_port_min

    def next_bind_port(self) -> str:
        """Return the next bind port, cycling through the configured range."""
        port = str(self._bind_cursor)
        self._bind_cursor += 1
        if self._bind_cursor > self.bind_port_max:
            self._bind_cursor = self.bind_port_min
        return port

    def set_mapped_port(self, port: int) -> str:
        """Record the public port when positive; return the current one."""
        if port > 0:
            self.mapped_port = str(port)
        return self.mapped_port


def help_text() -> str:
    """Return the usage message."""
    return _HELP


def _parse_number(text: str, base: int = 10) -> int:
    """Parse a leading integer the way strtoul does; 0 when none is found."""
    text = text.lstrip()
    sign = 1
    if text.startswith(("+", "-")):
        sign = -1 if text[0] == "-" else 1
        text = text[1:]
    if base == 0:
        if text[:2].lower() == "0x" and text[2:3] and text[2] in "0123456789abcdefABCDEF":
            base, text = 16, text[2:]
        elif text.startswith("0"):
            base = 8
        else:
            base = 10
    if base == 16:
        valid = "0123456789abcdefABCDEF"
    else:
        valid = "0123456789"[:base]
    digits = []
    for char in text:
        if char not in valid:
            break
        digits.append(char)
    return sign * int("".join(digits), base) if digits else 0


def _split_host_port(text: str, host: str, port: str) -> tuple[str, str]:
    match = _HOST_RE.match(text)
    if not match:
        return host, port
    host = match.group(0)
    port_match = _PORT_RE.match(text, match.end())
    if port_match:
        port = port_match.group(1)
    return host, port


def _is_address(family: int, text: str) -> bool:
    try:
        socket.inet_pton(family, text)
    except (OSError, ValueError):
        return False
    return True


def parse_args(argv: Sequence[str]) -> Config:
    """Build a Config from command-line arguments (without program name)."""
    try:
        opts, _ = getopt.gnu_getopt(list(argv), _OPTSTRING)
    except getopt.GetoptError as exc:
        raise ConfigError(str(exc)) from exc

    mode = Mode.TCP
    family = socket.AF_INET
    keep = 0
    ucount = 0
    daemon = False
    mark = 0
    tmsec = 0
    stun_host, stun_port = "", "3478"
    http_host, http_port = "", "80"
    script: Optional[str] = None
    target_addr: Optional[str] = None
    target_port: Optional[str] = None
    iface: Optional[str] = None
    port_lo = port_hi = 0

    for opt, arg in opts:
        if opt == "-4":
            family = socket.AF_INET
        elif opt == "-6":
            family = socket.AF_INET6
        elif opt == "-u":
            mode = Mode.UDP
        elif opt == "-d":
            daemon = True
        elif opt == "-k":
            keep = _parse_number(arg) * 1000
        elif opt == "-c":
            ucount = _parse_number(arg) & _UINT_MASK
        elif opt == "-s":
            stun_host, stun_port = _split_host_port(arg, stun_host, stun_port)
        elif opt == "-h":
            http_host, http_port = _split_host_port(arg, http_host, http_port)
        elif opt == "-e":
            script = arg
        elif opt == "-f":
            mark = _parse_number(arg, 0) & _UINT_MASK
        elif opt == "-b":
            low = _RANGE_LO_RE.match(arg)
            if low:
                port_lo = int(low.group(1))
                high = _RANGE_HI_RE.match(arg, low.end())
                if high:
                    port_hi = int(high.group(1))
        elif opt == "-T":
            tmsec = _parse_number(arg) * 1000
        elif opt == "-t":
            target_addr = arg
        elif opt == "-p":
            target_port = arg
        elif opt == "-i":
            iface = arg

    if not stun_host:
        raise ConfigError("a STUN server is required")
    if mode is Mode.TCP and not http_host:
        raise ConfigError("an HTTP server is required in TCP mode")
    if (target_addr is None) != (target_port is None):
        raise ConfigError("forward target address and port must be given together")

    if keep <= 0:
        keep = (30 if mode is Mode.TCP else 10) * 1000
    if ucount <= 0:
        ucount = 10
    if not port_hi:
        port_hi = port_lo

    if iface is not None and _is_address(family, iface):
        bind_addr = iface
        iface = None
    else:
        bind_addr = "::" if family == socket.AF_INET6 else "0.0.0.0"

    if tmsec <= 0:
        tmsec = 120000

    return Config(
        mode=mode,
        family=family,
        stun_host=stun_host,
        stun_port=stun_port,
        http_host=http_host,
        http_port=http_port,
        keep_interval_ms=keep,
        check_cycle=ucount,
        daemon=daemon,
        script=script,
        mark=mark,
        bind_addr=bind_addr,
        bind_port_min=port_lo,
        bind_port_max=port_hi,
        target_addr=target_addr,
        target_port=target_port,
        forward_timeout_ms=tmsec,
        iface=iface,
    )