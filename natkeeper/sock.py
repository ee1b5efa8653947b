"""Socket creation for the keeper, the STUN client and the forwarders."""

from __future__ import annotations

import asyncio
import errno
import logging
import socket
import struct
import sys
from typing import Optional

from .misc import SO_REUSEPORT, reuse_port

log = logging.getLogger(__name__)

CONNECT_TIMEOUT = 30.0

_IFNAMSIZ = 16
_SO_BINDTODEVICE = getattr(socket, "SO_BINDTODEVICE", 25)
_SO_MARK = getattr(socket, "SO_MARK", 36)
_SO_USER_COOKIE = 0x1015
_IP_BOUND_IF = 25
_IPV6_BOUND_IF = 125


class SocketSetupError(OSError):
    """Raised when a socket cannot be created, bound or connected."""


def _family_of(addr: tuple) -> int:
    return socket.AF_INET6 if ":" in str(addr[0]) else socket.AF_INET


def create_socket(family: int, socktype: int) -> socket.socket:
    """Create a non-blocking, non-inheritable socket with address reuse enabled."""
    try:
        sock = socket.socket(family, socktype)
    except OSError as exc:
        raise SocketSetupError(exc.errno, f"cannot create socket: {exc}") from exc
    sock.setblocking(False)
    for option in (socket.SO_REUSEADDR, SO_REUSEPORT):
        try:
            sock.setsockopt(socket.SOL_SOCKET, option, 1)
        except OSError:
            pass
    return sock


def bind_interface(sock, iface: Optional[str]) -> None:
    """Restrict *sock* to the network interface *iface*; no-op when None."""
    if iface is None:
        return
    platform = sys.platform
    try:
        if platform.startswith("linux"):
            name = iface.encode()[: _IFNAMSIZ - 1].ljust(_IFNAMSIZ, b"\0")
            sock.setsockopt(socket.SOL_SOCKET, _SO_BINDTODEVICE, name)
            return
        if platform == "darwin":
            index = socket.if_nametoindex(iface)
            if sock.family == socket.AF_INET:
                sock.setsockopt(socket.IPPROTO_IP, _IP_BOUND_IF, index)
                return
            if sock.family == socket.AF_INET6:
                sock.setsockopt(socket.IPPROTO_IPV6, _IPV6_BOUND_IF, index)
                return
    except OSError as exc:
        raise SocketSetupError(exc.errno, f"cannot bind to interface {iface}: {exc}") from exc
    raise SocketSetupError(f"binding to interface {iface} is not supported here")


def set_fwmark(sock, mark: int) -> None:
    """Set the firewall mark of *sock* where the platform supports one."""
    if sys.platform.startswith("linux"):
        option = _SO_MARK
    elif sys.platform.startswith("freebsd"):
        option = _SO_USER_COOKIE
    else:
        return
    try:
        sock.setsockopt(socket.SOL_SOCKET, option, struct.pack("I", mark & 0xFFFFFFFF))
    except OSError as exc:
        raise SocketSetupError(exc.errno, f"cannot set fwmark {mark}: {exc}") from exc


def _apply_binding(sock, iface: Optional[str], mark: int) -> None:
    bind_interface(sock, iface)
    if mark:
        set_fwmark(sock, mark)


async def _resolve(host: str, port: str, family: int, socktype: int) -> tuple:
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(host, port, family=family, type=socktype)
    except (socket.gaierror, UnicodeError) as exc:
        raise SocketSetupError(f"cannot resolve {host}:{port}: {exc}") from exc
    if not infos:
        raise SocketSetupError(f"no address found for {host}:{port}")
    return infos[0]


async def _connect(sock: socket.socket, addr: tuple) -> None:
    loop = asyncio.get_running_loop()
    try:
        await asyncio.wait_for(loop.sock_connect(sock, addr), CONNECT_TIMEOUT)
    except asyncio.TimeoutError as exc:
        log.error("connect to %s timed out", addr)
        raise SocketSetupError(errno.ETIMEDOUT, "connect timed out") from exc
    except OSError as exc:
        if exc.errno == errno.EADDRNOTAVAIL:
            log.error(
                "Cannot assign requested address, "
                "Please check is another instance exists or wait a minute."
            )
        else:
            log.error("%s", exc)
        raise SocketSetupError(exc.errno, f"cannot connect to {addr}: {exc}") from exc


def _bind(sock: socket.socket, addr: tuple, retry_port: Optional[str] = None) -> None:
    try:
        sock.bind(addr)
        return
    except OSError as exc:
        if retry_port is None:
            raise SocketSetupError(exc.errno, f"cannot bind {addr}: {exc}") from exc
    reuse_port(retry_port)
    try:
        sock.bind(addr)
    except OSError as exc:
        log.error("%s", exc)
        raise SocketSetupError(exc.errno, f"cannot bind {addr}: {exc}") from exc


def _local_name(sock: socket.socket) -> tuple:
    try:
        return sock.getsockname()
    except OSError as exc:
        raise SocketSetupError(exc.errno, f"cannot read bound address: {exc}") from exc


async def client_base(
    family: int,
    socktype: int,
    saddr: str,
    sport: str,
    daddr: str,
    dport: str,
    iface: Optional[str] = None,
    mark: int = 0,
) -> tuple[socket.socket, tuple, tuple]:
    """Bind to saddr:sport and connect to daddr:dport.

    Returns the socket, its bound address and the peer address.
    """
    sfamily, _, _, _, source = await _resolve(saddr, sport, family, socktype)
    _, _, _, _, peer = await _resolve(daddr, dport, sfamily, socktype)
    sock = create_socket(sfamily, socktype)
    try:
        _apply_binding(sock, iface, mark)
        _bind(sock, source, retry_port=sport)
        await _connect(sock, peer)
        bound = _local_name(sock)
    except BaseException:
        sock.close()
        raise
    return sock, bound, peer


async def client_stun(
    bound_addr: tuple,
    socktype: int,
    daddr: str,
    dport: str,
    iface: Optional[str] = None,
    mark: int = 0,
) -> tuple[socket.socket, str, int]:
    """Bind to *bound_addr* and connect to the STUN server.

    Returns the socket with the host and port it is bound to.
    """
    family = _family_of(bound_addr)
    _, _, _, _, peer = await _resolve(daddr, dport, family, socktype)
    sock = create_socket(family, socktype)
    try:
        _apply_binding(sock, iface, mark)
        _bind(sock, bound_addr)
        await _connect(sock, peer)
        local = _local_name(sock)
    except BaseException:
        sock.close()
        raise
    return sock, local[0], local[1]


async def client_forward(socktype: int, addr: str, port: str) -> socket.socket:
    """Connect to the forward target addr:port."""
    family, _, _, _, peer = await _resolve(addr, port, socket.AF_UNSPEC, socktype)
    sock = create_socket(family, socktype)
    try:
        await _connect(sock, peer)
    except BaseException:
        sock.close()
        raise
    return sock


def server_forward(
    bound_addr: tuple, socktype: int, iface: Optional[str] = None, mark: int = 0
) -> socket.socket:
    """Open the forwarding server socket on *bound_addr*."""
    sock = create_socket(_family_of(bound_addr), socktype)
    try:
        _bind(sock, bound_addr)
        _apply_binding(sock, iface, mark)
        if socktype == socket.SOCK_STREAM:
            sock.listen(5)
    except SocketSetupError:
        sock.close()
        raise
    except OSError as exc:
        sock.close()
        raise SocketSetupError(exc.errno, f"cannot listen on {bound_addr}: {exc}") from exc
    return sock