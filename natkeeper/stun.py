"""STUN binding client that discovers the public mapping of a bound socket."""

from __future__ import annotations

import asyncio
import logging
import secrets
import socket
import struct
import subprocess
from typing import Callable, Optional

from .conf import Config, Mode
from .notify import Mapping, notify
from .sock import SocketSetupError, client_stun

log = logging.getLogger(__name__)

MAGIC = 0x2112A442
BINDING_REQUEST = 0x0001
MAPPED_ADDRESS = 0x0001
XOR_MAPPED_ADDRESS = 0x0020

_FAMILIES = {1: (socket.AF_INET, 4), 2: (socket.AF_INET6, 16)}
_HEADER = struct.Struct("!HHI12s")
_ATTRIBUTE = struct.Struct("!HH")
_BUFSIZE = 2048
_TCP_TIMEOUT = 30.0
_UDP_TIMEOUT = 3.0
_UDP_FIRST_RETRIES = 10
_UDP_RETRIES = 10


class StunError(Exception):
    """Raised when a STUN exchange fails or the response is unusable."""


def build_request(transaction_id: bytes) -> bytes:
    """Return a binding request carrying the 12-byte *transaction_id*."""
    if len(transaction_id) != 12:
        raise ValueError("transaction id must be 12 bytes")
    return _HEADER.pack(BINDING_REQUEST, 0, MAGIC, transaction_id)


def _decode_address(value: bytes, key: Optional[bytes]) -> tuple[int, str, int]:
    if len(value) < 4:
        raise StunError("truncated address attribute")
    try:
        family, length = _FAMILIES[value[1]]
    except KeyError:
        raise StunError(f"unknown address family {value[1]}") from None
    port = int.from_bytes(value[2:4], "big")
    raw = value[4 : 4 + length]
    if len(raw) < length:
        raise StunError("truncated address attribute")
    if key is not None:
        port ^= MAGIC >> 16
        raw = bytes(a ^ b for a, b in zip(raw, key))
    return family, socket.inet_ntop(family, raw), port


def parse_attributes(body: bytes, transaction_id: bytes) -> tuple[int, str, int]:
    """Find the mapped address in the attributes of a STUN response.

    Returns (family, address, port).
    """
    key = MAGIC.to_bytes(4, "big") + transaction_id
    pos = 0
    while pos < len(body):
        if pos + _ATTRIBUTE.size > len(body):
            raise StunError("truncated attribute header")
        kind, size = _ATTRIBUTE.unpack_from(body, pos)
        if size <= 0:
            raise StunError("empty attribute")
        value = body[pos + _ATTRIBUTE.size : pos + _ATTRIBUTE.size + size]
        if kind == MAPPED_ADDRESS:
            return _decode_address(value, None)
        if kind == XOR_MAPPED_ADDRESS:
            return _decode_address(value, key)
        pos += _ATTRIBUTE.size + size
    raise StunError("no mapped address in response")


def _pack(addr: str) -> bytes:
    family = socket.AF_INET6 if ":" in addr else socket.AF_INET
    return socket.inet_pton(family, addr)


class MappingTracker:
    """Remembers the last mapping and tells whether a new one differs."""

    def __init__(self) -> None:
        self._mapped = bytes(16)
        self._mapped_port = 0
        self._bound = bytes(16)
        self._bound_port = 0

    def update(self, mapping: Mapping) -> bool:
        """Store *mapping*; return True if it differs from the previous one."""
        mapped = _pack(mapping.mapped_addr)
        bound = _pack(mapping.bound_addr)
        changed = (
            mapping.mapped_port != self._mapped_port
            or mapping.bound_port != self._bound_port
            or self._mapped[: len(mapped)] != mapped
            or self._bound[: len(bound)] != bound
        )
        self._mapped = mapped.ljust(16, b"\0")
        self._bound = bound.ljust(16, b"\0")
        self._mapped_port = mapping.mapped_port
        self._bound_port = mapping.bound_port
        return changed


async def _recv_exact(sock: socket.socket, size: int) -> bytes:
    loop = asyncio.get_running_loop()
    data = b""
    while len(data) < size:
        chunk = await asyncio.wait_for(loop.sock_recv(sock, size - len(data)), _TCP_TIMEOUT)
        if not chunk:
            raise ConnectionResetError("connection closed")
        data += chunk
    return data


class StunClient:
    """Runs STUN binding requests and reports changes of the public mapping."""

    def __init__(
        self,
        config: Config,
        on_done: Callable[[], None],
        on_fatal: Callable[[], None],
    ) -> None:
        self._config = config
        self._on_done = on_done
        self._on_fatal = on_fatal
        self._tracker = MappingTracker()
        self._udp_retries = _UDP_FIRST_RETRIES
        self._task: Optional[asyncio.Task] = None
        self._wake = asyncio.Event()
        self._children: list[subprocess.Popen] = []

    async def _exchange_tcp(self, sock: socket.socket, request: bytes) -> tuple[bytes, bytes]:
        loop = asyncio.get_running_loop()
        try:
            await asyncio.wait_for(loop.sock_sendall(sock, request), _TCP_TIMEOUT)
        except (OSError, asyncio.TimeoutError) as exc:
            raise StunError("STUN TCP send failed.") from exc
        try:
            header = await _recv_exact(sock, _HEADER.size)
        except (OSError, asyncio.TimeoutError) as exc:
            raise StunError("STUN TCP recv failed.") from exc
        _, size, _, transaction_id = _HEADER.unpack(header)
        if size <= 0 or size > _BUFSIZE:
            raise StunError(f"invalid STUN response length {size}")
        try:
            body = await _recv_exact(sock, size)
        except (OSError, asyncio.TimeoutError) as exc:
            raise StunError("STUN TCP recv failed.") from exc
        return body, transaction_id

    async def _exchange_udp(self, sock: socket.socket, request: bytes) -> bytes:
        loop = asyncio.get_running_loop()
        data = b""
        for _ in range(self._udp_retries):
            try:
                await loop.sock_sendall(sock, request)
            except OSError as exc:
                raise StunError("STUN UDP send failed.") from exc
            try:
                data = await asyncio.wait_for(loop.sock_recv(sock, _BUFSIZE), _UDP_TIMEOUT)
            except (OSError, asyncio.TimeoutError):
                continue
            if data:
                break
        self._udp_retries = _UDP_RETRIES
        if not data:
            raise StunError("no STUN response")
        return data

    async def bind(self, sock: socket.socket, bound_addr: str, bound_port: int) -> Mapping:
        """Run one binding exchange on *sock* and report a changed mapping."""
        transaction_id = secrets.token_bytes(12)
        request = build_request(transaction_id)
        if self._config.mode is Mode.TCP:
            body, transaction_id = await self._exchange_tcp(sock, request)
        else:
            body = (await self._exchange_udp(sock, request))[_HEADER.size :]
        family, addr, port = parse_attributes(body, transaction_id)

        self._on_done()

        mapping = Mapping(family, addr, port, bound_addr, bound_port)
        if self._tracker.update(mapping):
            self._config.set_mapped_port(port)
            process = notify(mapping, self._config.mode, self._config.script)
            self._children = [p for p in self._children if p.poll() is None]
            if process is not None:
                self._children.append(process)
        return mapping

    async def _run(self, bound_addr: tuple) -> None:
        config = self._config
        try:
            sock, addr, port = await client_stun(
                bound_addr,
                config.mode.socktype,
                config.stun_host,
                config.stun_port,
                config.iface,
                config.mark,
            )
        except SocketSetupError as exc:
            log.error("Start STUN service failed: %s", exc)
            self._on_fatal()
            return
        with sock:
            while True:
                try:
                    await self.bind(sock, addr, port)
                except StunError as exc:
                    log.error("%s", exc)
                    self._on_fatal()
                    break
                if config.mode is not Mode.UDP:
                    break
                await self._wake.wait()
                self._wake.clear()

    def _forget(self, task: asyncio.Task) -> None:
        if self._task is task:
            self._task = None

    def trigger(self, bound_addr: tuple) -> Optional[asyncio.Task]:
        """Start the STUN task for *bound_addr*, or wake the running one.

        Returns the new task, or None when an existing task was woken.
        """
        if self._task is not None:
            self._wake.set()
            return None
        self._wake.clear()
        task = asyncio.get_running_loop().create_task(self._run(bound_addr))
        self._task = task
        task.add_done_callback(self._forget)
        return task