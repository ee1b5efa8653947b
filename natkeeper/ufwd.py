"""UDP port forwarding from the mapped port to a configured target."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
import socket
from dataclasses import dataclass
from typing import Callable, Optional

from .conf import Config
from .sock import SocketSetupError, client_forward, server_forward

log = logging.getLogger(__name__)

_BUFSIZE = 2048
_LEADING_INT = re.compile(r"\s*\+?(\d+)")


def _target_port(config: Config) -> str:
    port = config.target_port or ""
    match = _LEADING_INT.match(port)
    if not match or int(match.group(1)) == 0:
        return config.set_mapped_port(-1)
    return port


async def _recvfrom(sock: socket.socket, size: int) -> tuple[bytes, tuple]:
    """Receive one datagram and its sender from a non-blocking socket."""
    loop = asyncio.get_running_loop()
    while True:
        try:
            return sock.recvfrom(size)
        except (BlockingIOError, InterruptedError):
            pass
        ready = loop.create_future()
        fd = sock.fileno()
        loop.add_reader(fd, lambda: ready.done() or ready.set_result(None))
        try:
            await ready
        finally:
            loop.remove_reader(fd)


@dataclass(eq=False)
class _Session:
    addr: tuple
    sock: socket.socket
    active: bool = False


class UdpForwarder:
    """Relays datagrams on the mapped port to the target, one session per peer."""

    def __init__(self, config: Config, on_fatal: Callable[[], None]) -> None:
        self._config = config
        self._on_fatal = on_fatal
        self._task: Optional[asyncio.Task] = None
        self._sessions: dict[tuple, _Session] = {}
        self._relays: set[asyncio.Task] = set()
        self.server_socket: Optional[socket.socket] = None

    def run(self, bound_addr: tuple) -> Optional[asyncio.Task]:
        """Start the server on *bound_addr* unless it is already running.

        Returns the new server task, or None if one was already running.
        """
        if self._task is not None:
            return None
        task = asyncio.get_running_loop().create_task(self._serve(bound_addr))
        self._task = task
        task.add_done_callback(self._forget)
        return task

    def kill(self) -> None:
        """Stop the forwarding server."""
        if self._task is not None:
            self._task.cancel()

    def _forget(self, task: asyncio.Task) -> None:
        if self._task is task:
            self._task = None

    async def _serve(self, bound_addr: tuple) -> None:
        config = self._config
        try:
            server = server_forward(bound_addr, socket.SOCK_DGRAM, config.iface, config.mark)
        except SocketSetupError as exc:
            log.error("Start UDP forward service failed: %s", exc)
            self._on_fatal()
            return
        self.server_socket = server
        loop = asyncio.get_running_loop()
        try:
            while True:
                try:
                    data, addr = await _recvfrom(server, _BUFSIZE)
                except OSError:
                    break
                session = self._sessions.get(addr)
                if session is None:
                    try:
                        target = await client_forward(
                            socket.SOCK_DGRAM, config.target_addr or "", _target_port(config)
                        )
                    except SocketSetupError as exc:
                        log.error("cannot reach forward target: %s", exc)
                        continue
                    session = _Session(addr, target)
                    self._sessions[addr] = session
                    relay = loop.create_task(self._relay_back(server, session))
                    self._relays.add(relay)
                    relay.add_done_callback(self._relays.discard)
                with contextlib.suppress(OSError):
                    session.sock.send(data)
                session.active = True
        finally:
            self.server_socket = None
            server.close()

    async def _relay_back(self, server: socket.socket, session: _Session) -> None:
        loop = asyncio.get_running_loop()
        timeout = self._config.forward_timeout_ms / 1000
        try:
            while True:
                session.active = False
                try:
                    data = await asyncio.wait_for(loop.sock_recv(session.sock, _BUFSIZE), timeout)
                except asyncio.TimeoutError:
                    if session.active:
                        continue
                    break
                except OSError:
                    break
                if not data:
                    break
                try:
                    server.sendto(data, session.addr)
                except OSError:
                    break
        finally:
            if self._sessions.get(session.addr) is session:
                del self._sessions[session.addr]
            session.sock.close()