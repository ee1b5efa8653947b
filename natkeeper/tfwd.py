"""TCP port forwarding from the mapped port to a configured target."""

from __future__ import annotations

import asyncio
import logging
import re
import socket
from typing import Callable, Optional

from .conf import Config
from .sock import SocketSetupError, client_forward, server_forward

log = logging.getLogger(__name__)

_BUFSIZE = 8192
_LEADING_INT = re.compile(r"\s*\+?(\d+)")


def _target_port(config: Config) -> str:
    """Return the target port, falling back to the public port when it is 0."""
    port = config.target_port or ""
    match = _LEADING_INT.match(port)
    if not match or int(match.group(1)) == 0:
        return config.set_mapped_port(-1)
    return port


async def _splice(first: socket.socket, second: socket.socket, timeout: float) -> None:
    """Copy data both ways until one side closes or nothing moves for *timeout*."""
    loop = asyncio.get_running_loop()
    last = loop.time()

    async def pump(src: socket.socket, dst: socket.socket) -> None:
        nonlocal last
        try:
            while True:
                data = await loop.sock_recv(src, _BUFSIZE)
                if not data:
                    return
                last = loop.time()
                await loop.sock_sendall(dst, data)
                last = loop.time()
        except OSError:
            return

    async def watchdog() -> None:
        while True:
            remaining = last + timeout - loop.time()
            if remaining <= 0:
                return
            await asyncio.sleep(remaining)

    tasks = [
        loop.create_task(pump(first, second)),
        loop.create_task(pump(second, first)),
        loop.create_task(watchdog()),
    ]
    try:
        await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


class TcpForwarder:
    """Accepts connections on the mapped port and relays them to the target."""

    def __init__(self, config: Config, on_fatal: Callable[[], None]) -> None:
        self._config = config
        self._on_fatal = on_fatal
        self._task: Optional[asyncio.Task] = None
        self._clients: set[asyncio.Task] = set()
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
        """Stop accepting connections; running relays continue."""
        if self._task is not None:
            self._task.cancel()

    def _forget(self, task: asyncio.Task) -> None:
        if self._task is task:
            self._task = None

    async def _serve(self, bound_addr: tuple) -> None:
        config = self._config
        try:
            server = server_forward(bound_addr, socket.SOCK_STREAM, config.iface, config.mark)
        except SocketSetupError as exc:
            log.error("Start TCP forward service failed: %s", exc)
            self._on_fatal()
            return
        self.server_socket = server
        loop = asyncio.get_running_loop()
        try:
            while True:
                try:
                    conn, _ = await loop.sock_accept(server)
                except OSError as exc:
                    log.error("accept failed: %s", exc)
                    break
                conn.setblocking(False)
                client = loop.create_task(self._relay(conn))
                self._clients.add(client)
                client.add_done_callback(self._clients.discard)
        finally:
            self.server_socket = None
            server.close()

    async def _relay(self, conn: socket.socket) -> None:
        config = self._config
        with conn:
            try:
                target = await client_forward(
                    socket.SOCK_STREAM, config.target_addr or "", _target_port(config)
                )
            except SocketSetupError as exc:
                log.warning("cannot reach forward target: %s", exc)
                return
            with target:
                await _splice(conn, target, config.forward_timeout_ms / 1000)