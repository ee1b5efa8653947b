"""Keeps a TCP NAT mapping open with HTTP keep-alive requests."""

from __future__ import annotations

import asyncio
import logging
import socket
from typing import Awaitable, Optional, TypeVar

from .conf import Config
from .sock import SocketSetupError, client_base
from .stun import StunClient
from .tfwd import TcpForwarder

log = logging.getLogger(__name__)

_BUFSIZE = 8192
_SEND_TIMEOUT = 30.0
_RETRY_DELAY = 5.0

T = TypeVar("T")


class _Killed(Exception):
    pass


def keepalive_request(host: str) -> bytes:
    """Return the HEAD request sent to keep the connection alive."""
    return (
        b"HEAD / HTTP/1.1\r\nHost: "
        + host.encode()
        + b"\r\nConnection: keep-alive\r\n\r\n"
    )


class TcpKeeper:
    """Holds a TCP connection to an HTTP server open and tracks its mapping."""

    def __init__(self, config: Config) -> None:
        self._config = config
        self._killed = asyncio.Event()
        self._bound: Optional[tuple] = None
        self._forwarder = TcpForwarder(config, self.kill)
        self._stun = StunClient(config, self._stun_done, self.kill)

    async def run(self) -> None:
        """Keep sessions alive forever, reconnecting after each one ends."""
        while True:
            await self._session()
            await asyncio.sleep(_RETRY_DELAY)

    def kill(self) -> None:
        """End the current session; a new one starts after a short delay."""
        self._killed.set()

    def _stun_done(self) -> None:
        if self._config.target_addr is not None and self._bound is not None:
            self._forwarder.run(self._bound)

    async def _session(self) -> None:
        config = self._config
        self._killed.clear()
        try:
            sock, bound, _ = await client_base(
                config.family,
                socket.SOCK_STREAM,
                config.bind_addr,
                config.next_bind_port(),
                config.http_host,
                config.http_port,
                config.iface,
                config.mark,
            )
        except SocketSetupError as exc:
            log.error("Start TCP keep-alive service failed: %s", exc)
            return
        self._bound = bound
        with sock:
            self._stun.trigger(bound)
            try:
                await self._keep_alive(sock)
            finally:
                if config.target_addr is not None:
                    self._forwarder.kill()

    async def _guarded(self, operation: Awaitable[T], timeout: float) -> T:
        """Await *operation*, giving up on timeout or when killed."""
        op = asyncio.ensure_future(operation)
        killed = asyncio.ensure_future(self._killed.wait())
        try:
            done, _ = await asyncio.wait(
                {op, killed}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            pending = [f for f in (op, killed) if not f.done()]
            for future in pending:
                future.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        if op in done:
            return op.result()
        if killed in done:
            raise _Killed
        raise asyncio.TimeoutError

    async def _keep_alive(self, sock: socket.socket) -> None:
        loop = asyncio.get_running_loop()
        request = keepalive_request(self._config.http_host)
        interval = self._config.keep_interval_ms / 1000
        misses = 0
        while True:
            try:
                await self._guarded(loop.sock_sendall(sock, request), _SEND_TIMEOUT)
            except (asyncio.TimeoutError, OSError, _Killed):
                return
            while True:
                try:
                    data = await self._guarded(loop.sock_recv(sock, _BUFSIZE), interval)
                except asyncio.TimeoutError:
                    misses += 1
                    if misses == 1:
                        break
                    return
                except (OSError, _Killed):
                    return
                if not data:
                    return
                misses = 0