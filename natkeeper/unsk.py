"""Keeps a UDP NAT mapping open with periodic packets and STUN checks."""

from __future__ import annotations

import asyncio
import logging
import socket
from typing import Optional

from .conf import Config
from .sock import SocketSetupError, client_base
from .stun import StunClient
from .ufwd import UdpForwarder

log = logging.getLogger(__name__)

_RETRY_DELAY = 5.0


class UdpKeeper:
    """Refreshes a UDP mapping and re-checks it with STUN every few intervals."""

    def __init__(self, config: Config) -> None:
        self._config = config
        self._killed = asyncio.Event()
        self._bound: Optional[tuple] = None
        self._forwarder = UdpForwarder(config, self.kill)
        self._stun = StunClient(config, self._stun_done, self.kill)

    async def run(self) -> None:
        """Keep sessions alive forever, restarting after each one ends."""
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
            sock, bound, peer = await client_base(
                config.family,
                socket.SOCK_DGRAM,
                config.bind_addr,
                config.next_bind_port(),
                config.stun_host,
                config.stun_port,
                config.iface,
                config.mark,
            )
        except SocketSetupError as exc:
            log.error("Start UDP keep-alive service failed: %s", exc)
            return
        sock.close()
        self._bound = bound
        self._stun.trigger(bound)
        try:
            await self._keep_alive(bound, peer)
        finally:
            if config.target_addr is not None:
                self._forwarder.kill()

    async def _keep_alive(self, bound: tuple, peer: tuple) -> None:
        interval = self._config.keep_interval_ms / 1000
        cycle = self._config.check_cycle
        count = 0
        while True:
            try:
                await asyncio.wait_for(self._killed.wait(), interval)
                return
            except asyncio.TimeoutError:
                pass
            server = self._forwarder.server_socket
            if server is not None:
                count += 1
            if server is None or count >= cycle:
                self._stun.trigger(bound)
                count = 0
                continue
            try:
                server.sendto(b"k", peer)
            except OSError as exc:
                log.error("keep-alive send failed: %s", exc)
                return