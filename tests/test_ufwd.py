import asyncio
import contextlib
import socket

import pytest

from natkeeper.conf import Config, Mode
from natkeeper.ufwd import UdpForwarder


class Echo(asyncio.DatagramProtocol):
    def __init__(self):
        self.sources = []

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        self.sources.append(addr)
        self.transport.sendto(data, addr)


async def start_echo():
    loop = asyncio.get_running_loop()
    transport, protocol = await loop.create_datagram_endpoint(
        Echo, local_addr=("127.0.0.1", 0)
    )
    return transport, protocol, transport.get_extra_info("sockname")[1]


async def wait_until(predicate, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


def exchange(client, port, payload):
    client.sendto(payload, ("127.0.0.1", port))
    data, _ = client.recvfrom(2048)
    return data


def make_client():
    client = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    client.bind(("127.0.0.1", 0))
    client.settimeout(3)
    return client


async def started(forwarder):
    task = forwarder.run(("127.0.0.1", 0))
    await wait_until(lambda: forwarder.server_socket is not None)
    return task, forwarder.server_socket.getsockname()[1]


async def stop(forwarder, task):
    forwarder.kill()
    with contextlib.suppress(asyncio.CancelledError):
        await task


@pytest.mark.asyncio
async def test_relays_datagrams_per_client():
    transport, _, echo_port = await start_echo()
    config = Config(mode=Mode.UDP, target_addr="127.0.0.1", target_port=str(echo_port))
    forwarder = UdpForwarder(config, lambda: None)
    task, port = await started(forwarder)
    first, second = make_client(), make_client()
    try:
        assert await asyncio.to_thread(exchange, first, port, b"one") == b"one"
        assert await asyncio.to_thread(exchange, second, port, b"two") == b"two"
    finally:
        first.close()
        second.close()
        await stop(forwarder, task)
        transport.close()


@pytest.mark.asyncio
async def test_zero_target_port_uses_mapped_port():
    transport, _, echo_port = await start_echo()
    config = Config(mode=Mode.UDP, target_addr="127.0.0.1", target_port="0")
    config.set_mapped_port(echo_port)
    forwarder = UdpForwarder(config, lambda: None)
    task, port = await started(forwarder)
    client = make_client()
    try:
        assert await asyncio.to_thread(exchange, client, port, b"hi") == b"hi"
    finally:
        client.close()
        await stop(forwarder, task)
        transport.close()


@pytest.mark.asyncio
async def test_idle_session_is_replaced():
    transport, echo, echo_port = await start_echo()
    config = Config(
        mode=Mode.UDP,
        target_addr="127.0.0.1",
        target_port=str(echo_port),
        forward_timeout_ms=100,
    )
    forwarder = UdpForwarder(config, lambda: None)
    task, port = await started(forwarder)
    client = make_client()
    try:
        assert await asyncio.to_thread(exchange, client, port, b"a") == b"a"
        assert await asyncio.to_thread(exchange, client, port, b"b") == b"b"
        assert len(set(echo.sources)) == 1
        await asyncio.sleep(0.4)
        assert await asyncio.to_thread(exchange, client, port, b"c") == b"c"
        assert len(set(echo.sources)) == 2
    finally:
        client.close()
        await stop(forwarder, task)
        transport.close()


@pytest.mark.asyncio
async def test_kill_clears_server_socket():
    transport, _, echo_port = await start_echo()
    config = Config(mode=Mode.UDP, target_addr="127.0.0.1", target_port=str(echo_port))
    forwarder = UdpForwarder(config, lambda: None)
    task, _ = await started(forwarder)
    assert forwarder.run(("127.0.0.1", 0)) is None
    await stop(forwarder, task)
    assert forwarder.server_socket is None
    transport.close()


@pytest.mark.asyncio
async def test_setup_failure_reports_fatal():
    config = Config(mode=Mode.UDP, target_addr="127.0.0.1", target_port="1", iface="nonexistent0")
    fatal = []
    forwarder = UdpForwarder(config, lambda: fatal.append(1))
    task = forwarder.run(("127.0.0.1", 0))
    await asyncio.wait_for(task, 5)
    assert fatal == [1]
    assert forwarder.server_socket is None