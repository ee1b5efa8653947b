import asyncio
import socket
import struct
import sys

import pytest

from natkeeper.sock import (
    SocketSetupError,
    bind_interface,
    client_base,
    client_forward,
    client_stun,
    create_socket,
    server_forward,
    set_fwmark,
)


class _RecordingSocket:
    family = socket.AF_INET

    def __init__(self):
        self.options = []

    def setsockopt(self, level, option, value):
        self.options.append((level, option, value))


class _FailingSocket:
    family = socket.AF_INET

    def setsockopt(self, level, option, value):
        raise PermissionError(1, "Operation not permitted")


def _free_port(socktype):
    with socket.socket(socket.AF_INET, socktype) as probe:
        probe.bind(("127.0.0.1", 0))
        return probe.getsockname()[1]


async def _start_tcp_server():
    async def handle(reader, writer):
        await reader.read()
        writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    return server, server.sockets[0].getsockname()[1]


def test_create_socket_options():
    with create_socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        assert bool(sock.getsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR)) is True
        assert sock.getblocking() is False
        assert sock.get_inheritable() is False
        assert sock.type == socket.SOCK_STREAM


def test_bind_interface_none_sets_nothing():
    fake = _RecordingSocket()
    bind_interface(fake, None)
    assert fake.options == []


def test_bind_interface_linux_passes_name(monkeypatch):
    monkeypatch.setattr(sys, "platform", "linux")
    fake = _RecordingSocket()
    bind_interface(fake, "eth0")
    [(level, _option, value)] = fake.options
    assert level == socket.SOL_SOCKET
    assert value.rstrip(b"\0") == b"eth0"
    assert len(value) == 16


def test_bind_interface_truncates_long_name(monkeypatch):
    monkeypatch.setattr(sys, "platform", "linux")
    fake = _RecordingSocket()
    bind_interface(fake, "abcdefghijklmnopqrstu")
    value = fake.options[0][2]
    assert value[:15] == b"abcdefghijklmno"
    assert value[15] == 0


def test_bind_interface_unsupported_platform(monkeypatch):
    monkeypatch.setattr(sys, "platform", "sunos5")
    with pytest.raises(SocketSetupError):
        bind_interface(_RecordingSocket(), "eth0")


def test_bind_interface_error_is_wrapped(monkeypatch):
    monkeypatch.setattr(sys, "platform", "linux")
    with pytest.raises(SocketSetupError):
        bind_interface(_FailingSocket(), "eth0")


def test_set_fwmark_linux_packs_unsigned(monkeypatch):
    monkeypatch.setattr(sys, "platform", "linux")
    fake = _RecordingSocket()
    set_fwmark(fake, 0xFFFFFFFF)
    [(level, _option, value)] = fake.options
    assert level == socket.SOL_SOCKET
    assert value == struct.pack("I", 0xFFFFFFFF)


def test_set_fwmark_other_platform_does_nothing(monkeypatch):
    monkeypatch.setattr(sys, "platform", "sunos5")
    fake = _RecordingSocket()
    set_fwmark(fake, 7)
    assert fake.options == []


def test_set_fwmark_error_is_wrapped(monkeypatch):
    monkeypatch.setattr(sys, "platform", "linux")
    with pytest.raises(SocketSetupError):
        set_fwmark(_FailingSocket(), 1)


@pytest.mark.asyncio
async def test_client_base_tcp_connects():
    server, port = await _start_tcp_server()
    async with server:
        sock, bound, peer = await client_base(
            socket.AF_INET, socket.SOCK_STREAM, "127.0.0.1", "0", "127.0.0.1", str(port), None, 0
        )
        with sock:
            assert peer == ("127.0.0.1", port)
            assert sock.getpeername() == peer
            assert bound == sock.getsockname()
            assert bound[0] == "127.0.0.1"


@pytest.mark.asyncio
async def test_client_base_udp_sends_from_bound_address():
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as receiver:
        receiver.bind(("127.0.0.1", 0))
        receiver.settimeout(5)
        port = receiver.getsockname()[1]
        sock, bound, _peer = await client_base(
            socket.AF_INET, socket.SOCK_DGRAM, "127.0.0.1", "0", "127.0.0.1", str(port), None, 0
        )
        with sock:
            sock.send(b"ping")
            data, source = receiver.recvfrom(100)
    assert data == b"ping"
    assert source == bound


@pytest.mark.asyncio
async def test_client_base_refused():
    port = _free_port(socket.SOCK_STREAM)
    with pytest.raises(SocketSetupError):
        await client_base(
            socket.AF_INET, socket.SOCK_STREAM, "127.0.0.1", "0", "127.0.0.1", str(port), None, 0
        )


@pytest.mark.asyncio
async def test_client_base_family_mismatch_fails_to_resolve():
    with pytest.raises(SocketSetupError):
        await client_base(socket.AF_INET, socket.SOCK_STREAM, "127.0.0.1", "0", "::1", "80", None, 0)


@pytest.mark.asyncio
async def test_client_stun_reports_bound_address():
    server, port = await _start_tcp_server()
    async with server:
        sock, addr, bport = await client_stun(
            ("127.0.0.1", 0), socket.SOCK_STREAM, "127.0.0.1", str(port), None, 0
        )
        with sock:
            assert addr == "127.0.0.1"
            assert sock.getsockname() == (addr, bport)
            assert bport > 0


@pytest.mark.asyncio
async def test_client_forward_connects():
    server, port = await _start_tcp_server()
    async with server:
        sock = await client_forward(socket.SOCK_STREAM, "127.0.0.1", str(port))
        with sock:
            assert sock.getpeername() == ("127.0.0.1", port)


@pytest.mark.asyncio
async def test_server_forward_tcp_accepts():
    loop = asyncio.get_running_loop()
    with server_forward(("127.0.0.1", 0), socket.SOCK_STREAM, None, 0) as srv:
        port = srv.getsockname()[1]
        _reader, writer = await asyncio.open_connection("127.0.0.1", port)
        conn, addr = await asyncio.wait_for(loop.sock_accept(srv), 5)
        with conn:
            assert addr == writer.get_extra_info("sockname")
        writer.close()


@pytest.mark.asyncio
async def test_server_forward_udp_receives():
    loop = asyncio.get_running_loop()
    with server_forward(("127.0.0.1", 0), socket.SOCK_DGRAM, None, 0) as srv:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sender:
            sender.sendto(b"hello", srv.getsockname())
            data = await asyncio.wait_for(loop.sock_recv(srv, 100), 5)
    assert data == b"hello"


def test_server_forward_address_in_use():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as holder:
        holder.bind(("127.0.0.1", 0))
        holder.listen(1)
        with pytest.raises(SocketSetupError):
            server_forward(holder.getsockname(), socket.SOCK_STREAM, None, 0)