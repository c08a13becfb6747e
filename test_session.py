"""
会话测试

覆盖握手认证、隧道请求的顺序响应、服务器策略、远程绑定失败、
SOCKS 动态隧道以及保活超时。
"""

import asyncio
import struct

import pytest

from config import ServerConfig
from conftest import (
    TEST_SECRET, LoopbackConnection, exchange, fast_session_config, read_until_eof,
    start_echo_server, start_pair, unused_port,
)
from errors import AuthenticationError, KeepaliveTimeout, PortalError, ProtocolError
from protocol import ControlMessage, TunnelKind, TunnelSpec
from tunnel.client import TunnelClient
from tunnel.crypto import SessionCrypto
from tunnel.session import TunnelSession


def count_data_opens(session):
    """记录会话收到的 TUNNEL_DATA_OPEN 数量"""
    calls = []
    original = session._on_data_open

    async def wrapper(message):
        calls.append(message.parse_data_open())
        await original(message)

    session._on_data_open = wrapper
    return calls


def test_requests_answered_in_order():
    """混合接受和拒绝的请求按发送顺序得到响应"""
    async def run():
        echo, echo_port = await start_echo_server()
        specs = [
            TunnelSpec(1, TunnelKind.LOCAL, '127.0.0.1', 0, '127.0.0.1', echo_port),
            TunnelSpec(2, TunnelKind.REMOTE, '127.0.0.1', 0, '127.0.0.1', echo_port),
            TunnelSpec(3, TunnelKind.DYNAMIC, '127.0.0.1', 0),
            TunnelSpec(4, TunnelKind.REMOTE_DYNAMIC, '127.0.0.1', 0),
        ]
        pair = await start_pair(specs, policy=ServerConfig(allow_dynamic=False))
        try:
            await pair.wait_ready()
            return list(pair.client.established), dict(pair.client.failed), set(pair.server.tunnels)
        finally:
            await pair.close()
            echo.close()

    established, failed, server_tunnels = asyncio.run(run())
    assert established == [1, 2]
    assert set(failed) == {3, 4}
    assert all('UNSUPPORTED' in reason for reason in failed.values())
    assert server_tunnels == {1, 2}


def test_remote_bind_failure_rejects_only_that_tunnel():
    async def run():
        blocker = await asyncio.start_server(lambda r, w: w.close(), '127.0.0.1', 0)
        busy_port = blocker.sockets[0].getsockname()[1]
        specs = [
            TunnelSpec(1, TunnelKind.REMOTE, '127.0.0.1', busy_port, 'localhost', 22),
            TunnelSpec(2, TunnelKind.REMOTE_DYNAMIC, '127.0.0.1', 0),
        ]
        pair = await start_pair(specs)
        try:
            await pair.wait_ready()
            return list(pair.client.established), dict(pair.client.failed), pair.client_task.done()
        finally:
            await pair.close()
            blocker.close()

    established, failed, finished = asyncio.run(run())
    assert established == [2]
    assert 'BIND_FAILED' in failed[1]
    assert not finished


def test_all_tunnels_rejected_ends_session():
    async def run():
        specs = [TunnelSpec(1, TunnelKind.REMOTE_DYNAMIC, '127.0.0.1', 0)]
        pair = await start_pair(specs, policy=ServerConfig(allow_remote=False))
        try:
            await asyncio.wait_for(pair.client_task, 5.0)
        finally:
            await pair.close()

    with pytest.raises(PortalError):
        asyncio.run(run())


def test_socks5_dynamic_tunnel():
    """SOCKS5 CONNECT 只触发一次 TUNNEL_DATA_OPEN，目标为请求中的地址"""
    async def run():
        echo, echo_port = await start_echo_server()
        pair = await start_pair([TunnelSpec(1, TunnelKind.DYNAMIC, '127.0.0.1', 0)])
        opens = count_data_opens(pair.server)
        try:
            await pair.wait_ready()
            reader, writer = await asyncio.open_connection('127.0.0.1', pair.listener_port(1))
            writer.write(b'\x05\x01\x00')
            method = await reader.readexactly(2)
            writer.write(b'\x05\x01\x00\x01' + bytes([127, 0, 0, 1]) + struct.pack('>H', echo_port))
            reply = await reader.readexactly(10)
            writer.write(b'socks payload')
            writer.write_eof()
            data = await read_until_eof(reader)
            writer.close()
            return method, reply, data, opens
        finally:
            await pair.close()
            echo.close()

    method, reply, data, opens = asyncio.run(run())
    assert method == b'\x05\x00'
    assert reply == b'\x05\x00\x00\x01' + b'\x00' * 6
    assert data == b'socks payload'
    assert len(opens) == 1
    tunnel_id, connection_id, host, port = opens[0]
    assert (tunnel_id, host) == (1, '127.0.0.1')
    assert connection_id % 2 == 1


def test_socks4_dynamic_tunnel():
    """SOCKS4 IPv4 CONNECT 只触发一次 TUNNEL_DATA_OPEN，目标为请求中的地址"""
    async def run():
        echo, echo_port = await start_echo_server()
        pair = await start_pair([TunnelSpec(1, TunnelKind.DYNAMIC, '127.0.0.1', 0)])
        opens = count_data_opens(pair.server)
        try:
            await pair.wait_ready()
            reader, writer = await asyncio.open_connection('127.0.0.1', pair.listener_port(1))
            writer.write(b'\x04\x01' + struct.pack('>H', echo_port) + bytes([127, 0, 0, 1]) + b'\x00')
            reply = await reader.readexactly(8)
            writer.write(b'socks4')
            writer.write_eof()
            data = await read_until_eof(reader)
            writer.close()
            return echo_port, reply, data, opens
        finally:
            await pair.close()
            echo.close()

    echo_port, reply, data, opens = asyncio.run(run())
    assert reply[:2] == b'\x00\x5a'
    assert data == b'socks4'
    assert len(opens) == 1
    tunnel_id, connection_id, host, port = opens[0]
    assert (tunnel_id, host, port) == (1, '127.0.0.1', echo_port)
    assert connection_id % 2 == 1


def test_socks5_refused_target_reply():
    async def run():
        closed_port = unused_port()
        pair = await start_pair([TunnelSpec(1, TunnelKind.DYNAMIC, '127.0.0.1', 0)])
        try:
            await pair.wait_ready()
            reader, writer = await asyncio.open_connection('127.0.0.1', pair.listener_port(1))
            writer.write(b'\x05\x01\x00')
            await reader.readexactly(2)
            writer.write(b'\x05\x01\x00\x01' + bytes([127, 0, 0, 1]) + struct.pack('>H', closed_port))
            reply = await reader.readexactly(10)
            writer.close()
            return reply
        finally:
            await pair.close()

    reply = asyncio.run(run())
    assert reply[:2] == b'\x05\x05'


def test_socks4a_remote_dynamic_tunnel():
    """远程动态隧道: 服务器监听 SOCKS，客户端连接目标"""
    async def run():
        echo, echo_port = await start_echo_server()
        pair = await start_pair([TunnelSpec(1, TunnelKind.REMOTE_DYNAMIC, '127.0.0.1', 0)])
        opens = count_data_opens(pair.client)
        try:
            await pair.wait_ready()
            reader, writer = await asyncio.open_connection('127.0.0.1', pair.listener_port(1))
            writer.write(b'\x04\x01' + struct.pack('>H', echo_port) + b'\x00\x00\x00\x01' + b'\x00'
                         + b'localhost\x00')
            reply = await reader.readexactly(8)
            writer.write(b'socks4a')
            writer.write_eof()
            data = await read_until_eof(reader)
            writer.close()
            return reply, data, opens
        finally:
            await pair.close()
            echo.close()

    reply, data, opens = asyncio.run(run())
    assert reply[:2] == b'\x00\x5a'
    assert data == b'socks4a'
    assert len(opens) == 1
    assert opens[0][2] == 'localhost'
    assert opens[0][1] % 2 == 0


def test_fixed_target_enforced():
    """对固定目标隧道请求其它地址会被拒绝"""
    async def run():
        echo, echo_port = await start_echo_server()
        pair = await start_pair([TunnelSpec(1, TunnelKind.LOCAL, '127.0.0.1', 0, '127.0.0.1', echo_port)])
        try:
            await pair.wait_ready()
            future = asyncio.get_running_loop().create_future()
            pair.client._pending_acks[99] = future
            await pair.client.send_message(ControlMessage.data_open(1, 99, '127.0.0.1', echo_port + 1))
            return await asyncio.wait_for(future, 3.0)
        finally:
            await pair.close()
            echo.close()

    error, _ = asyncio.run(run())
    assert error.name == 'NOT_ALLOWED'


def test_authentication_failure():
    async def run():
        left, right = await LoopbackConnection.pair()
        config = fast_session_config()
        client = TunnelClient(left, SessionCrypto.from_secret('wrong-secret'), config,
                              [TunnelSpec(1, TunnelKind.DYNAMIC, '127.0.0.1', 0)])
        server = TunnelSession(right, SessionCrypto.from_secret(TEST_SECRET), config)
        return await asyncio.gather(client.run(), server.run(), return_exceptions=True)

    client_result, server_result = asyncio.run(run())
    assert isinstance(server_result, AuthenticationError)
    assert isinstance(client_result, PortalError)


def test_keepalive_timeout():
    """对端长时间没有任何控制消息时会话结束"""
    async def run():
        left, right = await LoopbackConnection.pair()
        crypto = SessionCrypto.from_secret(TEST_SECRET)
        client = TunnelClient(left, crypto, fast_session_config(keepalive_interval=0.2, keepalive_timeout=1.0),
                              [TunnelSpec(1, TunnelKind.DYNAMIC, '127.0.0.1', 0)])
        server = TunnelSession(right, crypto, fast_session_config(keepalive_interval=30.0, keepalive_timeout=60.0))
        server_task = asyncio.ensure_future(server.run())
        try:
            await asyncio.wait_for(client.run(), 5.0)
        finally:
            await server.close()
            await asyncio.gather(server_task, return_exceptions=True)

    with pytest.raises(KeepaliveTimeout):
        asyncio.run(run())


def test_unexpected_response_is_protocol_error():
    async def run():
        left, _ = await LoopbackConnection.pair()
        client = TunnelClient(left, SessionCrypto.from_secret(TEST_SECRET), fast_session_config(), [])
        try:
            await client.handle_message(ControlMessage.tunnel_accept(5, 0))
        finally:
            left.close()

    with pytest.raises(ProtocolError):
        asyncio.run(run())


def test_local_and_remote_tunnels_together():
    """同一会话中的本地隧道和远程隧道同时转发"""
    async def run():
        echo, echo_port = await start_echo_server()
        specs = [
            TunnelSpec(1, TunnelKind.LOCAL, '127.0.0.1', 0, '127.0.0.1', echo_port),
            TunnelSpec(2, TunnelKind.REMOTE, '127.0.0.1', 0, '127.0.0.1', echo_port),
        ]
        pair = await start_pair(specs)
        try:
            await pair.wait_ready()
            return await asyncio.gather(exchange(pair.listener_port(1), b'local'),
                                        exchange(pair.listener_port(2), b'remote'))
        finally:
            await pair.close()
            echo.close()

    assert asyncio.run(run()) == [b'local', b'remote']
