"""
QUIC 传输测试

在本地 UDP 端口上运行真实的 QUIC 连接（直连和打洞两种方式），
验证会话转发、证书固定和流量控制。
"""

import asyncio
import os
import socket

import pytest

import transport
from config import PunchConfig, ServerConfig
from conftest import (
    TEST_SECRET, SessionPair, exchange, fast_session_config, start_echo_server, wait_until,
)
from errors import PortalError, TransportError
from protocol import TunnelKind, TunnelSpec
from punch import HolePuncher
from transport import STREAM_BUFFER_LIMIT
from tunnel.client import TunnelClient
from tunnel.crypto import SessionCrypto
from tunnel.server import TunnelServer
from tunnel.session import TunnelSession


def local_spec(tunnel_id, target_port):
    return TunnelSpec(tunnel_id, TunnelKind.LOCAL, '127.0.0.1', 0, '127.0.0.1', target_port)


def unused_udp_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        sock.bind(('127.0.0.1', 0))
        return sock.getsockname()[1]


async def start_quic_pair(specs, config=None):
    """通过 listen() / dial() 建立 QUIC 连接并在两端运行会话，返回 (会话对, QUIC 服务器)"""
    config = config or fast_session_config()
    crypto = SessionCrypto.from_secret(TEST_SECRET)
    accepted = asyncio.get_running_loop().create_future()
    port = unused_udp_port()
    server = await transport.listen('127.0.0.1', port, crypto, accepted.set_result)
    try:
        connection = await transport.dial('127.0.0.1', port, crypto, handshake_timeout=5.0)
        server_connection = await asyncio.wait_for(accepted, 5.0)
    except BaseException:
        server.close()
        raise
    pair = SessionPair(TunnelClient(connection, crypto, config, specs, opens_control=True),
                       TunnelSession(server_connection, crypto, config))
    return pair, server


@pytest.mark.parametrize('size', [13, 1024 * 1024])
def test_direct_quic_forward(size):
    payload = b'hello, portal' if size == 13 else os.urandom(size)

    async def run():
        echo, echo_port = await start_echo_server()
        pair, server = await start_quic_pair([local_spec(1, echo_port)])
        try:
            await pair.wait_ready()
            return await exchange(pair.listener_port(1), payload, timeout=30.0)
        finally:
            await pair.close()
            server.close()
            echo.close()

    assert asyncio.run(run()) == payload


def test_punched_quic_forward():
    """两个本地打洞驱动打洞后在同一 UDP 套接字上建立 QUIC 并转发"""
    async def run():
        echo, echo_port = await start_echo_server()
        punch_config = PunchConfig(bind_host='127.0.0.1', timeout=10.0)
        left, right = HolePuncher(punch_config), HolePuncher(punch_config)
        pair = None
        try:
            left_code = await left.bind()
            right_code = await right.bind()
            left_result, right_result = await asyncio.gather(left.punch(right_code), right.punch(left_code))
            left_crypto = SessionCrypto.from_punch_key(left_result.key)
            right_crypto = SessionCrypto.from_punch_key(right_result.key)
            left_conn, right_conn = await asyncio.gather(
                transport.connect_punched(left_result, left_crypto, handshake_timeout=5.0),
                transport.connect_punched(right_result, right_crypto, handshake_timeout=5.0),
            )

            config = fast_session_config()
            client = TunnelClient(left_conn, left_crypto, config, [local_spec(1, echo_port)],
                                  opens_control=left_result.is_leader)
            session = TunnelSession(right_conn, right_crypto, config, opens_control=right_result.is_leader)
            pair = SessionPair(client, session)
            await pair.wait_ready()
            return list(client.established), await exchange(pair.listener_port(1), b'through the hole')
        finally:
            if pair is not None:
                await pair.close()
            left.close()
            right.close()
            echo.close()

    established, data = asyncio.run(run())
    assert established == [1]
    assert data == b'through the hole'


def test_dial_with_wrong_secret_fails_certificate_check():
    """客户端只信任由自己的密钥派生的证书"""
    async def run():
        port = unused_udp_port()
        accepted = []
        server = await transport.listen('127.0.0.1', port, SessionCrypto.from_secret(TEST_SECRET),
                                        accepted.append)
        try:
            await transport.dial('127.0.0.1', port, SessionCrypto.from_secret('wrong-secret'),
                                 handshake_timeout=5.0)
        finally:
            server.close()

    with pytest.raises(TransportError):
        asyncio.run(run())


def test_server_rejects_peer_outside_whitelist():
    async def run():
        port = unused_udp_port()
        config = fast_session_config()
        server = TunnelServer(ServerConfig(host='127.0.0.1', port=port, secret=TEST_SECRET,
                                           allowed_peers=['10.0.0.0/8']), config)
        await server.start()
        try:
            crypto = SessionCrypto.from_secret(TEST_SECRET)
            connection = await transport.dial('127.0.0.1', port, crypto, handshake_timeout=5.0)
            client = TunnelClient(connection, crypto, config, [TunnelSpec(1, TunnelKind.DYNAMIC, '127.0.0.1', 0)])
            await asyncio.wait_for(client.run(), 10.0)
        finally:
            await server.close()

    with pytest.raises(PortalError):
        asyncio.run(run())


def test_stalled_target_bounds_buffering():
    """目标停止读取时，QUIC 发送缓冲和本地写入量都保持有界"""
    held = []

    async def stalled_target(reader, writer):
        held.append(writer)

    async def run():
        target = await asyncio.start_server(stalled_target, '127.0.0.1', 0)
        target_port = target.sockets[0].getsockname()[1]
        pair, server = await start_quic_pair([local_spec(1, target_port)])
        sent = 0
        peak = 0
        try:
            await pair.wait_ready()
            reader, writer = await asyncio.open_connection('127.0.0.1', pair.listener_port(1))
            chunk = b'x' * 65536

            async def flood():
                nonlocal sent
                while True:
                    writer.write(chunk)
                    await writer.drain()
                    sent += len(chunk)

            flooding = asyncio.ensure_future(flood())
            await wait_until(lambda: held, 5.0)

            protocol = pair.client.connection.protocol
            loop = asyncio.get_running_loop()
            deadline = loop.time() + 3.0
            while loop.time() < deadline:
                for conn in list(pair.client.connections.values()):
                    if conn.stream is not None:
                        stream_id = conn.stream.writer.get_extra_info('stream_id')
                        peak = max(peak, protocol.buffered_amount(stream_id))
                await asyncio.sleep(0.01)

            flooding.cancel()
            await asyncio.gather(flooding, return_exceptions=True)
            writer.close()
            return sent, peak
        finally:
            await pair.close()
            server.close()
            for target_writer in held:
                target_writer.close()
            target.close()

    sent, peak = asyncio.run(run())
    assert 0 < peak <= STREAM_BUFFER_LIMIT + fast_session_config().buffer_size
    # 本地和目标两条 TCP 连接的内核缓冲加上 QUIC 窗口，远小于这个上限
    assert sent < 48 * 1024 * 1024
