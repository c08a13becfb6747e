"""
测试公共设施

- LoopbackConnection: 用本地 TCP 连接模拟多路复用连接，每条流都是真实的
  套接字，因此顺序和背压与真实网络一致
- 会话对、回显服务器等辅助函数通过 fixture 提供
"""

import asyncio
import socket
from typing import List, Optional

import pytest

from config import ServerConfig, SessionConfig
from errors import TransportError
from protocol import TunnelSpec
from transport import MultiplexedConnection, Stream
from tunnel.client import TunnelClient
from tunnel.crypto import SessionCrypto
from tunnel.session import TunnelSession

TEST_SECRET = 'portal-test-secret'


class LoopbackConnection(MultiplexedConnection):
    """
    本地回环多路复用连接

    每一端都有一个本地 TCP 监听器；open_stream() 连接对端的监听器。
    任意一端关闭时，两端都会关闭（模拟传输连接断开）。
    """

    def __init__(self):
        self.peer: Optional['LoopbackConnection'] = None
        self.port = None
        self.closed = False
        self._server = None
        self._incoming: asyncio.Queue = asyncio.Queue()
        self._writers = []

    @classmethod
    async def pair(cls):
        left, right = cls(), cls()
        left.peer, right.peer = right, left
        await left._start()
        await right._start()
        return left, right

    async def _start(self):
        self._server = await asyncio.start_server(self._on_stream, '127.0.0.1', 0)
        self.port = self._server.sockets[0].getsockname()[1]

    def _on_stream(self, reader, writer):
        if self.closed:
            writer.close()
            return
        self._writers.append(writer)
        self._incoming.put_nowait(Stream(reader, writer, closer=writer.close))

    @property
    def remote_address(self):
        return ('127.0.0.1', self.peer.port)

    async def open_stream(self) -> Stream:
        if self.closed or self.peer.closed:
            raise TransportError("回环连接已关闭")
        reader, writer = await asyncio.open_connection('127.0.0.1', self.peer.port)
        self._writers.append(writer)
        return Stream(reader, writer, closer=writer.close)

    async def accept_stream(self) -> Optional[Stream]:
        stream = await self._incoming.get()
        if stream is None:
            self._incoming.put_nowait(None)
        return stream

    def close(self):
        if self.closed:
            return
        self.closed = True
        self._server.close()
        for writer in self._writers:
            writer.close()
        self._incoming.put_nowait(None)
        if self.peer is not None:
            self.peer.close()

    async def wait_closed(self):
        await self._server.wait_closed()


def fast_session_config(**overrides) -> SessionConfig:
    """测试用的较短超时"""
    values = dict(
        keepalive_interval=0.5,
        keepalive_timeout=5.0,
        connect_timeout=2.0,
        open_timeout=3.0,
        grace_period=0.5,
        handshake_timeout=3.0,
    )
    values.update(overrides)
    return SessionConfig(**values)


class SessionPair:
    """一对运行中的会话（请求方 + 响应方）"""

    def __init__(self, client: TunnelClient, server: TunnelSession):
        self.client = client
        self.server = server
        self.client_task = asyncio.ensure_future(client.run())
        self.server_task = asyncio.ensure_future(server.run())

    async def wait_ready(self, timeout: float = 5.0):
        """等待所有隧道请求都得到响应"""
        total = len(self.client.specs)
        await wait_until(lambda: len(self.client.established) + len(self.client.failed) == total
                         or self.client_task.done(), timeout)

    def listener_port(self, tunnel_id: int) -> int:
        """返回隧道监听器的实际端口（可能在任意一端）"""
        owner = self.client if tunnel_id in self.client.listeners else self.server
        return owner.listeners[tunnel_id].sockets[0].getsockname()[1]

    async def close(self):
        await self.client.close()
        await self.server.close()
        await asyncio.gather(self.client_task, self.server_task, return_exceptions=True)


async def start_pair(specs: List[TunnelSpec], policy: Optional[ServerConfig] = None,
                     config: Optional[SessionConfig] = None) -> SessionPair:
    config = config or fast_session_config()
    left, right = await LoopbackConnection.pair()
    crypto = SessionCrypto.from_secret(TEST_SECRET)
    client = TunnelClient(left, crypto, config, specs, opens_control=True)
    server = TunnelSession(right, crypto, config, policy)
    return SessionPair(client, server)


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.01):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("等待条件超时")
        await asyncio.sleep(interval)


async def start_echo_server():
    """回显服务器: 原样返回收到的数据，对端半关闭后关闭连接"""
    async def handle(reader, writer):
        try:
            while True:
                data = await reader.read(65536)
                if not data:
                    break
                writer.write(data)
                await writer.drain()
        except ConnectionError:
            pass
        finally:
            writer.close()

    server = await asyncio.start_server(handle, '127.0.0.1', 0)
    return server, server.sockets[0].getsockname()[1]


async def read_until_eof(reader: asyncio.StreamReader, timeout: float = 5.0) -> bytes:
    return await asyncio.wait_for(reader.read(), timeout)


def unused_port() -> int:
    """返回一个当前没有监听的本地端口（连接会被拒绝）"""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(('127.0.0.1', 0))
        return sock.getsockname()[1]


async def exchange(port: int, payload: bytes, timeout: float = 10.0) -> bytes:
    """连接本地端口，发送数据并半关闭，同时读取全部响应"""
    reader, writer = await asyncio.open_connection('127.0.0.1', port)

    async def send():
        writer.write(payload)
        await writer.drain()
        writer.write_eof()

    sender = asyncio.ensure_future(send())
    try:
        return await read_until_eof(reader, timeout)
    finally:
        await sender
        writer.close()


@pytest.fixture
def session_config():
    return fast_session_config()


@pytest.fixture
def crypto():
    return SessionCrypto.from_secret(TEST_SECRET)
