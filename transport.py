"""
Portal 隧道 - 安全传输模块

功能概述:
本模块在 QUIC（aioquic）之上提供加密、多路复用的传输连接。上层只依赖
MultiplexedConnection / Stream 两个抽象，因此测试中可以替换为本地实现。

主要功能:
1. Stream: 一条双向字节流（reader / writer / 半关闭 / 关闭）
2. MultiplexedConnection: 打开、接受流，关闭连接
3. QUIC 实现:
   - dial(): 直连模式客户端
   - listen(): 直连模式服务器（可接受多个客户端）
   - connect_punched(): 复用打洞得到的 UDP 套接字
4. 流量控制: 发送方按未确认字节数等待（Stream.drain），接收窗口随应用
   读取推进（ReceiveWindow），目标停止读取时两端缓冲都有上限

证书固定:
服务器证书由会话密钥确定性派生（见 tunnel/crypto.py），客户端只信任
这一张证书，因此证书指纹完全由共享密钥决定。
"""

import asyncio
import logging
import socket
import ssl
from abc import ABC, abstractmethod
from functools import partial
from typing import Awaitable, Callable, Optional, Tuple

from aioquic.asyncio import QuicConnectionProtocol, serve
from aioquic.asyncio.server import QuicServer
from aioquic.quic.configuration import QuicConfiguration
from aioquic.quic.connection import MAX_STREAM_DATA_FRAME_CAPACITY, QuicConnection
from aioquic.quic.events import ConnectionTerminated, HandshakeCompleted
from aioquic.quic.packet import QuicFrameType

from errors import TransportError
from tunnel.crypto import CERTIFICATE_NAME, SessionCrypto

logger = logging.getLogger('portal-transport')

ALPN_PROTOCOL = 'portal'

# 单条 QUIC 流允许积压的未确认字节数
STREAM_BUFFER_LIMIT = 256 * 1024
# 单条 QUIC 流的接收窗口
STREAM_RECEIVE_WINDOW = 1024 * 1024


# ============================================================================
# 抽象接口
# ============================================================================

class Stream:
    """
    多路复用连接中的一条双向流

    Attributes:
        reader: 异步流读取器
        writer: 异步流写入器
    """

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                 closer: Optional[Callable[[], None]] = None,
                 drainer: Optional[Callable[[], Awaitable[None]]] = None):
        self.reader = reader
        self.writer = writer
        self._closer = closer
        self._drainer = drainer
        self._eof_sent = False
        self._closed = False

    async def drain(self):
        """
        等待发送缓冲回落到上限以下

        QUIC 流的 writer.drain() 不会阻塞，由 drainer 按待确认字节数等待；
        其它流直接使用 writer.drain()。

        Raises:
            ConnectionError: 连接已终止
        """
        if self._drainer is not None:
            await self._drainer()
        else:
            await self.writer.drain()

    def write_eof(self):
        """结束写入方向（可重复调用）"""
        if self._eof_sent:
            return
        self._eof_sent = True
        try:
            self.writer.write_eof()
        except Exception as e:
            # 对端已重置流或连接已关闭
            logger.debug(f"发送流结束标记失败: {e!r}")

    def close(self):
        """关闭流（可重复调用）"""
        if self._closed:
            return
        self._closed = True
        self.write_eof()
        if self._closer is not None:
            self._closer()


class MultiplexedConnection(ABC):
    """加密多路复用连接的抽象接口"""

    @property
    @abstractmethod
    def remote_address(self) -> Optional[Tuple]:
        """对端地址"""

    @abstractmethod
    async def open_stream(self) -> Stream:
        """
        打开一条新的双向流

        Raises:
            TransportError: 连接已关闭
        """

    @abstractmethod
    async def accept_stream(self) -> Optional[Stream]:
        """等待对端打开的下一条流，连接关闭时返回 None"""

    @abstractmethod
    def close(self):
        """关闭连接"""

    @abstractmethod
    async def wait_closed(self):
        """等待连接完全关闭"""


# ============================================================================
# QUIC 实现
# ============================================================================

class _ReaderFlow:
    """StreamReader 缓冲超过上限时调用 pause_reading，读走后调用 resume_reading"""

    def __init__(self, window: 'ReceiveWindow', stream_id: int):
        self.window = window
        self.stream_id = stream_id

    def pause_reading(self):
        self.window.paused.add(self.stream_id)

    def resume_reading(self):
        self.window.paused.discard(self.stream_id)
        self.window.protocol.transmit()


class ReceiveWindow:
    """
    按应用层读取进度推进的流接收窗口

    aioquic 在收到数据时自动放大接收窗口，与应用是否读取无关。这里把窗口
    上限设为“已交付偏移 + size”，并在 StreamReader 暂停（未读数据超过
    其 limit 的两倍）时冻结窗口，使对端因流量控制停止发送。

    安装方式: 替换 QuicConnection 实例的 _write_stream_limits。
    """

    def __init__(self, protocol: 'QuicTunnelProtocol', size: int = STREAM_RECEIVE_WINDOW):
        self.protocol = protocol
        self.size = size
        self.paused = set()
        protocol._quic._write_stream_limits = self.write_limits

    def attach(self, reader: asyncio.StreamReader, stream_id: int):
        reader.set_transport(_ReaderFlow(self, stream_id))

    def write_limits(self, builder, space, stream):
        """在正在构建的数据包中写入 MAX_STREAM_DATA（需要时）"""
        if not stream.max_stream_data_local:
            return
        if stream.stream_id not in self.paused and not stream.receiver.is_finished:
            limit = stream.receiver.starting_offset() + self.size
            # 至少推进半个窗口才发送更新
            if limit - stream.max_stream_data_local >= self.size // 2:
                stream.max_stream_data_local = limit
        if stream.max_stream_data_local_sent != stream.max_stream_data_local:
            quic = self.protocol._quic
            buf = builder.start_frame(
                QuicFrameType.MAX_STREAM_DATA,
                capacity=MAX_STREAM_DATA_FRAME_CAPACITY,
                handler=quic._on_max_stream_data_delivery,
                handler_args=(stream,),
            )
            buf.push_uint_var(stream.stream_id)
            buf.push_uint_var(stream.max_stream_data_local)
            stream.max_stream_data_local_sent = stream.max_stream_data_local


class QuicTunnelProtocol(QuicConnectionProtocol):
    """
    QUIC 连接协议

    把对端打开的流放入队列，握手完成时调用 on_handshake，
    连接终止时向队列放入 None。
    """

    def __init__(self, quic: QuicConnection, stream_handler=None,
                 on_handshake: Optional[Callable[['QuicTunnelProtocol'], None]] = None,
                 stream_buffer_limit: int = STREAM_BUFFER_LIMIT):
        self._drain_waiters = []
        super().__init__(quic, stream_handler=self._on_stream)
        self.remote_address = None
        self.terminated = False
        self.stream_buffer_limit = stream_buffer_limit
        self.receive_window = ReceiveWindow(self)
        self._incoming: asyncio.Queue = asyncio.Queue()
        self._on_handshake = on_handshake

    def wrap_stream(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> Stream:
        """为 aioquic 的 reader/writer 接上发送背压和接收窗口"""
        stream_id = writer.get_extra_info('stream_id')
        self.receive_window.attach(reader, stream_id)
        return Stream(reader, writer, drainer=partial(self.drain_stream, stream_id))

    def _on_stream(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self._incoming.put_nowait(self.wrap_stream(reader, writer))

    def buffered_amount(self, stream_id: int) -> int:
        """流中已写入但尚未被对端确认的字节数"""
        stream = self._quic._streams.get(stream_id)
        if stream is None:
            return 0
        sender = stream.sender
        return sender._buffer_stop - sender._buffer_start

    async def drain_stream(self, stream_id: int):
        """
        等待流的未确认字节数不超过 stream_buffer_limit

        每次发送数据报之后（确认已处理、拥塞窗口可能已变化）重新检查。

        Raises:
            ConnectionResetError: 连接已终止
        """
        while not self.terminated and self.buffered_amount(stream_id) > self.stream_buffer_limit:
            waiter = self._loop.create_future()
            self._drain_waiters.append(waiter)
            await waiter
        if self.terminated:
            raise ConnectionResetError("QUIC 连接已终止")

    def _wake_writers(self):
        waiters, self._drain_waiters = self._drain_waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)

    def transmit(self):
        super().transmit()
        self._wake_writers()

    def datagram_received(self, data, addr):
        if self.remote_address is None:
            self.remote_address = addr
        super().datagram_received(data, addr)

    def quic_event_received(self, event):
        if isinstance(event, HandshakeCompleted):
            logger.debug(f"QUIC 握手完成: peer={self.remote_address}, alpn={event.alpn_protocol}")
            if self._on_handshake is not None:
                self._on_handshake(self)
        elif isinstance(event, ConnectionTerminated):
            logger.info(f"QUIC 连接已终止: peer={self.remote_address}, "
                        f"error_code={event.error_code}, reason={event.reason_phrase!r}")
            self.terminated = True
            self._incoming.put_nowait(None)
            self._wake_writers()
        # 基类负责把流数据交给各条流的 reader
        super().quic_event_received(event)

    async def next_stream(self) -> Optional[Stream]:
        stream = await self._incoming.get()
        if stream is None:
            # 让后续调用者同样得到 None
            self._incoming.put_nowait(None)
        return stream


class QuicMultiplexedConnection(MultiplexedConnection):
    """基于 aioquic 的多路复用连接"""

    def __init__(self, protocol: QuicTunnelProtocol, on_close: Optional[Callable[[], None]] = None):
        self.protocol = protocol
        self._on_close = on_close

    @property
    def remote_address(self):
        return self.protocol.remote_address

    async def open_stream(self) -> Stream:
        if self.protocol.terminated:
            raise TransportError("QUIC 连接已终止")
        reader, writer = await self.protocol.create_stream()
        return self.protocol.wrap_stream(reader, writer)

    async def accept_stream(self) -> Optional[Stream]:
        return await self.protocol.next_stream()

    def close(self):
        if not self.protocol.terminated:
            self.protocol.close()
        if self._on_close is not None:
            self._on_close()
            self._on_close = None

    async def wait_closed(self):
        await self.protocol.wait_closed()


def make_configuration(crypto: SessionCrypto, is_client: bool,
                       idle_timeout: float = 60.0) -> QuicConfiguration:
    """
    创建 QUIC 配置

    服务器使用派生的证书和私钥；客户端只信任该证书。

    Args:
        crypto: 会话加密对象
        is_client: 是否为 QUIC 客户端
        idle_timeout: 空闲超时（秒）
    """
    configuration = QuicConfiguration(
        is_client=is_client,
        alpn_protocols=[ALPN_PROTOCOL],
        idle_timeout=idle_timeout,
    )
    if is_client:
        configuration.server_name = CERTIFICATE_NAME
        configuration.verify_mode = ssl.CERT_REQUIRED
        configuration.load_verify_locations(cadata=crypto.certificate_pem())
    else:
        configuration.certificate = crypto.derive_certificate()
        configuration.private_key = crypto.derive_private_key()
    return configuration


async def dial(host: str, port: int, crypto: SessionCrypto, handshake_timeout: float = 15.0,
               idle_timeout: float = 60.0) -> QuicMultiplexedConnection:
    """
    直连模式: 连接服务器

    Args:
        host: 服务器地址
        port: 服务器端口
        crypto: 会话加密对象（由预共享密钥派生）
        handshake_timeout: 握手超时（秒）
        idle_timeout: 空闲超时（秒）

    Raises:
        TransportError: 地址解析失败、握手失败或超时
    """
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(host, port, type=socket.SOCK_DGRAM)
    except socket.gaierror as e:
        raise TransportError(f"无法解析服务器地址 {host}: {e}") from e

    family, _, _, _, addr = infos[0]
    local_addr = ('::', 0) if family == socket.AF_INET6 else ('0.0.0.0', 0)
    quic = QuicConnection(configuration=make_configuration(crypto, True, idle_timeout))
    transport, protocol = await loop.create_datagram_endpoint(
        lambda: QuicTunnelProtocol(quic), local_addr=local_addr)

    protocol.remote_address = addr
    logger.info(f"正在连接服务器: {host}:{port} ({addr[0]})")
    protocol.connect(addr)
    try:
        await asyncio.wait_for(protocol.wait_connected(), timeout=handshake_timeout)
    except asyncio.TimeoutError:
        transport.close()
        raise TransportError(f"QUIC 握手超时: {host}:{port}") from None
    except ConnectionError as e:
        transport.close()
        raise TransportError(f"QUIC 握手失败: {e}") from e

    return QuicMultiplexedConnection(protocol, on_close=transport.close)


async def listen(host: str, port: int, crypto: SessionCrypto,
                 on_connection: Callable[[QuicMultiplexedConnection], None],
                 idle_timeout: float = 60.0) -> QuicServer:
    """
    直连模式: 监听并接受多个客户端

    每个客户端握手完成后调用 on_connection。

    Returns:
        QuicServer: 调用 close() 停止监听
    """
    def on_handshake(protocol: QuicTunnelProtocol):
        on_connection(QuicMultiplexedConnection(protocol))

    server = await serve(
        host, port,
        configuration=make_configuration(crypto, False, idle_timeout),
        create_protocol=partial(QuicTunnelProtocol, on_handshake=on_handshake),
    )
    logger.info(f"QUIC 服务器监听于 {host}:{port}")
    return server


async def connect_punched(result, crypto: SessionCrypto, handshake_timeout: float = 15.0,
                          idle_timeout: float = 60.0) -> QuicMultiplexedConnection:
    """
    打洞模式: 在打洞成功的 UDP 套接字上建立 QUIC 连接

    主导方作为 QUIC 客户端连接对端，跟随方在同一套接字上运行 QUIC 服务器，
    只接受来自已确认对端地址的数据报。

    Args:
        result: punch.PunchResult
        crypto: 会话加密对象（由打洞会话密钥派生）

    Raises:
        TransportError: 握手失败或超时
    """
    loop = asyncio.get_running_loop()

    if result.is_leader:
        quic = QuicConnection(configuration=make_configuration(crypto, True, idle_timeout))
        protocol = QuicTunnelProtocol(quic)
        result.protocol.attach(protocol)
        protocol.remote_address = result.peer
        protocol.connect(result.peer)
        waiter = protocol.wait_connected()
    else:
        connected = loop.create_future()

        def on_handshake(p: QuicTunnelProtocol):
            if not connected.done():
                connected.set_result(p)

        server = QuicServer(
            configuration=make_configuration(crypto, False, idle_timeout),
            create_protocol=partial(QuicTunnelProtocol, on_handshake=on_handshake),
        )
        result.protocol.attach(server)
        waiter = connected

    try:
        established = await asyncio.wait_for(waiter, timeout=handshake_timeout)
    except asyncio.TimeoutError:
        result.transport.close()
        raise TransportError(f"QUIC 握手超时: peer={result.peer}") from None
    except ConnectionError as e:
        result.transport.close()
        raise TransportError(f"QUIC 握手失败: {e}") from e

    if not result.is_leader:
        protocol = established
    logger.info(f"打洞连接已建立: peer={result.peer}, leader={result.is_leader}")
    return QuicMultiplexedConnection(protocol, on_close=result.transport.close)
