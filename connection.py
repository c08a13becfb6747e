"""
  连接管理模块 - 转发连接和字节转发

  本模块定义了转发连接数据类、目标连接建立以及双向数据转发。
  每个转发连接由一条本地 TCP 连接和一条多路复用数据流组成。

  主要功能:
  - 转发连接数据类与状态
  - TCP 目标连接（带超时和错误分类）
  - 有界直通转发（单次读取大小固定，无中间队列）
  - 双向转发与宽限期关闭
  - 连接资源清理

  版本: 1.0.0
"""

import asyncio
import errno
import logging
import socket
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, Tuple

from errors import ForwardError
from protocol import OpenError

logger = logging.getLogger('portal-connection')


class ConnState(Enum):
    CONNECTING = 'connecting'
    OPEN = 'open'
    HALF_CLOSED = 'half_closed'
    CLOSED = 'closed'


class Direction(Enum):
    """
    转发方向

    - OUTBOUND: 本端接受了本地连接，对端连接目标
    - INBOUND: 对端接受了连接，本端连接目标
    """
    OUTBOUND = 'outbound'
    INBOUND = 'inbound'


# ============================================================================
# 转发连接
# ============================================================================

@dataclass
class ForwardedConnection:
    """
    转发连接数据类 - 表示一条经由隧道转发的 TCP 连接

    Attributes:
        connection_id: 连接 ID（会话内唯一，由发起方分配）
        tunnel_id: 所属隧道 ID
        host: 目标主机
        port: 目标端口
        direction: 转发方向
        reader: 本地 TCP 连接的读取流
        writer: 本地 TCP 连接的写入流
        stream: 承载该连接的多路复用数据流
        state: 连接状态
        task: 转发任务

    Lifecycle:
        1. CONNECTING: 等待 TUNNEL_DATA_OPEN_ACK 或数据流
        2. OPEN: 双向转发
        3. HALF_CLOSED: 一个方向已结束，另一方向在宽限期内
        4. CLOSED: 两端均已关闭
    """
    connection_id: int
    tunnel_id: int
    host: str
    port: int
    direction: Direction
    reader: Optional[asyncio.StreamReader] = None
    writer: Optional[asyncio.StreamWriter] = None
    stream: Optional[object] = None
    state: ConnState = ConnState.CONNECTING
    task: Optional[asyncio.Task] = None

    @classmethod
    def create_outbound(cls, connection_id: int, tunnel_id: int, reader: asyncio.StreamReader,
                        writer: asyncio.StreamWriter, host: str, port: int) -> 'ForwardedConnection':
        """
        创建出站连接（本地监听器接受的连接）

        Args:
            connection_id: 连接 ID
            tunnel_id: 隧道 ID
            reader: 本地客户端读取流
            writer: 本地客户端写入流
            host: 目标主机
            port: 目标端口
        """
        logger.debug(f"创建出站连接: connection_id={connection_id}, tunnel_id={tunnel_id}, "
                     f"target={host}:{port}")
        return cls(connection_id, tunnel_id, host, port, Direction.OUTBOUND, reader, writer)

    @classmethod
    def create_inbound(cls, connection_id: int, tunnel_id: int, reader: asyncio.StreamReader,
                       writer: asyncio.StreamWriter, host: str, port: int) -> 'ForwardedConnection':
        """创建入站连接（本端已连接到目标）"""
        logger.debug(f"创建入站连接: connection_id={connection_id}, tunnel_id={tunnel_id}, "
                     f"target={host}:{port}")
        return cls(connection_id, tunnel_id, host, port, Direction.INBOUND, reader, writer)

    def __str__(self):
        return f"#{self.connection_id}(tunnel={self.tunnel_id}, {self.host}:{self.port})"


# ============================================================================
# 目标连接
# ============================================================================

_ERRNO_CODES = {
    errno.ENETUNREACH: OpenError.NETWORK_UNREACHABLE,
    errno.ENOTCONN: OpenError.NETWORK_UNREACHABLE,
    errno.EHOSTUNREACH: OpenError.HOST_UNREACHABLE,
    errno.ETIMEDOUT: OpenError.TIMEOUT,
    errno.ECONNREFUSED: OpenError.REFUSED,
}


def classify_error(exc: BaseException) -> OpenError:
    """
    把连接目标时的异常归类为 OpenError

    Args:
        exc: 连接时抛出的异常

    Returns:
        OpenError: 对应的结果码
    """
    if isinstance(exc, ForwardError):
        return OpenError(exc.code)
    if isinstance(exc, asyncio.TimeoutError):
        return OpenError.TIMEOUT
    if isinstance(exc, socket.gaierror):
        return OpenError.DNS
    if isinstance(exc, (ConnectionRefusedError, ConnectionResetError, ConnectionAbortedError)):
        return OpenError.REFUSED
    if isinstance(exc, PermissionError):
        return OpenError.NOT_ALLOWED
    if isinstance(exc, OSError):
        return _ERRNO_CODES.get(exc.errno, OpenError.GENERAL)
    return OpenError.GENERAL


async def connect_to_target(host: str, port: int,
                            timeout: float = 10.0) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """
    建立到目标主机的 TCP 连接

    域名由 asyncio 解析，并依次尝试解析到的所有地址。

    Args:
        host: 目标主机名或 IP 地址
        port: 目标端口号
        timeout: 连接超时（秒）

    Returns:
        tuple: (reader, writer)

    Raises:
        ForwardError: 连接失败，code 为分类后的 OpenError
    """
    logger.debug(f"连接目标: {host}:{port}")
    try:
        reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
    except (OSError, asyncio.TimeoutError) as e:
        code = classify_error(e)
        logger.info(f"连接目标失败: {host}:{port}, error={code.name}({e})")
        raise ForwardError(code, f"连接 {host}:{port} 失败: {e}") from e

    logger.debug(f"已连接目标: {host}:{port}")
    return reader, writer


# ============================================================================
# 数据转发
# ============================================================================

def write_eof(writer: asyncio.StreamWriter):
    """半关闭 TCP 写入方向（不支持时忽略）"""
    if writer.can_write_eof() and not writer.is_closing():
        writer.write_eof()


async def pump(reader: asyncio.StreamReader, writer: asyncio.StreamWriter, buffer_size: int = 32 * 1024,
               on_eof: Optional[Callable[[], None]] = None,
               drain: Optional[Callable[[], Awaitable[None]]] = None) -> int:
    """
    单向转发数据，直到读取到 EOF

    每次最多读取 buffer_size 字节，写入后等待 drain，不使用中间队列，
    因此慢速接收方会让发送方停止读取。

    Args:
        reader: 数据来源
        writer: 数据去向
        buffer_size: 单次读取的最大字节数
        on_eof: 读取到 EOF 时调用（用于半关闭去向）
        drain: 代替 writer.drain() 的等待函数（数据流使用 Stream.drain）

    Returns:
        int: 转发的字节数
    """
    total = 0
    while True:
        data = await reader.read(buffer_size)
        if not data:
            break
        writer.write(data)
        if drain is None:
            await writer.drain()
        else:
            await drain()
        total += len(data)

    if on_eof is not None:
        on_eof()
    return total


async def forward(conn: ForwardedConnection, grace_period: float = 5.0,
                  buffer_size: int = 32 * 1024) -> Tuple[int, int]:
    """
    在本地连接和数据流之间双向转发

    两个方向各由一个任务负责。一个方向正常结束后，另一方向最多再运行
    grace_period 秒；一个方向出错时另一方向立即取消。无论如何结束
    （包括整个任务被取消），两端都会被关闭。

    Args:
        conn: 转发连接（reader/writer/stream 已就绪）
        grace_period: 宽限期（秒）
        buffer_size: 单次读取的最大字节数

    Returns:
        Tuple[int, int]: (本地 -> 数据流字节数, 数据流 -> 本地字节数)
    """
    stream = conn.stream
    conn.state = ConnState.OPEN
    upstream = asyncio.ensure_future(
        pump(conn.reader, stream.writer, buffer_size, stream.write_eof, stream.drain))
    downstream = asyncio.ensure_future(
        pump(stream.reader, conn.writer, buffer_size, lambda: write_eof(conn.writer)))
    tasks = (upstream, downstream)

    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        failed = [t for t in done if not t.cancelled() and t.exception() is not None]
        for task in failed:
            logger.debug(f"转发方向出错: {conn}, error={task.exception()!r}")

        if pending:
            conn.state = ConnState.HALF_CLOSED
            if not failed:
                logger.debug(f"连接半关闭: {conn}，等待另一方向（最多 {grace_period} 秒）")
                await asyncio.wait(pending, timeout=grace_period)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        await close_connection(conn)

    sent, received = (r if isinstance(r, int) else 0 for r in results)
    logger.debug(f"转发结束: {conn}, sent={sent}, received={received}")
    return sent, received


async def close_connection(conn: ForwardedConnection):
    """
    关闭转发连接的两端并清理资源

    Args:
        conn: 要关闭的转发连接
    """
    if conn.state == ConnState.CLOSED:
        return
    conn.state = ConnState.CLOSED

    if conn.stream is not None:
        conn.stream.close()

    if conn.writer is not None:
        conn.writer.close()
        try:
            await conn.writer.wait_closed()
        except OSError as e:
            logger.debug(f"关闭本地连接时出错: {conn}, error={e!r}")

    logger.debug(f"连接已关闭: {conn}")
