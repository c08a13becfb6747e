"""
Portal 隧道 - 协议定义
定义控制协议的常量、消息类型和消息格式。

版本: 1.0.0

功能概述:
本模块提供了隧道控制协议的定义，包括协议常量、消息类型枚举、
隧道描述和控制消息类。这些组件被客户端和服务器共享，确保两端
使用相同的协议格式。

主要功能:
1. 协议常量定义 - 版本号、帧大小上限
2. 流类型 - 每个多路复用流的第一个字节标识控制流或数据流
3. 控制消息 - 序列化、反序列化以及从流中读取

协议架构:
- 安全传输层提供多个独立的双向流
- 一条控制流承载所有控制消息，严格按照先进先出的顺序处理
- 每个转发连接使用一条独立的数据流，流头部携带连接 ID

流头部:
┌──────────┬───────────────────────────┐
│ 流类型   │ 连接 ID（仅数据流）       │
│ 1 字节   │ 4 字节                    │
└──────────┴───────────────────────────┘

控制帧格式:
┌────────────┬──────────────┬─────────────┐
│ 消息类型   │ 负载长度     │   负载      │
│  1 字节    │  4 字节      │  可变长度   │
└────────────┴──────────────┴─────────────┘

所有多字节字段使用大端序（网络字节序）。
"""

import asyncio
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional, Tuple

from errors import ProtocolError, ProtocolVersionError


# ============================================================================
# 协议常量
# ============================================================================

PROTOCOL_VERSION = 1
MAX_PAYLOAD_SIZE = 64 * 1024
MAC_SIZE = 32


class StreamKind(IntEnum):
    """多路复用流的类型"""
    CONTROL = 0x01
    DATA = 0x02


class MsgType(IntEnum):
    """
    控制消息类型枚举

    消息类型说明:
    - HELLO: 会话握手，携带协议版本和认证信息，每端发送的第一条消息
    - TUNNEL_REQUEST: 请求建立隧道
    - TUNNEL_ACCEPT: 隧道已建立
    - TUNNEL_REJECT: 隧道被拒绝（绑定失败或不支持）
    - TUNNEL_DATA_OPEN: 请求为某条隧道打开一个转发连接
    - TUNNEL_DATA_OPEN_ACK: 转发连接打开结果
    - TUNNEL_CLOSE: 转发连接已结束
    - KEEPALIVE: 保活心跳
    """
    HELLO = 0x01
    TUNNEL_REQUEST = 0x02
    TUNNEL_ACCEPT = 0x03
    TUNNEL_REJECT = 0x04
    TUNNEL_DATA_OPEN = 0x05
    TUNNEL_DATA_OPEN_ACK = 0x06
    TUNNEL_CLOSE = 0x07
    KEEPALIVE = 0x08


class TunnelKind(IntEnum):
    """
    隧道类型

    - LOCAL: 客户端监听，服务器连接固定目标（-L）
    - REMOTE: 服务器监听，客户端连接固定目标（-R）
    - DYNAMIC: 客户端监听 SOCKS，服务器连接 SOCKS 请求的目标（-D）
    - REMOTE_DYNAMIC: 服务器监听 SOCKS，客户端连接 SOCKS 请求的目标（-R 只写端口）
    """
    LOCAL = 1
    REMOTE = 2
    DYNAMIC = 3
    REMOTE_DYNAMIC = 4


class RejectReason(IntEnum):
    BIND_FAILED = 1
    UNSUPPORTED = 2


class OpenError(IntEnum):
    """
    打开转发连接的结果码

    OK 表示成功，其余为失败原因。
    """
    OK = 0
    GENERAL = 1
    NOT_ALLOWED = 2
    NETWORK_UNREACHABLE = 3
    HOST_UNREACHABLE = 4
    REFUSED = 5
    TIMEOUT = 6
    DNS = 7
    UNKNOWN_TUNNEL = 8


# ============================================================================
# 隧道描述
# ============================================================================

@dataclass(frozen=True)
class TunnelSpec:
    """
    隧道描述

    Attributes:
        tunnel_id: 隧道 ID（由请求方分配，会话内唯一）
        kind: 隧道类型
        bind_host: 监听地址（LOCAL/DYNAMIC 在客户端，REMOTE/REMOTE_DYNAMIC 在服务器）
        bind_port: 监听端口（0 表示随机端口）
        target_host: 固定目标主机（动态隧道为 None）
        target_port: 固定目标端口（动态隧道为 None）
    """
    tunnel_id: int
    kind: TunnelKind
    bind_host: str
    bind_port: int
    target_host: Optional[str] = None
    target_port: Optional[int] = None

    @property
    def is_remote(self) -> bool:
        """监听端是否在服务器一侧"""
        return self.kind in (TunnelKind.REMOTE, TunnelKind.REMOTE_DYNAMIC)

    @property
    def is_dynamic(self) -> bool:
        return self.kind in (TunnelKind.DYNAMIC, TunnelKind.REMOTE_DYNAMIC)

    def __str__(self):
        target = 'SOCKS' if self.is_dynamic else f"{self.target_host}:{self.target_port}"
        return f"#{self.tunnel_id} {self.kind.name} {self.bind_host}:{self.bind_port} -> {target}"


# ============================================================================
# 编码辅助函数
# ============================================================================

def _pack_str(value: str, fmt: str = '>B') -> bytes:
    data = value.encode('utf-8')
    return struct.pack(fmt, len(data)) + data


def _unpack_str(payload: bytes, offset: int, fmt: str = '>B') -> Tuple[str, int]:
    size = struct.calcsize(fmt)
    if offset + size > len(payload):
        raise ProtocolError("字符串长度字段被截断")
    length, = struct.unpack(fmt, payload[offset:offset + size])
    offset += size
    if offset + length > len(payload):
        raise ProtocolError("字符串被截断")
    try:
        return payload[offset:offset + length].decode('utf-8'), offset + length
    except UnicodeDecodeError as e:
        raise ProtocolError(f"字符串不是有效的 UTF-8: {e}") from e


def _unpack(fmt: str, payload: bytes, offset: int = 0) -> Tuple[tuple, int]:
    size = struct.calcsize(fmt)
    if offset + size > len(payload):
        raise ProtocolError(f"负载被截断: 需要 {offset + size} 字节，实际 {len(payload)} 字节")
    return struct.unpack(fmt, payload[offset:offset + size]), offset + size


def stream_header(kind: StreamKind, connection_id: int = 0) -> bytes:
    """生成流头部"""
    if kind == StreamKind.DATA:
        return struct.pack('>BI', kind, connection_id)
    return struct.pack('>B', kind)


async def read_stream_header(reader: asyncio.StreamReader) -> Tuple[StreamKind, int]:
    """
    读取流头部

    Returns:
        Tuple[StreamKind, int]: (流类型, 连接 ID)，控制流的连接 ID 为 0

    Raises:
        ProtocolError: 流类型未知或头部被截断
    """
    try:
        kind_byte = (await reader.readexactly(1))[0]
        kind = StreamKind(kind_byte)
        if kind == StreamKind.DATA:
            connection_id, = struct.unpack('>I', await reader.readexactly(4))
            return kind, connection_id
        return kind, 0
    except asyncio.IncompleteReadError as e:
        raise ProtocolError("流头部被截断") from e
    except ValueError as e:
        raise ProtocolError(f"未知的流类型: {e}") from e


# ============================================================================
# 控制消息
# ============================================================================

@dataclass
class ControlMessage:
    """
    控制协议消息类

    线路格式:
    ┌────────────┬──────────────┬─────────────┐
    │ 消息类型   │ 负载长度     │   负载      │
    │  1 字节    │  4 字节      │  可变长度   │
    └────────────┴──────────────┴─────────────┘

    Attributes:
        msg_type: 消息类型（MsgType 枚举）
        payload: 消息载荷
        HEADER_SIZE: 消息头部大小（5 字节）
    """
    msg_type: MsgType
    payload: bytes = b''

    HEADER_SIZE = 5

    def serialize(self) -> bytes:
        """
        将消息序列化为字节

        Raises:
            ProtocolError: 负载超过 MAX_PAYLOAD_SIZE
        """
        if len(self.payload) > MAX_PAYLOAD_SIZE:
            raise ProtocolError(f"负载过大: {len(self.payload)} 字节")
        return struct.pack('>BI', self.msg_type, len(self.payload)) + self.payload

    @classmethod
    def deserialize(cls, data: bytes) -> Tuple['ControlMessage', bytes]:
        """
        从字节反序列化消息

        Args:
            data: 包含消息的字节数组

        Returns:
            Tuple[ControlMessage, bytes]: (解析出的消息, 剩余的字节数据)

        Raises:
            ProtocolError: 数据不足、负载过大或消息类型未知
        """
        if len(data) < cls.HEADER_SIZE:
            raise ProtocolError("数据不足以解析头部")

        msg_type, payload_len = struct.unpack('>BI', data[:cls.HEADER_SIZE])
        if payload_len > MAX_PAYLOAD_SIZE:
            raise ProtocolError(f"负载过大: {payload_len} 字节")

        total_len = cls.HEADER_SIZE + payload_len
        if len(data) < total_len:
            raise ProtocolError("数据不足以解析负载")

        try:
            msg_type = MsgType(msg_type)
        except ValueError:
            raise ProtocolError(f"未知的消息类型: {msg_type}") from None

        return cls(msg_type, data[cls.HEADER_SIZE:total_len]), data[total_len:]

    # ------------------------------------------------------------------
    # 构造函数
    # ------------------------------------------------------------------

    @classmethod
    def hello(cls, timestamp: int, mac: bytes, version: int = PROTOCOL_VERSION) -> 'ControlMessage':
        """
        创建 HELLO 消息

        载荷格式:
        ┌────────┬──────────────┬──────────────┐
        │ 版本   │ 时间戳       │ HMAC         │
        │ 1 字节 │ 8 字节       │ 32 字节      │
        └────────┴──────────────┴──────────────┘
        """
        return cls(MsgType.HELLO, struct.pack('>BQ', version, timestamp) + mac)

    @classmethod
    def tunnel_request(cls, spec: TunnelSpec) -> 'ControlMessage':
        """
        创建 TUNNEL_REQUEST 消息

        载荷格式:
        ┌──────────┬────────┬──────────┬──────────┬──────────┬──────────┬──────────┐
        │ 隧道 ID  │ 类型   │ 监听地址 │ 监听端口 │ 有目标   │ 目标主机 │ 目标端口 │
        │ 4 字节   │ 1 字节 │ 变长     │ 2 字节   │ 1 字节   │ 变长     │ 2 字节   │
        └──────────┴────────┴──────────┴──────────┴──────────┴──────────┴──────────┘
        """
        payload = struct.pack('>IB', spec.tunnel_id, spec.kind)
        payload += _pack_str(spec.bind_host) + struct.pack('>H', spec.bind_port)
        if spec.target_host is None:
            payload += struct.pack('>B', 0)
        else:
            payload += struct.pack('>B', 1) + _pack_str(spec.target_host)
            payload += struct.pack('>H', spec.target_port)
        return cls(MsgType.TUNNEL_REQUEST, payload)

    @classmethod
    def tunnel_accept(cls, tunnel_id: int, bound_port: int = 0) -> 'ControlMessage':
        """创建 TUNNEL_ACCEPT 消息，bound_port 为远程隧道实际绑定的端口"""
        return cls(MsgType.TUNNEL_ACCEPT, struct.pack('>IH', tunnel_id, bound_port))

    @classmethod
    def tunnel_reject(cls, tunnel_id: int, reason: RejectReason, message: str = '') -> 'ControlMessage':
        """创建 TUNNEL_REJECT 消息"""
        payload = struct.pack('>IB', tunnel_id, reason) + _pack_str(message, '>H')
        return cls(MsgType.TUNNEL_REJECT, payload)

    @classmethod
    def data_open(cls, tunnel_id: int, connection_id: int, host: str, port: int) -> 'ControlMessage':
        """
        创建 TUNNEL_DATA_OPEN 消息

        载荷格式:
        ┌──────────┬──────────┬──────────┬──────────────┬──────────┐
        │ 隧道 ID  │ 连接 ID  │ 主机长度 │ 主机名       │ 端口号   │
        │ 4 字节   │ 4 字节   │ 1 字节   │ 可变长度     │ 2 字节   │
        └──────────┴──────────┴──────────┴──────────────┴──────────┘
        """
        payload = struct.pack('>II', tunnel_id, connection_id) + _pack_str(host)
        payload += struct.pack('>H', port)
        return cls(MsgType.TUNNEL_DATA_OPEN, payload)

    @classmethod
    def data_open_ack(cls, connection_id: int, error: OpenError = OpenError.OK,
                      message: str = '') -> 'ControlMessage':
        """创建 TUNNEL_DATA_OPEN_ACK 消息，error 为 OK 表示成功"""
        payload = struct.pack('>IB', connection_id, error) + _pack_str(message, '>H')
        return cls(MsgType.TUNNEL_DATA_OPEN_ACK, payload)

    @classmethod
    def tunnel_close(cls, connection_id: int) -> 'ControlMessage':
        """创建 TUNNEL_CLOSE 消息"""
        return cls(MsgType.TUNNEL_CLOSE, struct.pack('>I', connection_id))

    @classmethod
    def keepalive(cls) -> 'ControlMessage':
        """创建 KEEPALIVE 消息"""
        return cls(MsgType.KEEPALIVE)

    # ------------------------------------------------------------------
    # 解析函数
    # ------------------------------------------------------------------

    def _expect(self, msg_type: MsgType):
        if self.msg_type != msg_type:
            raise ProtocolError(f"不是 {msg_type.name} 消息: {self.msg_type.name}")

    def parse_hello(self) -> Tuple[int, bytes]:
        """
        解析 HELLO 消息

        先检查版本，再检查其余字段。

        Returns:
            Tuple[int, bytes]: (时间戳, HMAC)

        Raises:
            ProtocolVersionError: 版本不匹配
            ProtocolError: 格式错误
        """
        self._expect(MsgType.HELLO)
        (version,), offset = _unpack('>B', self.payload)
        if version != PROTOCOL_VERSION:
            raise ProtocolVersionError(PROTOCOL_VERSION, version)
        (timestamp,), offset = _unpack('>Q', self.payload, offset)
        mac = self.payload[offset:]
        if len(mac) != MAC_SIZE:
            raise ProtocolError(f"HELLO 认证字段长度错误: {len(mac)}")
        return timestamp, mac

    def parse_tunnel_request(self) -> TunnelSpec:
        self._expect(MsgType.TUNNEL_REQUEST)
        (tunnel_id, kind), offset = _unpack('>IB', self.payload)
        try:
            kind = TunnelKind(kind)
        except ValueError:
            raise ProtocolError(f"未知的隧道类型: {kind}") from None
        bind_host, offset = _unpack_str(self.payload, offset)
        (bind_port, has_target), offset = _unpack('>HB', self.payload, offset)
        target_host = target_port = None
        if has_target:
            target_host, offset = _unpack_str(self.payload, offset)
            (target_port,), offset = _unpack('>H', self.payload, offset)
        return TunnelSpec(tunnel_id, kind, bind_host, bind_port, target_host, target_port)

    def parse_tunnel_accept(self) -> Tuple[int, int]:
        """返回 (隧道 ID, 实际绑定端口)"""
        self._expect(MsgType.TUNNEL_ACCEPT)
        (tunnel_id, bound_port), _ = _unpack('>IH', self.payload)
        return tunnel_id, bound_port

    def parse_tunnel_reject(self) -> Tuple[int, RejectReason, str]:
        self._expect(MsgType.TUNNEL_REJECT)
        (tunnel_id, reason), offset = _unpack('>IB', self.payload)
        try:
            reason = RejectReason(reason)
        except ValueError:
            raise ProtocolError(f"未知的拒绝原因: {reason}") from None
        message, _ = _unpack_str(self.payload, offset, '>H')
        return tunnel_id, reason, message

    def parse_data_open(self) -> Tuple[int, int, str, int]:
        """返回 (隧道 ID, 连接 ID, 主机, 端口)"""
        self._expect(MsgType.TUNNEL_DATA_OPEN)
        (tunnel_id, connection_id), offset = _unpack('>II', self.payload)
        host, offset = _unpack_str(self.payload, offset)
        (port,), _ = _unpack('>H', self.payload, offset)
        return tunnel_id, connection_id, host, port

    def parse_data_open_ack(self) -> Tuple[int, OpenError, str]:
        """返回 (连接 ID, 结果码, 错误描述)"""
        self._expect(MsgType.TUNNEL_DATA_OPEN_ACK)
        (connection_id, error), offset = _unpack('>IB', self.payload)
        try:
            error = OpenError(error)
        except ValueError:
            error = OpenError.GENERAL
        message, _ = _unpack_str(self.payload, offset, '>H')
        return connection_id, error, message

    def parse_tunnel_close(self) -> int:
        self._expect(MsgType.TUNNEL_CLOSE)
        (connection_id,), _ = _unpack('>I', self.payload)
        return connection_id


async def read_message(reader: asyncio.StreamReader) -> Optional[ControlMessage]:
    """
    从控制流读取一条消息

    Returns:
        Optional[ControlMessage]: 读取到的消息，流在消息边界处结束时返回 None

    Raises:
        ProtocolError: 帧被截断、负载过大或消息类型未知
    """
    try:
        header = await reader.readexactly(ControlMessage.HEADER_SIZE)
    except asyncio.IncompleteReadError as e:
        if not e.partial:
            return None
        raise ProtocolError("控制帧头部被截断") from e

    _, payload_len = struct.unpack('>BI', header)
    if payload_len > MAX_PAYLOAD_SIZE:
        raise ProtocolError(f"负载过大: {payload_len} 字节")

    try:
        payload = await reader.readexactly(payload_len)
    except asyncio.IncompleteReadError as e:
        raise ProtocolError("控制帧负载被截断") from e

    message, _ = ControlMessage.deserialize(header + payload)
    return message
