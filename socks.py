"""
SOCKS 协议处理模块

本模块实现动态隧道使用的 SOCKS 服务端握手，支持 SOCKS4、SOCKS4a 和
SOCKS5（仅 CONNECT 命令，SOCKS5 仅支持无认证）。协议版本根据客户端
发送的第一个字节自动识别。

握手错误只回复给本地 SOCKS 客户端，不会影响隧道。
"""

import asyncio
import ipaddress
import logging
import struct
from dataclasses import dataclass

from errors import SocksError
from protocol import OpenError

logger = logging.getLogger('portal-socks')

MAX_FIELD_LENGTH = 255


class SOCKS4:
    """SOCKS4 / SOCKS4a 协议常量"""
    VERSION = 0x04
    CMD_CONNECT = 0x01
    REPLY_VERSION = 0x00
    REP_GRANTED = 90
    REP_REJECTED = 91


class SOCKS5:
    """
    SOCKS5 协议常量定义

    本实现支持 CONNECT 命令，用于建立 TCP 隧道。
    """
    VERSION = 0x05
    AUTH_NONE = 0x00
    AUTH_NO_ACCEPTABLE = 0xFF
    CMD_CONNECT = 0x01
    ATYP_IPV4 = 0x01
    ATYP_DOMAIN = 0x03
    ATYP_IPV6 = 0x04
    REP_SUCCESS = 0x00
    REP_FAILURE = 0x01
    REP_NOT_ALLOWED = 0x02
    REP_NETWORK_UNREACHABLE = 0x03
    REP_HOST_UNREACHABLE = 0x04
    REP_CONNECTION_REFUSED = 0x05
    REP_COMMAND_NOT_SUPPORTED = 0x07
    REP_ADDRESS_TYPE_NOT_SUPPORTED = 0x08


_SOCKS5_REPLIES = {
    OpenError.OK: SOCKS5.REP_SUCCESS,
    OpenError.NOT_ALLOWED: SOCKS5.REP_NOT_ALLOWED,
    OpenError.NETWORK_UNREACHABLE: SOCKS5.REP_NETWORK_UNREACHABLE,
    OpenError.HOST_UNREACHABLE: SOCKS5.REP_HOST_UNREACHABLE,
    OpenError.DNS: SOCKS5.REP_HOST_UNREACHABLE,
    OpenError.TIMEOUT: SOCKS5.REP_HOST_UNREACHABLE,
    OpenError.REFUSED: SOCKS5.REP_CONNECTION_REFUSED,
}


def socks5_reply_code(error: OpenError) -> int:
    """把打开连接的结果码转换为 SOCKS5 响应码"""
    return _SOCKS5_REPLIES.get(error, SOCKS5.REP_FAILURE)


@dataclass
class SocksRequest:
    """
    SOCKS CONNECT 请求

    Attributes:
        version: 4 或 5（SOCKS4a 也记为 4）
        host: 目标主机（IP 地址或域名）
        port: 目标端口
    """
    version: int
    host: str
    port: int


async def _read_null_terminated(reader: asyncio.StreamReader) -> bytes:
    data = b''
    while True:
        byte = await reader.readexactly(1)
        if byte == b'\x00':
            return data
        data += byte
        if len(data) > MAX_FIELD_LENGTH:
            raise SocksError("SOCKS4 字段过长", version=SOCKS4.VERSION)


async def _read_socks4(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> SocksRequest:
    """
    解析 SOCKS4 / SOCKS4a 请求（版本字节已读取）

    请求格式:
    ┌────────┬──────────┬──────────┬─────────────────┬──────────────────────┐
    │ 命令   │ 端口     │ IPv4     │ 用户 ID + \\0    │ 域名 + \\0（仅 4a）   │
    │ 1 字节 │ 2 字节   │ 4 字节   │ 可变长度        │ 可变长度             │
    └────────┴──────────┴──────────┴─────────────────┴──────────────────────┘

    SOCKS4a: IP 为 0.0.0.x（x 不为 0）时，目标为用户 ID 之后的域名。
    """
    cmd, port = struct.unpack('>BH', await reader.readexactly(3))
    address = await reader.readexactly(4)
    await _read_null_terminated(reader)

    if address[:3] == b'\x00\x00\x00' and address[3] != 0:
        host = (await _read_null_terminated(reader)).decode('utf-8', errors='replace')
    else:
        host = str(ipaddress.IPv4Address(address))

    if cmd != SOCKS4.CMD_CONNECT:
        await send_socks4_reply(writer, False)
        raise SocksError(f"不支持的 SOCKS4 命令: {cmd}", SOCKS4.VERSION, SOCKS4.REP_REJECTED)
    if not host:
        await send_socks4_reply(writer, False)
        raise SocksError("SOCKS4a 域名为空", SOCKS4.VERSION, SOCKS4.REP_REJECTED)

    return SocksRequest(SOCKS4.VERSION, host, port)


async def _read_socks5(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> SocksRequest:
    """
    解析 SOCKS5 请求（版本字节已读取）

    1. 认证协商: 只接受无认证（0x00），否则回复 0xFF
    2. 请求: VER CMD RSV ATYP DST.ADDR DST.PORT
    """
    nmethods = (await reader.readexactly(1))[0]
    methods = await reader.readexactly(nmethods)
    if SOCKS5.AUTH_NONE not in methods:
        writer.write(bytes([SOCKS5.VERSION, SOCKS5.AUTH_NO_ACCEPTABLE]))
        await writer.drain()
        raise SocksError("SOCKS5 客户端不支持无认证方式", SOCKS5.VERSION, SOCKS5.AUTH_NO_ACCEPTABLE)

    writer.write(bytes([SOCKS5.VERSION, SOCKS5.AUTH_NONE]))
    await writer.drain()

    version, cmd, _, atyp = await reader.readexactly(4)
    if version != SOCKS5.VERSION:
        await send_socks5_reply(writer, SOCKS5.REP_FAILURE)
        raise SocksError(f"SOCKS5 请求版本错误: {version}", SOCKS5.VERSION, SOCKS5.REP_FAILURE)

    if atyp == SOCKS5.ATYP_IPV4:
        host = str(ipaddress.IPv4Address(await reader.readexactly(4)))
    elif atyp == SOCKS5.ATYP_IPV6:
        host = str(ipaddress.IPv6Address(await reader.readexactly(16)))
    elif atyp == SOCKS5.ATYP_DOMAIN:
        length = (await reader.readexactly(1))[0]
        host = (await reader.readexactly(length)).decode('utf-8', errors='replace')
    else:
        await send_socks5_reply(writer, SOCKS5.REP_ADDRESS_TYPE_NOT_SUPPORTED)
        raise SocksError(f"不支持的地址类型: {atyp}", SOCKS5.VERSION,
                         SOCKS5.REP_ADDRESS_TYPE_NOT_SUPPORTED)

    port, = struct.unpack('>H', await reader.readexactly(2))

    if cmd != SOCKS5.CMD_CONNECT:
        await send_socks5_reply(writer, SOCKS5.REP_COMMAND_NOT_SUPPORTED)
        raise SocksError(f"不支持的 SOCKS5 命令: {cmd}", SOCKS5.VERSION,
                         SOCKS5.REP_COMMAND_NOT_SUPPORTED)
    if not host:
        await send_socks5_reply(writer, SOCKS5.REP_FAILURE)
        raise SocksError("SOCKS5 域名为空", SOCKS5.VERSION, SOCKS5.REP_FAILURE)

    return SocksRequest(SOCKS5.VERSION, host, port)


async def read_request(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> SocksRequest:
    """
    执行 SOCKS 握手并读取 CONNECT 请求

    根据第一个字节识别 SOCKS4 / SOCKS5。对于不支持的请求，已向客户端
    回复相应的错误码后再抛出异常。

    Args:
        reader: SOCKS 客户端读取流
        writer: SOCKS 客户端写入流

    Returns:
        SocksRequest: 目标地址

    Raises:
        SocksError: 握手失败（包括客户端提前断开）
    """
    try:
        version = (await reader.readexactly(1))[0]
        if version == SOCKS5.VERSION:
            return await _read_socks5(reader, writer)
        if version == SOCKS4.VERSION:
            return await _read_socks4(reader, writer)
    except asyncio.IncompleteReadError as e:
        raise SocksError("SOCKS 客户端在握手期间断开") from e

    raise SocksError(f"未知的 SOCKS 版本: {version}")


async def send_socks4_reply(writer: asyncio.StreamWriter, granted: bool):
    rep = SOCKS4.REP_GRANTED if granted else SOCKS4.REP_REJECTED
    writer.write(bytes([SOCKS4.REPLY_VERSION, rep, 0, 0, 0, 0, 0, 0]))
    await writer.drain()


async def send_socks5_reply(writer: asyncio.StreamWriter, rep: int):
    """发送 SOCKS5 响应，绑定地址固定为 0.0.0.0:0"""
    writer.write(bytes([SOCKS5.VERSION, rep, 0, SOCKS5.ATYP_IPV4, 0, 0, 0, 0, 0, 0]))
    await writer.drain()


async def send_reply(writer: asyncio.StreamWriter, request: SocksRequest, error: OpenError):
    """
    根据打开连接的结果回复 SOCKS 客户端

    Args:
        writer: SOCKS 客户端写入流
        request: 原始请求（决定使用哪个版本的响应格式）
        error: 打开连接的结果码
    """
    if request.version == SOCKS4.VERSION:
        await send_socks4_reply(writer, error == OpenError.OK)
    else:
        await send_socks5_reply(writer, socks5_reply_code(error))
