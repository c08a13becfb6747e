"""
Portal 隧道 - 连接码模块

功能概述:
连接码是两端在打洞模式下通过带外渠道（聊天、邮件等）交换的短字符串，
包含会话标识、共享密钥以及本端的候选地址列表。

二进制格式:
┌─────────┬──────────────┬──────────────┬─────────┬─────────────────────┬──────────┐
│ 版本    │ 会话 ID      │ 会话密钥     │ 候选数  │ 候选地址 × 候选数   │ 校验和   │
│ 1 字节  │ 16 字节      │ 32 字节      │ 1 字节  │ 可变长度            │ 2 字节   │
└─────────┴──────────────┴──────────────┴─────────┴─────────────────────┴──────────┘

候选地址格式:
┌─────────┬──────────────────┬──────────────┐
│ 地址族  │ 地址             │ 端口（大端） │
│ 1 字节  │ 4 或 16 字节     │ 2 字节       │
└─────────┴──────────────────┴──────────────┘

校验和（小端序 16 位）:
- 低 8 位: 从 0x69 开始，对所有字节做异或
- 高 8 位: 所有字节中 1 的个数之和（按 8 位回绕）

最终输出为 URL 安全、无填充的 base64 字符串。
"""

import base64
import binascii
import ipaddress
import os
import struct
from dataclasses import dataclass
from typing import Iterable, Tuple, Union

from errors import MalformedCode, UnsupportedVersion

CODE_VERSION = 1
SESSION_ID_SIZE = 16
SECRET_SIZE = 32
MAX_CANDIDATES = 16

FAMILY_IPV4 = 4
FAMILY_IPV6 = 6

_ADDRESS_SIZES = {FAMILY_IPV4: 4, FAMILY_IPV6: 16}
_HEADER_SIZE = 1 + SESSION_ID_SIZE + SECRET_SIZE + 1


@dataclass(frozen=True)
class Candidate:
    """
    候选地址

    Attributes:
        address: IP 地址（IPv4Address 或 IPv6Address）
        port: UDP 端口
    """
    address: Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
    port: int

    @classmethod
    def parse(cls, host: str, port: int) -> 'Candidate':
        return cls(ipaddress.ip_address(host), port)

    @property
    def family(self) -> int:
        return FAMILY_IPV4 if self.address.version == 4 else FAMILY_IPV6

    @property
    def sockaddr(self) -> Tuple[str, int]:
        """用于 sendto 的地址元组"""
        return str(self.address), self.port

    def __str__(self):
        if self.family == FAMILY_IPV6:
            return f"[{self.address}]:{self.port}"
        return f"{self.address}:{self.port}"


def _specificity(candidate: Candidate) -> int:
    address = candidate.address
    if address.is_loopback:
        return 3
    if address.is_link_local:
        return 2
    if address.is_private:
        return 1
    return 0


def sort_candidates(candidates: Iterable[Candidate]) -> Tuple[Candidate, ...]:
    """
    按照具体程度排序候选地址

    公网地址优先，其次是私有地址、链路本地地址，回环地址排在最后。
    排序是稳定的，相同类别内保持原有顺序。
    """
    return tuple(sorted(candidates, key=_specificity))


def calc_checksum(data: bytes) -> int:
    """
    计算 16 位校验和

    Args:
        data: 需要计算校验和的字节数据

    Returns:
        int: 低 8 位为异或值，高 8 位为 1 的个数
    """
    xored = 0x69
    ones_count = 0
    for byte in data:
        xored ^= byte
        ones_count = (ones_count + bin(byte).count('1')) & 0xFF
    return xored | (ones_count << 8)


@dataclass(frozen=True)
class ConnectionCode:
    """
    连接码

    Attributes:
        session_id: 16 字节会话标识，每次运行随机生成
        secret: 32 字节共享密钥，每次运行随机生成
        candidates: 本端候选地址（按具体程度排序）
        version: 连接码版本
    """
    session_id: bytes
    secret: bytes
    candidates: Tuple[Candidate, ...]
    version: int = CODE_VERSION

    def __post_init__(self):
        if len(self.session_id) != SESSION_ID_SIZE:
            raise ValueError(f"会话 ID 必须为 {SESSION_ID_SIZE} 字节")
        if len(self.secret) != SECRET_SIZE:
            raise ValueError(f"会话密钥必须为 {SECRET_SIZE} 字节")
        if not 0 < len(self.candidates) <= MAX_CANDIDATES:
            raise ValueError(f"候选地址数量必须在 1 到 {MAX_CANDIDATES} 之间")

    @classmethod
    def generate(cls, candidates: Iterable[Candidate]) -> 'ConnectionCode':
        """
        为本次运行生成新的连接码

        会话 ID 和密钥每次都重新随机生成，不会复用。

        Args:
            candidates: 本端候选地址

        Returns:
            ConnectionCode: 新的连接码
        """
        ordered = sort_candidates(candidates)[:MAX_CANDIDATES]
        return cls(
            session_id=os.urandom(SESSION_ID_SIZE),
            secret=os.urandom(SECRET_SIZE),
            candidates=ordered,
        )

    def to_bytes(self) -> bytes:
        """序列化为二进制格式（包含校验和）"""
        parts = [
            struct.pack('>B', self.version),
            self.session_id,
            self.secret,
            struct.pack('>B', len(self.candidates)),
        ]
        for candidate in self.candidates:
            parts.append(struct.pack('>B', candidate.family))
            parts.append(candidate.address.packed)
            parts.append(struct.pack('>H', candidate.port))

        body = b''.join(parts)
        return body + struct.pack('<H', calc_checksum(body))

    def encode(self) -> str:
        """编码为 URL 安全、无填充的 base64 字符串"""
        return base64.urlsafe_b64encode(self.to_bytes()).rstrip(b'=').decode('ascii')

    @classmethod
    def from_bytes(cls, data: bytes) -> 'ConnectionCode':
        """
        从二进制格式解析连接码

        Raises:
            UnsupportedVersion: 版本字节未知
            MalformedCode: 数据被截断、含多余数据、地址族无效、端口为 0
                或校验和不匹配
        """
        if not data:
            raise MalformedCode("连接码为空")

        version = data[0]
        if version != CODE_VERSION:
            raise UnsupportedVersion(version)

        if len(data) < _HEADER_SIZE:
            raise MalformedCode("连接码被截断")

        session_id = data[1:1 + SESSION_ID_SIZE]
        secret = data[1 + SESSION_ID_SIZE:1 + SESSION_ID_SIZE + SECRET_SIZE]
        count = data[_HEADER_SIZE - 1]
        if not 0 < count <= MAX_CANDIDATES:
            raise MalformedCode(f"候选地址数量无效: {count}")

        index = _HEADER_SIZE
        candidates = []
        for _ in range(count):
            if index >= len(data):
                raise MalformedCode("连接码被截断")
            family = data[index]
            size = _ADDRESS_SIZES.get(family)
            if size is None:
                raise MalformedCode(f"无效的地址族: {family}")
            index += 1

            if index + size + 2 > len(data):
                raise MalformedCode("连接码被截断")
            address = ipaddress.ip_address(data[index:index + size])
            index += size
            port, = struct.unpack('>H', data[index:index + 2])
            index += 2
            if port == 0:
                raise MalformedCode("候选端口不能为 0")
            candidates.append(Candidate(address, port))

        if index + 2 > len(data):
            raise MalformedCode("连接码被截断")
        checksum, = struct.unpack('<H', data[index:index + 2])
        if checksum != calc_checksum(data[:index]):
            raise MalformedCode("校验和不匹配")
        if index + 2 != len(data):
            raise MalformedCode("连接码包含多余数据")

        return cls(
            session_id=session_id,
            secret=secret,
            candidates=tuple(candidates),
            version=version,
        )

    @classmethod
    def decode(cls, token: str) -> 'ConnectionCode':
        """
        从 base64 字符串解析连接码

        Args:
            token: 对端提供的连接码字符串（首尾空白会被忽略）

        Returns:
            ConnectionCode: 解析结果

        Raises:
            MalformedCode: base64 无效或内容格式错误
            UnsupportedVersion: 版本不受支持
        """
        token = token.strip()
        padded = token + '=' * (-len(token) % 4)
        try:
            data = base64.b64decode(padded.encode('ascii'), altchars=b'-_', validate=True)
        except (binascii.Error, UnicodeEncodeError, ValueError) as e:
            raise MalformedCode(f"无效的 base64: {e}") from e
        return cls.from_bytes(data)

    def __str__(self):
        return self.encode()


def encode(code: ConnectionCode) -> str:
    return code.encode()


def decode(token: str) -> ConnectionCode:
    return ConnectionCode.decode(token)
