"""
Portal 隧道 - 异常定义模块

功能概述:
本模块按照错误的影响范围定义异常层次结构。每一层只捕获属于自己
范围的异常，不会把单个连接的错误扩大为整个会话的错误。

影响范围:
┌──────────────────────┬──────────────────────────────────┐
│ 异常                 │ 影响范围                         │
├──────────────────────┼──────────────────────────────────┤
│ ConfigError          │ 启动阶段，进程退出               │
│ CodeError            │ 连接码解析                       │
│ PunchError           │ 单次打洞尝试                     │
│ TransportError       │ 整个会话                         │
│ ProtocolError        │ 整个会话                         │
│ SessionClosed        │ 整个会话                         │
│ TunnelError          │ 单条隧道                         │
│ ForwardError         │ 单个转发连接                     │
│ SocksError           │ 单个 SOCKS 客户端                │
└──────────────────────┴──────────────────────────────────┘
"""

from typing import Optional


class PortalError(Exception):
    """所有 Portal 异常的基类"""


class ConfigError(PortalError):
    """配置或命令行参数错误"""


# ============================================================================
# 连接码
# ============================================================================

class CodeError(PortalError):
    """连接码解析错误"""


class MalformedCode(CodeError):
    """连接码格式错误（base64 无效、长度错误、校验和不匹配等）"""


class UnsupportedVersion(CodeError):
    """连接码版本不受支持"""

    def __init__(self, version: int):
        super().__init__(f"不支持的连接码版本: {version}")
        self.version = version


# ============================================================================
# 打洞
# ============================================================================

class PunchError(PortalError):
    """打洞失败，仅影响本次连接尝试"""


class PunchTimeout(PunchError):
    """打洞超时"""


# ============================================================================
# 会话级错误
# ============================================================================

class TransportError(PortalError):
    """安全传输层错误（握手失败、连接丢失）"""


class ProtocolError(PortalError):
    """控制协议错误（帧格式错误、未知消息类型）"""


class ProtocolVersionError(ProtocolError):
    """对端协议版本不匹配"""

    def __init__(self, expected: int, actual: int):
        super().__init__(f"协议版本不匹配: 期望 {expected}，收到 {actual}")
        self.expected = expected
        self.actual = actual


class AuthenticationError(ProtocolError):
    """会话握手认证失败"""


class SessionClosed(PortalError):
    """会话已关闭"""


class KeepaliveTimeout(SessionClosed):
    """在保活超时时间内未收到任何控制消息"""


# ============================================================================
# 隧道与连接级错误
# ============================================================================

class TunnelError(PortalError):
    """单条隧道错误（绑定失败、被拒绝）"""

    def __init__(self, tunnel_id: int, message: str):
        super().__init__(f"隧道 {tunnel_id}: {message}")
        self.tunnel_id = tunnel_id


class ForwardError(PortalError):
    """
    单个转发连接错误

    Attributes:
        code: OpenError 错误码
    """

    def __init__(self, code: int, message: str = ""):
        super().__init__(message or f"打开连接失败 (code={code})")
        self.code = code


class SocksError(PortalError):
    """
    SOCKS 握手错误

    Attributes:
        version: SOCKS 版本（4 或 5，未知时为 None）
        reply: 需要返回给 SOCKS 客户端的响应码
    """

    def __init__(self, message: str, version: Optional[int] = None, reply: Optional[int] = None):
        super().__init__(message)
        self.version = version
        self.reply = reply
