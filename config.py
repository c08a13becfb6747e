"""
Portal 隧道 - 配置管理模块
加载和保存配置文件，解析命令行中的地址和隧道参数。

版本: 1.0.0

功能概述:
本模块提供了配置管理功能，包括：
1. 服务器 / 客户端配置数据类
2. 会话参数（保活、超时、缓冲区）和打洞参数
3. 对端 IP 白名单
4. SSH 风格的隧道参数解析（-L / -R / -D）
5. YAML 配置文件的加载和保存

配置文件格式（YAML，支持 Unicode）:
    server:
      host: 0.0.0.0
      port: 5995
      secret: "..."
      allowed_peers: ["10.0.0.0/8"]
    client:
      server_host: example.com
      secret: "..."
      tunnels:
        - local: "8080:intranet.example.com:80"
        - remote: "2222:localhost:22"
        - dynamic: "1080"
    session:
      keepalive_interval: 10
    punch:
      retry_interval: 0.25
    logging:
      level: INFO

优先级: 命令行参数 > 配置文件 > 默认值
"""

import ipaddress
import logging
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Optional, Tuple

import yaml

from errors import ConfigError
from protocol import TunnelKind, TunnelSpec

logger = logging.getLogger('portal-config')

DEFAULT_PORT = 5995
DEFAULT_BIND_HOST = 'localhost'


# ============================================================================
# 配置数据类
# ============================================================================

def _from_section(cls, data: Optional[Dict[str, Any]]):
    """用配置文件中的一个段落构造数据类，忽略未知字段"""
    data = data or {}
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        logger.warning(f"忽略未知配置项: {cls.__name__} {sorted(unknown)}")
    return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class SessionConfig:
    """
    会话参数（单位: 秒 / 字节）

    Attributes:
        keepalive_interval: 发送 KEEPALIVE 的间隔
        keepalive_timeout: 未收到任何控制消息的最长时间，超过后关闭会话
        connect_timeout: 连接目标地址的超时时间
        open_timeout: 等待 TUNNEL_DATA_OPEN_ACK 或数据流的超时时间
        grace_period: 一个方向结束后另一方向的宽限时间
        handshake_timeout: 安全传输握手和 HELLO 交换的超时时间
        buffer_size: 单次转发读取的最大字节数
    """
    keepalive_interval: float = 10.0
    keepalive_timeout: float = 30.0
    connect_timeout: float = 10.0
    open_timeout: float = 30.0
    grace_period: float = 5.0
    handshake_timeout: float = 15.0
    buffer_size: int = 32 * 1024

    def __post_init__(self):
        if self.keepalive_timeout <= self.keepalive_interval:
            raise ConfigError("keepalive_timeout 必须大于 keepalive_interval")
        if self.buffer_size <= 0:
            raise ConfigError("buffer_size 必须为正数")


@dataclass
class PunchConfig:
    """
    打洞参数

    Attributes:
        bind_host: 本地 UDP 绑定地址（"0.0.0.0" 为 IPv4，"::" 为 IPv6）
        bind_port: 本地 UDP 端口（0 表示随机端口）
        public_address: 额外的候选地址（如 NAT 外部地址，"host[:port]"）
        retry_interval: 每轮探测间隔（秒）
        timeout: 打洞超时（秒）
        code_timeout: 等待对端连接码的超时（秒）
        include_loopback: 是否把回环地址加入候选列表
    """
    bind_host: str = '0.0.0.0'
    bind_port: int = 0
    public_address: Optional[str] = None
    retry_interval: float = 0.25
    timeout: float = 30.0
    code_timeout: float = 600.0
    include_loopback: bool = True

    def __post_init__(self):
        if self.retry_interval <= 0:
            raise ConfigError("retry_interval 必须为正数")


@dataclass
class ServerConfig:
    """
    服务器配置数据类

    Attributes:
        host: 直连模式监听地址
        port: 直连模式监听端口（默认: 5995）
        secret: 直连模式的预共享密钥
        allowed_peers: 允许连接的对端 IP 列表（支持 CIDR，空列表表示不限制）
        allow_local: 是否允许本地转发隧道
        allow_remote: 是否允许远程转发隧道
        allow_dynamic: 是否允许动态（SOCKS）隧道
    """
    host: str = '0.0.0.0'
    port: int = DEFAULT_PORT
    secret: Optional[str] = None
    allowed_peers: List[str] = field(default_factory=list)
    allow_local: bool = True
    allow_remote: bool = True
    allow_dynamic: bool = True

    def allows(self, kind: TunnelKind) -> bool:
        """检查是否允许该类型的隧道"""
        if kind == TunnelKind.LOCAL:
            return self.allow_local
        if kind == TunnelKind.DYNAMIC:
            return self.allow_dynamic and self.allow_local
        if kind == TunnelKind.REMOTE:
            return self.allow_remote
        return self.allow_dynamic and self.allow_remote


@dataclass
class ClientConfig:
    """
    客户端配置数据类

    Attributes:
        server_host: 直连模式服务器地址
        server_port: 服务器端口（默认: 5995）
        secret: 直连模式的预共享密钥
        tunnels: 请求的隧道列表（按顺序发送）
    """
    server_host: Optional[str] = None
    server_port: int = DEFAULT_PORT
    secret: Optional[str] = None
    tunnels: List[TunnelSpec] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'ClientConfig':
        data = dict(data or {})
        entries = data.pop('tunnels', None) or []
        config = _from_section(cls, data)
        config.tunnels = parse_tunnel_entries(entries)
        return config


def load_session_config(data: Dict[str, Any]) -> SessionConfig:
    return _from_section(SessionConfig, data.get('session'))


def load_punch_config(data: Dict[str, Any]) -> PunchConfig:
    return _from_section(PunchConfig, data.get('punch'))


def load_server_config(data: Dict[str, Any]) -> ServerConfig:
    return _from_section(ServerConfig, data.get('server'))


# ============================================================================
# IP 白名单管理
# ============================================================================

class IPWhitelist:
    """
    对端 IP 白名单

    支持以下格式:
    - 单个 IP 地址（如 "192.168.1.1"）
    - CIDR 表示法（如 "192.168.1.0/24"）

    如果白名单为空，则允许所有 IP 访问。
    IPv4 映射的 IPv6 地址（::ffff:a.b.c.d）按 IPv4 地址匹配。
    """

    def __init__(self, whitelist: List[str] = None):
        """
        初始化 IP 白名单

        Args:
            whitelist: IP 地址或网段列表

        Raises:
            ConfigError: 列表中有无法解析的条目
        """
        self.networks = []
        for entry in whitelist or []:
            try:
                self.networks.append(ipaddress.ip_network(entry, strict=False))
            except ValueError as e:
                raise ConfigError(f"无效的白名单条目 {entry!r}: {e}") from e

    def is_allowed(self, ip: str) -> bool:
        """
        检查 IP 是否在白名单中

        Args:
            ip: 要检查的 IP 地址字符串（可以带 IPv6 作用域后缀）

        Returns:
            bool: 在白名单中或白名单为空返回 True
        """
        if not self.networks:
            return True

        try:
            address = ipaddress.ip_address(ip.split('%', 1)[0])
        except ValueError:
            return False
        if address.version == 6 and address.ipv4_mapped is not None:
            address = address.ipv4_mapped

        return any(address in network for network in self.networks)


# ============================================================================
# 地址与隧道参数解析
# ============================================================================

def _split_spec(text: str) -> List[str]:
    """按冒号拆分参数，方括号内的 IPv6 地址作为一个整体"""
    parts = []
    current = ''
    index = 0
    while index < len(text):
        char = text[index]
        if char == '[':
            end = text.find(']', index)
            if end < 0:
                raise ConfigError(f"缺少 ']': {text}")
            current += text[index + 1:end]
            index = end + 1
            continue
        if char == ':':
            parts.append(current)
            current = ''
        else:
            current += char
        index += 1
    parts.append(current)
    return parts


def parse_port(text: str, allow_zero: bool = False) -> int:
    try:
        port = int(text)
    except ValueError:
        raise ConfigError(f"无效的端口: {text!r}") from None
    low = 0 if allow_zero else 1
    if not low <= port <= 65535:
        raise ConfigError(f"端口超出范围: {port}")
    return port


def parse_address(text: str, default_host: Optional[str], default_port: int) -> Tuple[str, int]:
    """
    解析 host[:port] 形式的地址

    支持 "host"、"host:port"、":port"、"[::1]:port"、"[::1]"。
    未写端口时使用 default_port，未写主机时使用 default_host。

    Raises:
        ConfigError: 格式错误或缺少主机
    """
    text = text.strip()
    if text.startswith('[') or text.count(':') <= 1:
        parts = _split_spec(text)
    else:
        # 未加方括号的 IPv6 地址
        parts = [text]

    if len(parts) == 1:
        host, port = parts[0], default_port
    elif len(parts) == 2:
        host, port = parts[0], parse_port(parts[1], allow_zero=True)
    else:
        raise ConfigError(f"无效的地址: {text!r}")

    host = host or default_host
    if not host:
        raise ConfigError(f"缺少主机地址: {text!r}")
    return host, port


_FLAG_KINDS = {
    'L': (TunnelKind.LOCAL, TunnelKind.DYNAMIC),
    'R': (TunnelKind.REMOTE, TunnelKind.REMOTE_DYNAMIC),
    'D': (None, TunnelKind.DYNAMIC),
}

_ENTRY_FLAGS = {'local': 'L', 'remote': 'R', 'dynamic': 'D'}


def parse_tunnel_spec(flag: str, text: str, tunnel_id: int = 0) -> TunnelSpec:
    """
    解析 SSH 风格的隧道参数

    语法: [bind_address:]port[:target_host:target_port]
    - 只写端口（或绑定地址和端口）时为 SOCKS 动态隧道
    - -D 只接受动态形式
    - 绑定地址默认为 localhost

    Args:
        flag: 'L'、'R' 或 'D'
        text: 参数文本
        tunnel_id: 隧道 ID

    Returns:
        TunnelSpec: 隧道描述

    Raises:
        ConfigError: 参数格式错误
    """
    flag = flag.lstrip('-').upper()
    if flag not in _FLAG_KINDS:
        raise ConfigError(f"未知的隧道类型: -{flag}")
    fixed_kind, dynamic_kind = _FLAG_KINDS[flag]

    parts = _split_spec(text.strip())
    if len(parts) in (1, 2):
        kind = dynamic_kind
        target_host, target_port = None, None
    elif len(parts) in (3, 4) and fixed_kind is not None:
        kind = fixed_kind
        target_host, target_port = parts[-2], parse_port(parts[-1])
        if not target_host:
            raise ConfigError(f"缺少目标主机: -{flag} {text}")
        parts = parts[:-2]
    else:
        raise ConfigError(f"无效的隧道参数: -{flag} {text}")

    if len(parts) == 2:
        bind_host = parts[0] or DEFAULT_BIND_HOST
        bind_port = parse_port(parts[1], allow_zero=True)
    else:
        bind_host = DEFAULT_BIND_HOST
        bind_port = parse_port(parts[0], allow_zero=True)

    return TunnelSpec(
        tunnel_id=tunnel_id,
        kind=kind,
        bind_host=bind_host,
        bind_port=bind_port,
        target_host=target_host,
        target_port=target_port,
    )


def parse_tunnel_entries(entries: List[Any], first_id: int = 1) -> List[TunnelSpec]:
    """
    解析配置文件中的隧道列表

    每个条目为单键字典，键为 local / remote / dynamic，值为隧道参数。
    """
    tunnels = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict) or len(entry) != 1:
            raise ConfigError(f"无效的隧道配置: {entry!r}")
        (name, text), = entry.items()
        flag = _ENTRY_FLAGS.get(str(name).lower())
        if flag is None:
            raise ConfigError(f"未知的隧道类型: {name}")
        tunnels.append(parse_tunnel_spec(flag, str(text), first_id + index))
    return tunnels


def tunnel_entry(spec: TunnelSpec) -> Dict[str, str]:
    """把隧道描述转换回配置文件条目"""
    name = 'remote' if spec.kind in (TunnelKind.REMOTE, TunnelKind.REMOTE_DYNAMIC) else 'local'
    if spec.kind == TunnelKind.DYNAMIC:
        name = 'dynamic'
    bind_host = f"[{spec.bind_host}]" if ':' in spec.bind_host else spec.bind_host
    text = f"{bind_host}:{spec.bind_port}"
    if spec.target_host is not None:
        target_host = f"[{spec.target_host}]" if ':' in spec.target_host else spec.target_host
        text += f":{target_host}:{spec.target_port}"
    return {name: text}


# ============================================================================
# 配置文件管理函数
# ============================================================================

def load_config(config_file: str) -> Dict[str, Any]:
    """
    加载配置文件

    Args:
        config_file: 配置文件路径

    Returns:
        Dict[str, Any]: 配置数据字典，文件不存在时返回空字典

    Raises:
        ConfigError: YAML 格式错误或顶层不是映射
    """
    try:
        with open(config_file, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        logger.warning(f"配置文件不存在: {config_file}，使用默认配置")
        return {}
    except yaml.YAMLError as e:
        raise ConfigError(f"配置文件格式错误: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"配置文件顶层必须是映射: {config_file}")
    return data


def save_config(config_file: str, config_data: Dict[str, Any]) -> bool:
    """
    保存配置文件

    Args:
        config_file: 配置文件路径
        config_data: 要保存的配置数据字典

    Returns:
        bool: 保存成功返回 True，失败返回 False
    """
    try:
        with open(config_file, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f, default_flow_style=False, allow_unicode=True, sort_keys=False)
        return True
    except OSError as e:
        logger.error(f"保存配置文件失败: {e}")
        return False


def dump_client_config(client: ClientConfig, session: SessionConfig, punch: PunchConfig) -> Dict[str, Any]:
    """把生效的客户端配置转换为可保存的字典"""
    client_section = asdict(client)
    client_section['tunnels'] = [tunnel_entry(spec) for spec in client.tunnels]
    return {'client': client_section, 'session': asdict(session), 'punch': asdict(punch)}


def dump_server_config(server: ServerConfig, session: SessionConfig, punch: PunchConfig) -> Dict[str, Any]:
    """把生效的服务器配置转换为可保存的字典"""
    return {'server': asdict(server), 'session': asdict(session), 'punch': asdict(punch)}
