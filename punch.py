"""
Portal 隧道 - 打洞驱动模块

功能概述:
本模块把 puncher.py 中的纯状态机接到真实的 UDP 套接字和事件循环上。

主要功能:
1. 枚举本机网卡地址作为候选地址（psutil）
2. 绑定 UDP 套接字并生成本端连接码
3. 根据状态机的动作发送数据报、设置定时器
4. 打洞成功后在同一套接字上分流数据报:
   - 带打洞前导码的数据报交给状态机（建立后仍会响应对端重传）
   - 其余来自已确认对端的数据报交给 QUIC 协议
"""

import asyncio
import ipaddress
import logging
import socket
import sys
from dataclasses import dataclass
from typing import List, Optional, Tuple

import psutil

from config import PunchConfig, parse_address
from connection_code import MAX_CANDIDATES, Candidate, ConnectionCode, sort_candidates
from errors import CodeError, ConfigError, PunchError, PunchTimeout
from puncher import (
    Datagram, Established, PeerCode, PunchFailed, PunchSession, PunchState, PunchTimings,
    SendDatagram, Start, is_punch_packet, next_wakeup, step,
)

logger = logging.getLogger('portal-punch')


def discover_candidates(port: int, family: int = socket.AF_INET, public_address: Optional[str] = None,
                        include_loopback: bool = True) -> List[Candidate]:
    """
    枚举本机候选地址

    Args:
        port: 本地 UDP 端口
        family: 地址族（与绑定的套接字一致）
        public_address: 额外的候选地址（"host[:port]"，端口默认与本地端口相同）
        include_loopback: 是否包含回环地址

    Returns:
        List[Candidate]: 按具体程度排序、去重后的候选地址
    """
    candidates = []
    if public_address:
        host, public_port = parse_address(public_address, None, port)
        try:
            candidates.append(Candidate.parse(host, public_port))
        except ValueError:
            raise ConfigError(f"公网地址必须是 IP 地址: {public_address}") from None

    for name, addresses in psutil.net_if_addrs().items():
        for snic in addresses:
            if snic.family != family:
                continue
            try:
                address = ipaddress.ip_address(snic.address.split('%', 1)[0])
            except ValueError:
                continue
            if address.is_unspecified or address.is_multicast:
                continue
            if address.is_loopback and not include_loopback:
                continue
            # 链路本地 IPv6 地址需要作用域 ID，无法放入连接码
            if address.version == 6 and address.is_link_local:
                continue
            logger.debug(f"候选地址: {name} {address}")
            candidates.append(Candidate(address, port))

    unique = list(dict.fromkeys(candidates))
    return list(sort_candidates(unique)[:MAX_CANDIDATES])


@dataclass
class PunchResult:
    """
    打洞结果

    Attributes:
        transport: 打洞使用的 UDP 传输（之后由 QUIC 复用）
        protocol: 分流协议
        peer: 已确认的对端地址
        is_leader: 本端是否为主导方（QUIC 客户端，打开控制流）
        key: 打洞会话密钥
    """
    transport: asyncio.DatagramTransport
    protocol: 'PunchProtocol'
    peer: Tuple[str, int]
    is_leader: bool
    key: bytes


class PunchProtocol(asyncio.DatagramProtocol):
    """打洞与 QUIC 共用的 UDP 分流协议"""

    def __init__(self, puncher: 'HolePuncher'):
        self.puncher = puncher
        self.transport = None
        self.downstream: Optional[asyncio.DatagramProtocol] = None

    def attach(self, downstream: asyncio.DatagramProtocol):
        """把非打洞数据报交给 downstream（通常是 QUIC 协议）"""
        self.downstream = downstream
        downstream.connection_made(self.transport)

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data: bytes, addr):
        if is_punch_packet(data):
            self.puncher.feed(Datagram(data, addr[:2]))
        elif self.downstream is not None and addr[:2] == self.puncher.peer:
            self.downstream.datagram_received(data, addr)

    def error_received(self, exc):
        logger.debug(f"UDP 错误: {exc!r}")
        if self.downstream is not None:
            self.downstream.error_received(exc)

    def connection_lost(self, exc):
        if self.downstream is not None:
            self.downstream.connection_lost(exc)


class HolePuncher:
    """
    UDP 打洞驱动

    使用方式:
        puncher = HolePuncher(config)
        code = await puncher.bind()      # 把 code 交给对端
        result = await puncher.punch(peer_code)
    """

    def __init__(self, config: Optional[PunchConfig] = None):
        self.config = config or PunchConfig()
        self.timings = PunchTimings(
            retry_interval=self.config.retry_interval,
            timeout=self.config.timeout,
            code_timeout=self.config.code_timeout,
        )
        self.session: Optional[PunchSession] = None
        self.transport = None
        self.protocol = None
        self.peer = None
        self._loop = None
        self._timer = None
        self._result: Optional[asyncio.Future] = None

    @property
    def local_code(self) -> ConnectionCode:
        return self.session.local_code

    async def bind(self) -> ConnectionCode:
        """
        绑定 UDP 套接字并生成本端连接码

        Returns:
            ConnectionCode: 本端连接码

        Raises:
            PunchError: 绑定失败或没有可用的候选地址
        """
        self._loop = asyncio.get_running_loop()
        local_addr = (self.config.bind_host, self.config.bind_port)
        try:
            self.transport, self.protocol = await self._loop.create_datagram_endpoint(
                lambda: PunchProtocol(self), local_addr=local_addr)
        except OSError as e:
            raise PunchError(f"绑定 UDP 端口失败 {local_addr}: {e}") from e

        sock = self.transport.get_extra_info('socket')
        port = self.transport.get_extra_info('sockname')[1]
        candidates = discover_candidates(port, sock.family, self.config.public_address,
                                         self.config.include_loopback)
        if not candidates:
            self.transport.close()
            raise PunchError("没有可用的候选地址")

        code = ConnectionCode.generate(candidates)
        logger.info(f"UDP 已绑定: port={port}, 候选地址: {', '.join(str(c) for c in code.candidates)}")

        self._result = self._loop.create_future()
        self.session = PunchSession(code, self.timings)
        self.feed(Start())
        return code

    async def punch(self, remote_code: ConnectionCode) -> PunchResult:
        """
        使用对端连接码打洞

        Args:
            remote_code: 对端连接码

        Returns:
            PunchResult: 打洞结果

        Raises:
            PunchTimeout: 超时
            PunchError: 对端连接码无效
        """
        logger.info(f"开始打洞: 对端候选地址 {', '.join(str(c) for c in remote_code.candidates)}")
        self.feed(PeerCode(remote_code))
        try:
            peer = await self._result
        except PunchError:
            self.transport.close()
            raise

        session = self.session
        logger.info(f"打洞成功: peer={peer[0]}:{peer[1]}, leader={session.is_leader}, rounds={session.rounds}")
        return PunchResult(self.transport, self.protocol, peer, session.is_leader, session.key)

    def feed(self, event):
        """把事件交给状态机并执行产生的动作"""
        if self.session is None:
            return
        self.session, actions = step(self.session, self._loop.time(), event)
        for action in actions:
            if isinstance(action, SendDatagram):
                self._send(action)
            elif isinstance(action, Established):
                self.peer = action.peer
                if not self._result.done():
                    self._result.set_result(action.peer)
            elif isinstance(action, PunchFailed):
                logger.warning(f"打洞失败: {action.reason}")
                error = PunchTimeout(action.reason) if action.timed_out else PunchError(action.reason)
                if not self._result.done():
                    self._result.set_exception(error)
        self._schedule()

    def _send(self, action: SendDatagram):
        if self.transport is None or self.transport.is_closing():
            return
        try:
            self.transport.sendto(action.data, action.addr)
        except OSError as e:
            # 单个候选地址不可达不影响其它候选地址
            logger.debug(f"发送到 {action.addr} 失败: {e}")

    def _tick(self):
        self._timer = None
        self.feed(None)

    def _schedule(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        wakeup = next_wakeup(self.session)
        if wakeup is not None:
            self._timer = self._loop.call_at(wakeup, self._tick)

    def close(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self.transport is not None:
            self.transport.close()

    @property
    def state(self) -> Optional[PunchState]:
        return self.session.state if self.session else None


async def read_peer_code(stream=None) -> ConnectionCode:
    """
    从标准输入读取对端连接码

    读取在线程池中进行，不阻塞事件循环。无法解码的输入会被丢弃并重新读取。

    Raises:
        PunchError: 输入已结束
    """
    stream = stream or sys.stdin
    loop = asyncio.get_running_loop()
    while True:
        print("请输入对端连接码: ", end='', file=sys.stderr, flush=True)
        line = await loop.run_in_executor(None, stream.readline)
        if not line:
            raise PunchError("未收到对端连接码（输入已结束）")
        line = line.strip()
        if not line:
            continue
        try:
            return ConnectionCode.decode(line)
        except CodeError as e:
            logger.error(f"无效的连接码: {e}")
