"""
Portal 隧道 - 打洞状态机

功能概述:
本模块以纯函数的形式实现 UDP 打洞状态机，不进行任何 I/O 操作。
驱动方（punch.py）负责收发数据报和定时，状态机只根据
(状态, 当前时间, 事件) 计算 (新状态, 动作列表)。

状态转换:
    IDLE ──Start──> AWAITING_PEER_CODE ──PeerCode──> PUNCHING
    PUNCHING ──有效 PROBE_ACK──> VERIFYING ──确认完成──> ESTABLISHED
    AWAITING_PEER_CODE / PUNCHING / VERIFYING ──超时──> FAILED

角色:
- 会话 ID 较小的一方为主导方（leader），收到第一个有效 PROBE_ACK 后
  向该地址重复发送 CONFIRM，收到 CONFIRM_ACK 后建立连接
- 另一方为跟随方（follower），收到 CONFIRM 后回复 CONFIRM_ACK 并建立连接，
  建立后仍会响应重传的 CONFIRM

数据包格式（固定 73 字节）:
┌──────────┬────────┬──────────────┬──────────┬──────────┬──────────────┐
│ 前导码   │ 类型   │ 发送方会话ID │ nonce    │ echo     │ HMAC-SHA256  │
│ 8 字节   │ 1 字节 │ 16 字节      │ 8 字节   │ 8 字节   │ 32 字节      │
└──────────┴────────┴──────────────┴──────────┴──────────┴──────────────┘

HMAC 覆盖前面所有字节，密钥由双方的会话 ID 和密钥通过 HKDF 派生。
"""

import hashlib
import hmac
import struct
from dataclasses import dataclass, field, replace
from enum import Enum, IntEnum
from typing import List, Optional, Tuple

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from connection_code import ConnectionCode

PUNCH_MAGIC = bytes([0x38, 0x08, 0x42, 0x8b, 0x11, 0x39, 0x42, 0x53])
MAC_SIZE = 32
_BODY_FORMAT = '>8sB16sQQ'
_BODY_SIZE = struct.calcsize(_BODY_FORMAT)
PACKET_SIZE = _BODY_SIZE + MAC_SIZE


class PunchState(Enum):
    IDLE = 'idle'
    AWAITING_PEER_CODE = 'awaiting_peer_code'
    PUNCHING = 'punching'
    VERIFYING = 'verifying'
    ESTABLISHED = 'established'
    FAILED = 'failed'


class PacketKind(IntEnum):
    PROBE = 1
    PROBE_ACK = 2
    CONFIRM = 3
    CONFIRM_ACK = 4


# ============================================================================
# 事件与动作
# ============================================================================

@dataclass(frozen=True)
class Start:
    """开始等待对端连接码"""


@dataclass(frozen=True)
class PeerCode:
    """用户输入了对端连接码"""
    code: ConnectionCode


@dataclass(frozen=True)
class Datagram:
    """收到 UDP 数据报"""
    data: bytes
    addr: Tuple[str, int]


@dataclass(frozen=True)
class SendDatagram:
    """发送 UDP 数据报"""
    addr: Tuple[str, int]
    data: bytes


@dataclass(frozen=True)
class Established:
    """打洞成功"""
    peer: Tuple[str, int]


@dataclass(frozen=True)
class PunchFailed:
    """打洞失败，timed_out 表示因截止时间到达而失败"""
    reason: str
    timed_out: bool = False


@dataclass(frozen=True)
class PunchTimings:
    """
    打洞定时参数（秒）

    Attributes:
        retry_interval: 每轮探测的间隔
        timeout: 进入 PUNCHING 后的总超时时间
        code_timeout: 等待对端连接码的超时时间
    """
    retry_interval: float = 0.25
    timeout: float = 30.0
    code_timeout: float = 600.0


# ============================================================================
# 密钥与数据包
# ============================================================================

def derive_session_key(local: ConnectionCode, remote: ConnectionCode) -> bytes:
    """
    从双方连接码派生打洞会话密钥

    按会话 ID 排序后拼接，因此两端得到相同的密钥。
    """
    first, second = sorted((local, remote), key=lambda c: c.session_id)
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=first.session_id + second.session_id,
        info=b'portal-punch-v1',
    )
    return hkdf.derive(first.secret + second.secret)


def is_punch_packet(data: bytes) -> bool:
    """判断数据报是否为打洞数据包（仅检查长度和前导码）"""
    return len(data) == PACKET_SIZE and data[:len(PUNCH_MAGIC)] == PUNCH_MAGIC


def make_packet(key: bytes, kind: PacketKind, sender: bytes, nonce: int, echo: int = 0) -> bytes:
    body = struct.pack(_BODY_FORMAT, PUNCH_MAGIC, kind, sender, nonce, echo)
    return body + hmac.new(key, body, hashlib.sha256).digest()


def parse_packet(key: bytes, data: bytes) -> Optional[Tuple[PacketKind, bytes, int, int]]:
    """
    解析并验证打洞数据包

    Returns:
        (类型, 发送方会话ID, nonce, echo)，格式错误或认证失败返回 None
    """
    if not is_punch_packet(data):
        return None
    body, mac = data[:_BODY_SIZE], data[_BODY_SIZE:]
    if not hmac.compare_digest(mac, hmac.new(key, body, hashlib.sha256).digest()):
        return None
    _, kind, sender, nonce, echo = struct.unpack(_BODY_FORMAT, body)
    try:
        return PacketKind(kind), sender, nonce, echo
    except ValueError:
        return None


# ============================================================================
# 状态机
# ============================================================================

@dataclass(frozen=True)
class PunchSession:
    """
    打洞会话状态（不可变）

    Attributes:
        local_code: 本端连接码
        timings: 定时参数
        state: 当前状态
        remote_code: 对端连接码
        key: 会话密钥（收到对端连接码后派生）
        is_leader: 本端会话 ID 是否较小
        nonce: 已使用的最大 nonce（从 1 开始递增）
        deadline: 当前状态的截止时间
        next_send_at: 下一轮发送的时间
        rounds: 已发送的探测轮数
        probes_sent: 向对端每个候选地址发送的探测包数（与 remote_code.candidates 对应）
        start_time: 会话开始（Start 或收到对端连接码）的时间
        observed: 第一个完成往返的对端地址
        confirmed: 最终确认的对端地址
        failure: 失败原因
    """
    local_code: ConnectionCode
    timings: PunchTimings = field(default_factory=PunchTimings)
    state: PunchState = PunchState.IDLE
    remote_code: Optional[ConnectionCode] = None
    key: bytes = b''
    is_leader: bool = False
    nonce: int = 0
    deadline: Optional[float] = None
    next_send_at: Optional[float] = None
    rounds: int = 0
    probes_sent: Tuple[int, ...] = ()
    start_time: Optional[float] = None
    observed: Optional[Tuple[str, int]] = None
    confirmed: Optional[Tuple[str, int]] = None
    failure: Optional[str] = None

    @property
    def session_id(self) -> bytes:
        return self.local_code.session_id


Actions = List[object]


def next_wakeup(session: PunchSession) -> Optional[float]:
    """返回驱动方下一次需要调用 step(..., None) 的时间，无需定时返回 None"""
    if session.state == PunchState.AWAITING_PEER_CODE:
        return session.deadline
    if session.state in (PunchState.PUNCHING, PunchState.VERIFYING):
        return min(session.deadline, session.next_send_at)
    return None


def _packet(session: PunchSession, kind: PacketKind, echo: int = 0) -> Tuple[PunchSession, bytes]:
    nonce = session.nonce + 1
    data = make_packet(session.key, kind, session.session_id, nonce, echo)
    return replace(session, nonce=nonce), data


def _fail(session: PunchSession, reason: str, timed_out: bool = False) -> Tuple[PunchSession, Actions]:
    failed = replace(session, state=PunchState.FAILED, failure=reason,
                     deadline=None, next_send_at=None)
    return failed, [PunchFailed(reason, timed_out)]


def _send_round(session: PunchSession, now: float) -> Tuple[PunchSession, Actions]:
    """按当前状态发送一轮数据包"""
    actions = []
    if session.state == PunchState.PUNCHING:
        for candidate in session.remote_code.candidates:
            session, data = _packet(session, PacketKind.PROBE)
            actions.append(SendDatagram(candidate.sockaddr, data))
        session = replace(session, probes_sent=tuple(n + 1 for n in session.probes_sent))
    elif session.is_leader:
        session, data = _packet(session, PacketKind.CONFIRM)
        actions.append(SendDatagram(session.observed, data))
    else:
        session, data = _packet(session, PacketKind.PROBE)
        actions.append(SendDatagram(session.observed, data))

    session = replace(session, rounds=session.rounds + 1,
                      next_send_at=now + session.timings.retry_interval)
    return session, actions


def _on_peer_code(session: PunchSession, now: float, code: ConnectionCode) -> Tuple[PunchSession, Actions]:
    if code.version != session.local_code.version:
        return _fail(session, f"对端连接码版本不同: {code.version}")
    if code.session_id == session.session_id:
        return _fail(session, "对端连接码与本端相同")

    session = replace(
        session,
        state=PunchState.PUNCHING,
        remote_code=code,
        key=derive_session_key(session.local_code, code),
        is_leader=session.session_id < code.session_id,
        deadline=now + session.timings.timeout,
        probes_sent=(0,) * len(code.candidates),
        start_time=now if session.start_time is None else session.start_time,
    )
    return _send_round(session, now)


def _on_datagram(session: PunchSession, now: float, event: Datagram) -> Tuple[PunchSession, Actions]:
    parsed = parse_packet(session.key, event.data)
    if parsed is None:
        return session, []
    kind, sender, nonce, echo = parsed
    if sender != session.remote_code.session_id:
        return session, []

    state = session.state
    actions = []

    if kind == PacketKind.PROBE:
        session, data = _packet(session, PacketKind.PROBE_ACK, echo=nonce)
        actions.append(SendDatagram(event.addr, data))
        return session, actions

    if kind == PacketKind.PROBE_ACK:
        if state != PunchState.PUNCHING or not 0 < echo <= session.nonce:
            return session, []
        session = replace(session, state=PunchState.VERIFYING, observed=event.addr)
        return _send_round(session, now)

    if kind == PacketKind.CONFIRM:
        if session.is_leader or state not in (PunchState.PUNCHING, PunchState.VERIFYING,
                                              PunchState.ESTABLISHED):
            return session, []
        session, data = _packet(session, PacketKind.CONFIRM_ACK, echo=nonce)
        actions.append(SendDatagram(event.addr, data))
        if state != PunchState.ESTABLISHED:
            session = replace(session, state=PunchState.ESTABLISHED, confirmed=event.addr,
                              deadline=None, next_send_at=None)
            actions.append(Established(event.addr))
        return session, actions

    # CONFIRM_ACK
    if not session.is_leader or state != PunchState.VERIFYING or not 0 < echo <= session.nonce:
        return session, []
    session = replace(session, state=PunchState.ESTABLISHED, confirmed=session.observed,
                      deadline=None, next_send_at=None)
    return session, [Established(session.observed)]


def step(session: PunchSession, now: float, event=None) -> Tuple[PunchSession, Actions]:
    """
    推进状态机

    Args:
        session: 当前会话状态
        now: 单调时钟时间（秒）
        event: Start、PeerCode、Datagram 之一，None 表示定时器触发

    Returns:
        (新的会话状态, 动作列表)
    """
    state = session.state

    if state == PunchState.FAILED:
        return session, []

    if state == PunchState.IDLE:
        if isinstance(event, Start):
            return replace(session, state=PunchState.AWAITING_PEER_CODE, start_time=now,
                           deadline=now + session.timings.code_timeout), []
        if isinstance(event, PeerCode):
            return _on_peer_code(session, now, event.code)
        return session, []

    if session.deadline is not None and now >= session.deadline:
        if state == PunchState.AWAITING_PEER_CODE:
            return _fail(session, "等待对端连接码超时", timed_out=True)
        return _fail(session, f"打洞超时（{now - session.start_time:.1f} 秒内已发送 {session.rounds} 轮）",
                     timed_out=True)

    if state == PunchState.AWAITING_PEER_CODE:
        if isinstance(event, PeerCode):
            return _on_peer_code(session, now, event.code)
        return session, []

    if isinstance(event, Datagram):
        return _on_datagram(session, now, event)

    if event is None and state in (PunchState.PUNCHING, PunchState.VERIFYING):
        if now >= session.next_send_at:
            return _send_round(session, now)

    return session, []
