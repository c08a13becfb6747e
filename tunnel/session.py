"""
隧道会话模块

本模块定义了 TunnelSession 类，即隧道响应方会话。响应方按收到的顺序
处理 TUNNEL_REQUEST，每个请求都会得到一个 TUNNEL_ACCEPT 或 TUNNEL_REJECT。

- 本地隧道、动态隧道: 直接接受，之后由本端连接目标
- 远程隧道、远程动态隧道: 本端启动监听器，绑定失败时拒绝该隧道
"""

import logging

from config import ServerConfig
from errors import ProtocolError
from protocol import ControlMessage, MsgType, RejectReason

from .base import BaseTunnel

logger = logging.getLogger('portal-server')


class TunnelSession(BaseTunnel):
    """
    隧道响应方会话

    Attributes:
        policy: 服务器配置（允许的隧道类型）
    """

    def __init__(self, connection, crypto, config, policy: ServerConfig = None, opens_control: bool = False):
        super().__init__(connection, crypto, config, opens_control=opens_control, is_requester=False)
        self.policy = policy or ServerConfig()

    async def handle_message(self, message: ControlMessage):
        if message.msg_type != MsgType.TUNNEL_REQUEST:
            raise ProtocolError(f"响应方不应收到 {message.msg_type.name}")

        spec = message.parse_tunnel_request()
        logger.info(f"收到隧道请求: {spec}")

        if spec.tunnel_id in self.tunnels:
            await self._reject(spec.tunnel_id, RejectReason.UNSUPPORTED, "隧道 ID 重复")
            return
        if not self.policy.allows(spec.kind):
            await self._reject(spec.tunnel_id, RejectReason.UNSUPPORTED, f"不允许 {spec.kind.name} 隧道")
            return

        bound_port = 0
        if spec.is_remote:
            try:
                server = await self.start_listener(spec)
            except OSError as e:
                await self._reject(spec.tunnel_id, RejectReason.BIND_FAILED,
                                   f"无法监听 {spec.bind_host}:{spec.bind_port}: {e}")
                return
            bound_port = server.sockets[0].getsockname()[1]

        self.tunnels[spec.tunnel_id] = spec
        await self.send_message(ControlMessage.tunnel_accept(spec.tunnel_id, bound_port))

    async def _reject(self, tunnel_id: int, reason: RejectReason, text: str):
        logger.warning(f"拒绝隧道 {tunnel_id}: {reason.name} {text}")
        await self.send_message(ControlMessage.tunnel_reject(tunnel_id, reason, text))
