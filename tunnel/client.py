"""
隧道客户端模块

本模块定义了隧道请求方会话。握手完成后，请求方一次性发送全部
TUNNEL_REQUEST（不等待前一个响应），响应按请求顺序返回。

- 本地隧道、动态隧道: 被接受后在本端启动监听器
- 远程隧道、远程动态隧道: 对端监听，本端负责连接目标
"""

import asyncio
import logging
from collections import deque
from typing import Deque, List, Tuple

from errors import ProtocolError, SessionClosed, TunnelError
from protocol import ControlMessage, MsgType, TunnelSpec

from .base import BaseTunnel

logger = logging.getLogger('portal-client')


class TunnelClient(BaseTunnel):
    """
    隧道请求方

    Attributes:
        specs: 要建立的隧道
        established: 已成功建立的隧道 ID
        failed: 建立失败的隧道，key 为 tunnel_id，value 为原因
    """

    def __init__(self, connection, crypto, config, specs: List[TunnelSpec], opens_control: bool = True):
        super().__init__(connection, crypto, config, opens_control=opens_control, is_requester=True)
        self.specs = list(specs)
        self.established: List[int] = []
        self.failed = {}
        self._outstanding: Deque[Tuple[TunnelSpec, asyncio.Future]] = deque()

    async def on_ready(self):
        """
        发送全部隧道请求并按顺序处理响应

        Raises:
            SessionClosed: 没有任何隧道建立成功
        """
        loop = asyncio.get_running_loop()
        for spec in self.specs:
            future = loop.create_future()
            self._outstanding.append((spec, future))
            logger.info(f"请求隧道: {spec}")
            await self.send_message(ControlMessage.tunnel_request(spec))

        for spec, future in list(self._outstanding):
            try:
                bound_port = await future
            except TunnelError as e:
                self.failed[spec.tunnel_id] = str(e)
                logger.error(f"隧道被拒绝: {spec}, {e}")
                continue

            if spec.is_remote:
                logger.info(f"远程隧道已建立: {spec}, 对端端口 {bound_port}")
                self.established.append(spec.tunnel_id)
                continue

            try:
                await self.start_listener(spec)
            except OSError as e:
                self.tunnels.pop(spec.tunnel_id, None)
                self.failed[spec.tunnel_id] = f"绑定失败: {e}"
                logger.error(f"无法监听 {spec.bind_host}:{spec.bind_port}: {e}")
                continue
            self.established.append(spec.tunnel_id)

        if self.specs and not self.established:
            raise SessionClosed("没有任何隧道建立成功")
        logger.info(f"隧道就绪: {len(self.established)}/{len(self.specs)}")

    async def handle_message(self, message: ControlMessage):
        if message.msg_type == MsgType.TUNNEL_ACCEPT:
            tunnel_id, bound_port = message.parse_tunnel_accept()
            spec, future = self._next_outstanding(tunnel_id)
            # 远程隧道的 DATA_OPEN 可能紧跟在 ACCEPT 之后
            self.tunnels[tunnel_id] = spec
            future.set_result(bound_port)
        elif message.msg_type == MsgType.TUNNEL_REJECT:
            tunnel_id, reason, text = message.parse_tunnel_reject()
            spec, future = self._next_outstanding(tunnel_id)
            future.set_exception(TunnelError(tunnel_id, f"{reason.name}: {text}"))
        else:
            raise ProtocolError(f"请求方不应收到 {message.msg_type.name}")

    def _next_outstanding(self, tunnel_id: int) -> Tuple[TunnelSpec, asyncio.Future]:
        if not self._outstanding:
            raise ProtocolError(f"未请求的隧道响应: tunnel={tunnel_id}")
        spec, future = self._outstanding.popleft()
        if spec.tunnel_id != tunnel_id:
            raise ProtocolError(f"隧道响应顺序错误: 期望 {spec.tunnel_id}, 收到 {tunnel_id}")
        return spec, future
