"""
隧道服务器模块 - 直连模式服务器生命周期管理

此模块包含 TunnelServer 类，负责在直连模式下监听 QUIC 连接，
检查对端 IP 白名单，并为每个连接创建独立的 TunnelSession。

使用示例:
    >>> server = TunnelServer(ServerConfig(secret='...'), SessionConfig())
    >>> asyncio.run(server.serve_forever())
"""

import asyncio
import logging
from typing import Optional, Set

import transport
from config import IPWhitelist, ServerConfig, SessionConfig
from errors import ConfigError, PortalError
from tunnel.crypto import SessionCrypto
from tunnel.session import TunnelSession

logger = logging.getLogger('portal-server')


class TunnelServer:
    """
    直连模式隧道服务器

    每个客户端连接在独立的任务中运行，一个会话出错不影响其它会话。

    Attributes:
        config: 服务器配置
        session_config: 会话参数
        crypto: 由预共享密钥派生的会话加密对象
        whitelist: 对端 IP 白名单
        sessions: 正在运行的会话任务
    """

    def __init__(self, config: ServerConfig, session_config: Optional[SessionConfig] = None):
        if not config.secret:
            raise ConfigError("直连模式需要预共享密钥 (secret)")
        self.config = config
        self.session_config = session_config or SessionConfig()
        self.crypto = SessionCrypto.from_secret(config.secret)
        self.whitelist = IPWhitelist(config.allowed_peers)
        self.sessions: Set[asyncio.Task] = set()
        self._server = None
        self._stopped: Optional[asyncio.Future] = None

    def handle_connection(self, connection: transport.MultiplexedConnection):
        """
        处理一个完成 QUIC 握手的连接

        Args:
            connection: 多路复用连接
        """
        address = connection.remote_address
        ip = address[0] if address else ''
        if not self.whitelist.is_allowed(ip):
            logger.warning(f"拒绝不在白名单中的对端: {ip}")
            connection.close()
            return

        logger.info(f"新连接: {address}")
        session = TunnelSession(connection, self.crypto, self.session_config, self.config)
        task = asyncio.ensure_future(self._run_session(session, address))
        self.sessions.add(task)
        task.add_done_callback(self.sessions.discard)

    async def _run_session(self, session: TunnelSession, address):
        try:
            await session.run()
            logger.info(f"会话结束: {address}")
        except PortalError as e:
            logger.warning(f"会话异常结束: {address}, {e!r}")

    async def start(self):
        """开始监听"""
        self._stopped = asyncio.get_running_loop().create_future()
        self._server = await transport.listen(
            self.config.host, self.config.port, self.crypto, self.handle_connection,
            idle_timeout=self.session_config.keepalive_timeout * 2,
        )
        logger.info(f"隧道服务器运行于 {self.config.host}:{self.config.port}")
        logger.info(f"证书指纹: {self.crypto.fingerprint()}")
        if self.whitelist.networks:
            logger.info(f"对端白名单: {len(self.whitelist.networks)} 条规则")

    async def serve_forever(self):
        """启动服务器并运行直到 close() 被调用"""
        if self._server is None:
            await self.start()
        try:
            await self._stopped
        finally:
            await self.close()

    async def close(self):
        if self._server is not None:
            self._server.close()
            self._server = None
        for task in list(self.sessions):
            task.cancel()
        if self.sessions:
            await asyncio.gather(*self.sessions, return_exceptions=True)
        if self._stopped is not None and not self._stopped.done():
            self._stopped.set_result(None)
