"""
隧道基础类

本模块定义了客户端会话和服务器会话共享的核心功能，包括：
- 控制流的建立和 HELLO 握手
- 控制消息的发送（写入锁）和按序分发
- 保活与保活超时
- 对端打开的数据流的路由
- 转发连接的打开、确认和关闭
- 会话结束时的资源清理

客户端和服务器通过继承此类，实现各自的隧道请求处理。

错误范围:
- 会话级（ProtocolError、KeepaliveTimeout、TransportError）结束整个会话
- 单个转发连接的错误只在该连接的任务内处理，不影响其它连接
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Dict, Optional, Set

import socks
from connection import (
    ConnState, ForwardedConnection, close_connection, connect_to_target, forward,
)
from errors import (
    AuthenticationError, ForwardError, KeepaliveTimeout, PortalError, ProtocolError,
    SessionClosed, SocksError, TransportError,
)
from protocol import (
    ControlMessage, MsgType, OpenError, StreamKind, TunnelSpec, read_message,
    read_stream_header, stream_header,
)
from transport import MultiplexedConnection, Stream

logger = logging.getLogger('portal-tunnel')

OPENER_ROLE = 'opener'
ACCEPTOR_ROLE = 'acceptor'


class BaseTunnel(ABC):
    """
    隧道会话基础类

    Attributes:
        connection: 多路复用连接
        crypto: 会话加密对象（HELLO 认证）
        config: 会话参数（SessionConfig）
        opens_control: 本端是否打开控制流
        is_requester: 本端是否为隧道请求方（客户端）
        control: 控制流
        tunnels: 已建立的隧道，key 为 tunnel_id
        connections: 转发连接，key 为 connection_id
        listeners: 本端负责的监听器，key 为 tunnel_id
        write_lock: 控制流写入锁
    """

    def __init__(self, connection: MultiplexedConnection, crypto, config,
                 opens_control: bool, is_requester: bool):
        self.connection = connection
        self.crypto = crypto
        self.config = config
        self.opens_control = opens_control
        self.is_requester = is_requester
        self.control: Optional[Stream] = None
        self.tunnels: Dict[int, TunnelSpec] = {}
        self.connections: Dict[int, ForwardedConnection] = {}
        self.listeners: Dict[int, asyncio.AbstractServer] = {}
        self.write_lock = asyncio.Lock()
        self.closed = False
        self._pending_acks: Dict[int, asyncio.Future] = {}
        self._pending_streams: Dict[int, asyncio.Future] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._next_connection_id = 1 if is_requester else 2

    # ------------------------------------------------------------------
    # 生命周期
    # ------------------------------------------------------------------

    async def run(self):
        """
        运行会话直到结束

        Raises:
            AuthenticationError / ProtocolError: 握手或控制协议错误
            KeepaliveTimeout: 保活超时
            TransportError: 传输连接断开
            SessionClosed: 会话因其它原因结束（例如所有隧道均被拒绝）
        """
        try:
            try:
                await asyncio.wait_for(self.handshake(), timeout=self.config.handshake_timeout)
            except asyncio.TimeoutError:
                raise TransportError("会话握手超时") from None
            except (ConnectionError, OSError) as e:
                raise TransportError(f"会话握手失败: {e}") from e

            core = {
                self.spawn(self._dispatch_loop()),
                self.spawn(self._keepalive_loop()),
                self.spawn(self._accept_loop()),
            }
            ready = self.spawn(self.on_ready())
            waiting = core | {ready}

            while True:
                done, waiting = await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)
                if done == {ready} and ready.exception() is None:
                    continue
                break

            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    raise task.exception()
            logger.info("对端关闭了会话")
        finally:
            await self.close()

    async def on_ready(self):
        """握手完成后调用，客户端在此发送隧道请求"""

    async def close(self):
        """
        结束会话并清理所有资源

        关闭全部监听器，取消全部任务（各转发任务会关闭自己的连接），
        最后关闭控制流和传输连接。可重复调用。
        """
        if self.closed:
            return
        self.closed = True
        logger.debug(f"关闭会话: tunnels={len(self.tunnels)}, connections={len(self.connections)}")

        for server in self.listeners.values():
            server.close()

        current = asyncio.current_task()
        tasks = [t for t in self._tasks if t is not current]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        for conn in list(self.connections.values()):
            await close_connection(conn)
        self.connections.clear()

        for future in list(self._pending_acks.values()) + list(self._pending_streams.values()):
            if not future.done():
                future.cancel()

        if self.control is not None:
            self.control.close()
        self.connection.close()

    def spawn(self, coro) -> asyncio.Task:
        """创建并登记任务，会话结束时统一取消"""
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ------------------------------------------------------------------
    # 握手
    # ------------------------------------------------------------------

    async def handshake(self):
        """
        建立控制流并交换 HELLO

        打开方先写入控制流头部；接受方要求对端打开的第一条流必须是控制流。
        双方的第一条控制消息都是 HELLO，先检查版本，再检查认证令牌。

        Raises:
            ProtocolError: 第一条流不是控制流或第一条消息不是 HELLO
            ProtocolVersionError: 协议版本不匹配
            AuthenticationError: 认证失败
            TransportError: 连接在握手期间断开
        """
        if self.opens_control:
            self.control = await self.connection.open_stream()
            self.control.writer.write(stream_header(StreamKind.CONTROL))
            local_role, peer_role = OPENER_ROLE, ACCEPTOR_ROLE
        else:
            stream = await self.connection.accept_stream()
            if stream is None:
                raise TransportError("连接在握手期间断开")
            kind, _ = await read_stream_header(stream.reader)
            if kind != StreamKind.CONTROL:
                stream.close()
                raise ProtocolError("对端打开的第一条流不是控制流")
            self.control = stream
            local_role, peer_role = ACCEPTOR_ROLE, OPENER_ROLE

        timestamp = int(time.time())
        await self.send_message(ControlMessage.hello(timestamp, self.crypto.generate_auth_token(timestamp, local_role)))

        message = await read_message(self.control.reader)
        if message is None:
            raise TransportError("对端在握手期间关闭了控制流")
        if message.msg_type != MsgType.HELLO:
            raise ProtocolError(f"第一条控制消息不是 HELLO: {message.msg_type.name}")
        peer_timestamp, mac = message.parse_hello()
        if not self.crypto.verify_auth_token(mac, peer_timestamp, peer_role):
            raise AuthenticationError("HELLO 认证失败")

        logger.info(f"会话握手完成: peer={self.connection.remote_address}, role={local_role}")

    # ------------------------------------------------------------------
    # 控制消息
    # ------------------------------------------------------------------

    async def send_message(self, message: ControlMessage):
        """
        发送控制消息

        使用写入锁保证多个协程发送的消息不会交错。

        Raises:
            SessionClosed: 会话已关闭
            TransportError: 写入失败
        """
        if self.control is None:
            raise SessionClosed("控制流尚未建立")

        logger.debug(f"发送控制消息: type={message.msg_type.name}, len={len(message.payload)}")
        async with self.write_lock:
            try:
                self.control.writer.write(message.serialize())
                await self.control.writer.drain()
            except (ConnectionError, OSError) as e:
                raise TransportError(f"发送控制消息失败: {e}") from e

    async def _dispatch_loop(self):
        """
        按到达顺序处理控制消息

        每条消息处理完成后才读取下一条。超过 keepalive_timeout 未收到任何
        消息时抛出 KeepaliveTimeout。
        """
        timeout = self.config.keepalive_timeout
        while True:
            try:
                message = await asyncio.wait_for(read_message(self.control.reader), timeout=timeout)
            except asyncio.TimeoutError:
                raise KeepaliveTimeout(f"{timeout} 秒内未收到控制消息") from None
            except (ConnectionError, OSError) as e:
                raise TransportError(f"控制流读取失败: {e}") from e

            if message is None:
                return

            logger.debug(f"收到控制消息: type={message.msg_type.name}, len={len(message.payload)}")
            if message.msg_type == MsgType.KEEPALIVE:
                continue
            if message.msg_type == MsgType.HELLO:
                raise ProtocolError("重复的 HELLO 消息")
            if message.msg_type == MsgType.TUNNEL_DATA_OPEN:
                await self._on_data_open(message)
            elif message.msg_type == MsgType.TUNNEL_DATA_OPEN_ACK:
                self._on_data_open_ack(message)
            elif message.msg_type == MsgType.TUNNEL_CLOSE:
                self._on_tunnel_close(message)
            else:
                await self.handle_message(message)

    async def _keepalive_loop(self):
        while True:
            await asyncio.sleep(self.config.keepalive_interval)
            await self.send_message(ControlMessage.keepalive())

    @abstractmethod
    async def handle_message(self, message: ControlMessage):
        """
        处理隧道请求相关的控制消息

        Args:
            message: TUNNEL_REQUEST / TUNNEL_ACCEPT / TUNNEL_REJECT

        Raises:
            ProtocolError: 本端不应收到该消息
        """

    # ------------------------------------------------------------------
    # 数据流
    # ------------------------------------------------------------------

    async def _accept_loop(self):
        """接受对端打开的数据流，连接断开时结束会话"""
        while True:
            stream = await self.connection.accept_stream()
            if stream is None:
                logger.debug("传输连接已断开")
                return
            self.spawn(self._route_stream(stream))

    async def _route_stream(self, stream: Stream):
        """读取数据流头部，交给等待该连接 ID 的任务"""
        try:
            kind, connection_id = await asyncio.wait_for(
                read_stream_header(stream.reader), timeout=self.config.open_timeout)
        except (ProtocolError, asyncio.TimeoutError) as e:
            logger.warning(f"无效的数据流: {e!r}")
            stream.close()
            return

        future = self._pending_streams.get(connection_id)
        if kind != StreamKind.DATA or future is None or future.done():
            logger.warning(f"未预期的数据流: kind={kind.name}, connection_id={connection_id}")
            stream.close()
            return
        future.set_result(stream)

    # ------------------------------------------------------------------
    # 转发连接
    # ------------------------------------------------------------------

    def _allocate_connection_id(self) -> int:
        connection_id = self._next_connection_id
        self._next_connection_id += 2
        return connection_id

    def _is_peer_connection_id(self, connection_id: int) -> bool:
        # 请求方使用奇数 ID，响应方使用偶数 ID
        return connection_id % 2 == (0 if self.is_requester else 1)

    def connects_for(self, spec: TunnelSpec) -> bool:
        """本端是否负责为该隧道连接目标地址"""
        return spec.is_remote == self.is_requester

    async def start_listener(self, spec: TunnelSpec) -> asyncio.AbstractServer:
        """
        为隧道启动本地监听器

        Raises:
            OSError: 绑定失败
        """
        async def on_client(reader, writer):
            await self._handle_local_client(spec, reader, writer)

        server = await asyncio.start_server(on_client, spec.bind_host, spec.bind_port)
        self.listeners[spec.tunnel_id] = server
        addr = server.sockets[0].getsockname()
        logger.info(f"隧道监听: {spec} on {addr[0]}:{addr[1]}")
        return server

    async def _handle_local_client(self, spec: TunnelSpec, reader: asyncio.StreamReader,
                                   writer: asyncio.StreamWriter):
        """
        处理监听器接受的一个连接

        这是单个连接的错误边界: 任何错误只关闭该连接。
        """
        task = asyncio.current_task()
        self._tasks.add(task)
        peer = writer.get_extra_info('peername')
        try:
            if self.closed:
                return
            request = None
            if spec.is_dynamic:
                request = await asyncio.wait_for(socks.read_request(reader, writer),
                                                 timeout=self.config.handshake_timeout)
                host, port = request.host, request.port
                logger.info(f"SOCKS{request.version} CONNECT {host}:{port} (tunnel={spec.tunnel_id}, client={peer})")
            else:
                host, port = spec.target_host, spec.target_port
            await self.open_connection(spec, reader, writer, host, port, request)
        except SocksError as e:
            logger.info(f"SOCKS 握手失败: client={peer}, error={e}")
        except asyncio.TimeoutError:
            logger.info(f"SOCKS 握手超时: client={peer}")
        except (PortalError, OSError) as e:
            logger.warning(f"转发连接失败: tunnel={spec.tunnel_id}, client={peer}, error={e!r}")
        finally:
            self._tasks.discard(task)
            if not writer.is_closing():
                writer.close()

    async def open_connection(self, spec: TunnelSpec, reader: asyncio.StreamReader,
                              writer: asyncio.StreamWriter, host: str, port: int,
                              socks_request: Optional[socks.SocksRequest] = None):
        """
        为本地接受的连接请求对端打开转发连接

        流程: TUNNEL_DATA_OPEN -> 等待 ACK -> （回复 SOCKS 客户端）-> 打开数据流 -> 转发

        Args:
            spec: 隧道描述
            reader: 本地连接读取流
            writer: 本地连接写入流
            host: 目标主机
            port: 目标端口
            socks_request: SOCKS 请求（动态隧道）
        """
        connection_id = self._allocate_connection_id()
        conn = ForwardedConnection.create_outbound(connection_id, spec.tunnel_id, reader, writer, host, port)
        self.connections[connection_id] = conn
        future = asyncio.get_running_loop().create_future()
        self._pending_acks[connection_id] = future

        try:
            await self.send_message(ControlMessage.data_open(spec.tunnel_id, connection_id, host, port))
            try:
                error, message = await asyncio.wait_for(future, timeout=self.config.open_timeout)
            except asyncio.TimeoutError:
                error, message = OpenError.TIMEOUT, "等待 TUNNEL_DATA_OPEN_ACK 超时"
            finally:
                self._pending_acks.pop(connection_id, None)

            if socks_request is not None:
                await socks.send_reply(writer, socks_request, error)
            if error != OpenError.OK:
                logger.info(f"对端无法打开连接: {conn}, error={error.name}, {message}")
                return

            conn.stream = await self.connection.open_stream()
            conn.stream.writer.write(stream_header(StreamKind.DATA, connection_id))
            logger.info(f"连接已打开: {conn}")
            await self._run_forward(conn)
        finally:
            self.connections.pop(connection_id, None)
            await close_connection(conn)

    async def _on_data_open(self, message: ControlMessage):
        """
        处理对端的 TUNNEL_DATA_OPEN

        校验在分发循环中同步完成，连接目标在独立任务中进行。
        """
        tunnel_id, connection_id, host, port = message.parse_data_open()
        spec = self.tunnels.get(tunnel_id)

        error = OpenError.OK
        if not self._is_peer_connection_id(connection_id) or connection_id in self.connections \
                or connection_id in self._pending_streams:
            error = OpenError.GENERAL
        elif spec is None:
            error = OpenError.UNKNOWN_TUNNEL
        elif not self.connects_for(spec):
            error = OpenError.NOT_ALLOWED
        elif not spec.is_dynamic and (host, port) != (spec.target_host, spec.target_port):
            error = OpenError.NOT_ALLOWED

        if error != OpenError.OK:
            logger.warning(f"拒绝 TUNNEL_DATA_OPEN: tunnel={tunnel_id}, connection={connection_id}, "
                           f"target={host}:{port}, error={error.name}")
            await self.send_message(ControlMessage.data_open_ack(connection_id, error))
            return

        self._pending_streams[connection_id] = asyncio.get_running_loop().create_future()
        self.spawn(self._connect_inbound(spec, connection_id, host, port))

    async def _connect_inbound(self, spec: TunnelSpec, connection_id: int, host: str, port: int):
        """连接目标地址，回复 ACK，等待数据流后开始转发"""
        future = self._pending_streams[connection_id]
        conn = None
        try:
            try:
                reader, writer = await connect_to_target(host, port, self.config.connect_timeout)
            except ForwardError as e:
                await self.send_message(ControlMessage.data_open_ack(connection_id, OpenError(e.code), str(e)))
                return

            conn = ForwardedConnection.create_inbound(connection_id, spec.tunnel_id, reader, writer, host, port)
            self.connections[connection_id] = conn
            await self.send_message(ControlMessage.data_open_ack(connection_id))

            try:
                conn.stream = await asyncio.wait_for(future, timeout=self.config.open_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"等待数据流超时: {conn}")
                return

            logger.info(f"连接已打开: {conn}")
            await self._run_forward(conn)
        except PortalError as e:
            logger.warning(f"入站连接失败: connection={connection_id}, error={e!r}")
        finally:
            self._pending_streams.pop(connection_id, None)
            if conn is not None:
                self.connections.pop(connection_id, None)
                await close_connection(conn)

    def _on_data_open_ack(self, message: ControlMessage):
        connection_id, error, text = message.parse_data_open_ack()
        future = self._pending_acks.get(connection_id)
        if future is None or future.done():
            logger.debug(f"忽略未预期的 ACK: connection={connection_id}")
            return
        future.set_result((error, text))

    def _on_tunnel_close(self, message: ControlMessage):
        """对端已结束该连接，宽限期后仍未结束则取消"""
        connection_id = message.parse_tunnel_close()
        conn = self.connections.get(connection_id)
        if conn is None or conn.task is None or conn.task.done():
            return
        logger.debug(f"对端关闭连接: {conn}")
        asyncio.get_running_loop().call_later(self.config.grace_period, conn.task.cancel)

    async def _run_forward(self, conn: ForwardedConnection):
        """转发数据，结束后通知对端"""
        conn.task = asyncio.current_task()
        try:
            sent, received = await forward(conn, self.config.grace_period, self.config.buffer_size)
            logger.info(f"连接已结束: {conn}, sent={sent}, received={received}")
        finally:
            if not self.closed and conn.state == ConnState.CLOSED:
                try:
                    await self.send_message(ControlMessage.tunnel_close(conn.connection_id))
                except PortalError as e:
                    logger.debug(f"发送 TUNNEL_CLOSE 失败: {e}")
