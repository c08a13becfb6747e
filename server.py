#!/usr/bin/env python3
"""
Portal 隧道服务器

版本: 1.0.0

工作模式:
1. 直连模式 (--listen [host][:port]): 监听 QUIC 连接，可同时服务多个客户端，
   每个客户端一个独立会话
2. 打洞模式 (--punch): 与一个对端交换连接码并打洞，只服务该对端

服务器是隧道响应方: 本地、动态隧道由服务器连接目标；远程隧道由服务器监听。

示例:
    python server.py --listen :5995 -s secret --allow-peer 10.0.0.0/8
    python server.py --punch
"""

import argparse
import asyncio
import logging
import sys

import transport
from config import (
    DEFAULT_PORT, IPWhitelist, PunchConfig, ServerConfig, SessionConfig, dump_server_config,
    load_config, load_punch_config, load_server_config, load_session_config, parse_address,
    save_config,
)
from errors import ConfigError, PortalError, PunchError
from logger import add_context, setup_logging
from punch import HolePuncher, read_peer_code
from tunnel.crypto import SessionCrypto
from tunnel.server import TunnelServer
from tunnel.session import TunnelSession

logger = logging.getLogger('portal-server')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Portal 隧道服务器')
    parser.add_argument('--config', '-c', default='config.yaml', help='配置文件路径')
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument('--listen', metavar='[HOST][:PORT]', default=None,
                      help=f'直连模式: 监听地址（默认端口 {DEFAULT_PORT}）')
    mode.add_argument('--punch', action='store_true', help='打洞模式: 使用连接码建立会话')
    parser.add_argument('--secret', '-s', default=None, help='直连模式的预共享密钥')
    parser.add_argument('--allow-peer', action='append', default=None, metavar='IP[/PREFIX]',
                        help='允许连接的对端地址（可重复，默认不限制）')
    parser.add_argument('--bind-port', type=int, default=None, help='打洞模式的本地 UDP 端口')
    parser.add_argument('--public-address', default=None, help='打洞模式的额外候选地址（如 NAT 外部地址）')
    parser.add_argument('--save-config', default=None, metavar='FILE', help='把生效的配置保存到文件')
    parser.add_argument('--debug', '-d', action='store_true', help='启用调试模式')
    return parser


def build_config(args, config_data):
    """
    合并配置文件和命令行参数（命令行优先）

    Returns:
        tuple: (ServerConfig, SessionConfig, PunchConfig)

    Raises:
        ConfigError: 配置无效
    """
    server = load_server_config(config_data)
    session = load_session_config(config_data)
    punch = load_punch_config(config_data)

    if args.listen:
        server.host, server.port = parse_address(args.listen, server.host, server.port)
    if args.secret:
        server.secret = args.secret
    if args.allow_peer:
        server.allowed_peers = list(args.allow_peer)
    # 提前校验白名单格式
    IPWhitelist(server.allowed_peers)

    if args.bind_port is not None:
        punch.bind_port = args.bind_port
    if args.public_address:
        punch.public_address = args.public_address
    return server, session, punch


async def run_punch(server: ServerConfig, session: SessionConfig, punch: PunchConfig) -> int:
    """打洞模式: 与一个对端建立会话并运行到结束"""
    puncher = HolePuncher(punch)
    code = await puncher.bind()
    add_context(session_id=code.session_id.hex()[:8])
    print(code.encode(), flush=True)

    try:
        remote_code = await read_peer_code()
        result = await puncher.punch(remote_code)
    except (PunchError, asyncio.CancelledError):
        puncher.close()
        raise

    if not IPWhitelist(server.allowed_peers).is_allowed(result.peer[0]):
        puncher.close()
        raise PunchError(f"对端不在白名单中: {result.peer[0]}")

    add_context(peer=f"{result.peer[0]}:{result.peer[1]}")
    crypto = SessionCrypto.from_punch_key(result.key)
    connection = await transport.connect_punched(
        result, crypto,
        handshake_timeout=session.handshake_timeout,
        idle_timeout=session.keepalive_timeout * 2,
    )
    await TunnelSession(connection, crypto, session, server, opens_control=result.is_leader).run()
    logger.info("会话已正常结束")
    return 0


async def run_server(server: ServerConfig, session: SessionConfig, punch: PunchConfig,
                     punch_mode: bool) -> int:
    """
    运行服务器

    直连模式下单个会话的错误不会结束进程；打洞模式只有一个会话，
    会话级错误报告一次后退出。

    Returns:
        int: 进程退出码
    """
    try:
        if punch_mode:
            return await run_punch(server, session, punch)
        await TunnelServer(server, session).serve_forever()
    except ConfigError as e:
        logger.error(f"配置错误: {e}")
        return 1
    except PortalError as e:
        logger.error(f"会话结束: {e}")
        return 1
    except OSError as e:
        logger.error(f"无法监听 {server.host}:{server.port}: {e}")
        return 1
    return 0


def main(argv=None) -> int:
    """主函数"""
    args = build_parser().parse_args(argv)

    try:
        config_data = load_config(args.config)
        setup_logging(config_data.get('logging'), debug=args.debug, role='server')
        server, session, punch = build_config(args, config_data)
    except ConfigError as e:
        logger.error(f"配置错误: {e}")
        return 1

    # 未配置预共享密钥时使用打洞模式
    punch_mode = args.punch or (not server.secret and not args.listen)
    if not punch_mode and not server.secret:
        logger.error("直连模式需要预共享密钥（--secret 或 server.secret）")
        return 1

    if args.save_config:
        if save_config(args.save_config, dump_server_config(server, session, punch)):
            logger.info(f"配置已保存到 {args.save_config}")

    mode = '打洞' if punch_mode else f'直连 {server.host}:{server.port}'
    logger.info(f"服务器配置: 模式={mode}, 白名单={server.allowed_peers or '不限制'}")

    try:
        return asyncio.run(run_server(server, session, punch, punch_mode))
    except KeyboardInterrupt:
        logger.info("服务端已停止")
        return 0


if __name__ == '__main__':
    sys.exit(main())
