#!/usr/bin/env python3
"""
Portal 隧道客户端

版本: 1.0.0

工作模式:
1. 直连模式 (--connect host[:port]): 通过 QUIC 连接服务器，使用预共享密钥认证
2. 打洞模式 (--punch): 输出本端连接码，读取对端连接码，UDP 打洞后在同一
   套接字上建立 QUIC 连接，密钥由双方连接码派生

隧道参数（与 ssh 相同的写法，可重复）:
    -L [bind_address:]port:host:hostport   本地转发
    -L [bind_address:]port                 本地 SOCKS 代理
    -R [bind_address:]port:host:hostport   远程转发
    -R [bind_address:]port                 远程 SOCKS 代理
    -D [bind_address:]port                 本地 SOCKS 代理

示例:
    python client.py --connect example.com -s secret -L 8080:localhost:80
    python client.py --punch -D 1080
"""

import argparse
import asyncio
import logging
import sys
from typing import List

import transport
from config import (
    DEFAULT_PORT, ClientConfig, PunchConfig, SessionConfig, dump_client_config, load_config,
    load_punch_config, load_session_config, parse_address, parse_tunnel_spec, save_config,
)
from errors import ConfigError, PortalError, PunchError
from logger import add_context, setup_logging
from protocol import TunnelSpec
from punch import HolePuncher, read_peer_code
from tunnel.client import TunnelClient
from tunnel.crypto import SessionCrypto

logger = logging.getLogger('portal-client')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Portal 隧道客户端')
    parser.add_argument('--config', '-c', default='config.yaml', help='配置文件路径')
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument('--connect', metavar='HOST[:PORT]', default=None,
                      help=f'直连模式: 服务器地址（默认端口 {DEFAULT_PORT}）')
    mode.add_argument('--punch', action='store_true', help='打洞模式: 使用连接码建立会话')
    parser.add_argument('--secret', '-s', default=None, help='直连模式的预共享密钥')
    # 三种隧道参数写入同一列表，保持命令行中的顺序
    parser.add_argument('-L', dest='tunnels', action='append', metavar='SPEC',
                        type=lambda text: ('L', text), help='本地转发或本地 SOCKS 代理')
    parser.add_argument('-R', dest='tunnels', action='append', metavar='SPEC',
                        type=lambda text: ('R', text), help='远程转发或远程 SOCKS 代理')
    parser.add_argument('-D', dest='tunnels', action='append', metavar='SPEC',
                        type=lambda text: ('D', text), help='本地 SOCKS 代理')
    parser.add_argument('--bind-port', type=int, default=None, help='打洞模式的本地 UDP 端口')
    parser.add_argument('--public-address', default=None, help='打洞模式的额外候选地址（如 NAT 外部地址）')
    parser.add_argument('--punch-timeout', type=float, default=None, help='打洞超时（秒）')
    parser.add_argument('--save-config', default=None, metavar='FILE', help='把生效的配置保存到文件')
    parser.add_argument('--debug', '-d', action='store_true', help='启用调试模式')
    return parser


def build_config(args, config_data):
    """
    合并配置文件和命令行参数（命令行优先）

    Returns:
        tuple: (ClientConfig, SessionConfig, PunchConfig)

    Raises:
        ConfigError: 配置无效
    """
    client = ClientConfig.from_dict(config_data.get('client'))
    session = load_session_config(config_data)
    punch = load_punch_config(config_data)

    if args.connect:
        client.server_host, client.server_port = parse_address(args.connect, None, client.server_port)
    if args.secret:
        client.secret = args.secret
    if args.tunnels:
        client.tunnels = [parse_tunnel_spec(flag, text, index)
                          for index, (flag, text) in enumerate(args.tunnels, start=1)]

    if args.bind_port is not None:
        punch.bind_port = args.bind_port
    if args.public_address:
        punch.public_address = args.public_address
    if args.punch_timeout is not None:
        punch.timeout = args.punch_timeout

    if not client.tunnels:
        raise ConfigError("未配置任何隧道（使用 -L / -R / -D 或配置文件 client.tunnels）")
    return client, session, punch


async def run_direct(client: ClientConfig, session: SessionConfig) -> TunnelClient:
    """直连模式: 连接服务器并创建会话"""
    if not client.secret:
        raise ConfigError("直连模式需要预共享密钥 (--secret)")
    crypto = SessionCrypto.from_secret(client.secret)
    connection = await transport.dial(
        client.server_host, client.server_port, crypto,
        handshake_timeout=session.handshake_timeout,
        idle_timeout=session.keepalive_timeout * 2,
    )
    add_context(peer=f"{client.server_host}:{client.server_port}")
    return TunnelClient(connection, crypto, session, client.tunnels, opens_control=True)


async def run_punch(client: ClientConfig, session: SessionConfig, punch: PunchConfig) -> TunnelClient:
    """打洞模式: 交换连接码、打洞并创建会话"""
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

    add_context(peer=f"{result.peer[0]}:{result.peer[1]}")
    crypto = SessionCrypto.from_punch_key(result.key)
    connection = await transport.connect_punched(
        result, crypto,
        handshake_timeout=session.handshake_timeout,
        idle_timeout=session.keepalive_timeout * 2,
    )
    return TunnelClient(connection, crypto, session, client.tunnels, opens_control=result.is_leader)


async def run_client(client: ClientConfig, session: SessionConfig, punch: PunchConfig,
                     punch_mode: bool) -> int:
    """
    建立会话并运行到结束

    会话级错误只报告一次，不自动重连。

    Returns:
        int: 进程退出码
    """
    try:
        if punch_mode:
            tunnel = await run_punch(client, session, punch)
        else:
            tunnel = await run_direct(client, session)
        await tunnel.run()
    except ConfigError as e:
        logger.error(f"配置错误: {e}")
        return 1
    except PortalError as e:
        logger.error(f"会话结束: {e}")
        return 1

    logger.info("会话已正常结束")
    return 0


def describe(specs: List[TunnelSpec]) -> str:
    return ', '.join(str(spec) for spec in specs)


def main(argv=None) -> int:
    """
    主函数 - 解析命令行参数并启动客户端

    Returns:
        int: 退出码（0 正常结束，1 配置错误或会话异常结束）
    """
    args = build_parser().parse_args(argv)

    try:
        config_data = load_config(args.config)
        setup_logging(config_data.get('logging'), debug=args.debug, role='client')
        client, session, punch = build_config(args, config_data)
    except ConfigError as e:
        logger.error(f"配置错误: {e}")
        return 1

    # 未配置服务器地址时使用打洞模式
    punch_mode = args.punch or not client.server_host

    if args.save_config:
        if save_config(args.save_config, dump_client_config(client, session, punch)):
            logger.info(f"配置已保存到 {args.save_config}")

    mode = '打洞' if punch_mode else f'直连 {client.server_host}:{client.server_port}'
    logger.info(f"客户端配置: 模式={mode}, 隧道=[{describe(client.tunnels)}]")

    try:
        return asyncio.run(run_client(client, session, punch, punch_mode))
    except KeyboardInterrupt:
        logger.info("收到键盘中断信号")
        return 0


if __name__ == '__main__':
    sys.exit(main())
