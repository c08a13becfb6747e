"""
Portal 隧道会话模块

本模块整合了隧道请求方和响应方的会话实现，提供统一的隧道接口。

主要功能包括：
- HELLO 握手（共享密钥认证）
- 控制消息的按序处理
- 隧道请求与监听器管理
- 转发连接的打开与关闭

使用示例：
    # 请求方（客户端）
    from tunnel import TunnelClient
    client = TunnelClient(connection, crypto, session_config, specs)
    await client.run()

    # 响应方（服务器）
    from tunnel import TunnelServer
    server = TunnelServer(server_config, session_config)
    await server.serve_forever()
"""

# 延迟导入，避免 transport 与 tunnel.crypto 之间的循环导入
def __getattr__(name):
    if name == 'BaseTunnel':
        from .base import BaseTunnel
        return BaseTunnel
    elif name == 'TunnelClient':
        from .client import TunnelClient
        return TunnelClient
    elif name == 'SessionCrypto':
        from .crypto import SessionCrypto
        return SessionCrypto
    elif name == 'TunnelSession':
        from .session import TunnelSession
        return TunnelSession
    elif name == 'TunnelServer':
        from .server import TunnelServer
        return TunnelServer
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    'BaseTunnel',
    'TunnelClient',
    'SessionCrypto',
    'TunnelSession',
    'TunnelServer',
]
