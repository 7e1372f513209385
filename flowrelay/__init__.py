"""
按应用 SOCKS5 中继引擎

本包接管被拦截的本地流量（按应用的 TCP 流和 UDP 数据报序列），
通过上游 SOCKS5 代理转发：TCP 使用 CONNECT，UDP 使用 UDP ASSOCIATE，
握手完成后在流的整个生命周期内维持双向转发。

主要组件：
- socks5: SOCKS5 编解码（纯函数）
- flow: 流模型与流适配器
- session: SOCKS5 客户端会话
- tcp_relay: TCP 双向中继
- udp_relay: UDP 关联
- dispatcher: 流调度器

使用示例：
    from flowrelay import FlowDispatcher, RelayConfig, QueueTCPFlow, Endpoint

    dispatcher = FlowDispatcher(RelayConfig(proxy_host='127.0.0.1', socks_port=7891))
    flow = QueueTCPFlow('com.example.App', Endpoint('example.com', 443))
    claimed = await dispatcher.on_new_flow(flow)

宿主进程通常还会：
- 调用 flowrelay.logger.LoggerManager().initialize() 配置日志输出，
  自己的模块用 flowrelay.logger.get_logger('host') 记录到同一棵日志树
- 调用 dispatcher.start_stats_report() 按 relay.stats_interval 周期输出流统计
"""

from .errors import (
    AssociationFailed,
    ConnectionRejected,
    ConnectivityError,
    FlowError,
    HandshakeError,
    HandshakeRejected,
    HandshakeTimeout,
    InvalidDatagram,
    ProtocolError,
    RelayError,
    TruncatedReply,
    Unreachable,
)
from .flow import (
    Endpoint,
    FlowIdentity,
    PolicyDecision,
    ProtocolKind,
    ProxyEndpoint,
    QueueTCPFlow,
    QueueUDPFlow,
    StreamTCPFlow,
    TCPFlow,
    UDPFlow,
)
from .config import AppEntry, AppRule, RelayConfig, load_config

__version__ = '0.1.0'

# 延迟导入运行时组件
_LAZY = {
    'SOCKS5ClientSession': '.session',
    'ControlConnection': '.session',
    'TCPRelay': '.tcp_relay',
    'UDPAssociation': '.udp_relay',
    'FlowDispatcher': '.dispatcher',
    'FlowStats': '.stats',
}


def __getattr__(name):
    if name in _LAZY:
        import importlib
        module = importlib.import_module(_LAZY[name], __name__)
        return getattr(module, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    'AppEntry',
    'AppRule',
    'AssociationFailed',
    'ConnectionRejected',
    'ConnectivityError',
    'ControlConnection',
    'Endpoint',
    'FlowDispatcher',
    'FlowError',
    'FlowIdentity',
    'FlowStats',
    'HandshakeError',
    'HandshakeRejected',
    'HandshakeTimeout',
    'InvalidDatagram',
    'PolicyDecision',
    'ProtocolError',
    'ProtocolKind',
    'ProxyEndpoint',
    'QueueTCPFlow',
    'QueueUDPFlow',
    'RelayConfig',
    'RelayError',
    'SOCKS5ClientSession',
    'StreamTCPFlow',
    'TCPFlow',
    'TCPRelay',
    'TruncatedReply',
    'UDPAssociation',
    'UDPFlow',
    'Unreachable',
    'load_config',
]
