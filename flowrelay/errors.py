"""
中继引擎异常定义

本模块定义了整个中继引擎使用的异常层次结构：
- ConnectivityError: 无法连接到上游 SOCKS5 代理
- HandshakeError: 问候或命令被代理拒绝（保留具体的 SOCKS5 错误码）
- ProtocolError: 线路数据格式错误或被截断
- FlowError: 流适配器 I/O 失败
- RelayTimeout: 握手阶段等待超时

所有异常只影响出错的单个流，调度器和其他流不受影响。

使用示例:
    try:
        control = await session.connect_tcp("example.com", 443)
    except HandshakeError as e:
        logger.error(f"握手失败: {e} (错误码={e.code})")
"""

from typing import Optional


class RelayError(Exception):
    """中继引擎异常基类"""


class ConnectivityError(RelayError):
    """无法连接到上游代理"""


class HandshakeError(RelayError):
    """
    SOCKS5 握手失败

    Attributes:
        code: SOCKS5 回复码（REP 字节），问候阶段失败时为 None
    """

    def __init__(self, message: str = '', code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class HandshakeRejected(HandshakeError):
    """代理拒绝了问候消息（版本错误或不接受无认证方式）"""


class ConnectionRejected(HandshakeError):
    """代理拒绝了 CONNECT / UDP ASSOCIATE 命令"""


class Unreachable(HandshakeError):
    """代理报告目标网络或主机不可达"""


class AssociationFailed(HandshakeError):
    """UDP ASSOCIATE 建立失败"""


class ProtocolError(RelayError):
    """线路数据格式错误"""


class TruncatedReply(ProtocolError):
    """回复长度小于地址类型声明的长度"""


class InvalidReply(ProtocolError):
    """回复版本号或地址类型无效"""


class InvalidDatagram(ProtocolError):
    """UDP 封装无效（分片或字段越界）"""


class InvalidAddress(ProtocolError):
    """无法编码的主机名或端口"""


class FlowError(RelayError):
    """流适配器 I/O 失败"""


class RelayTimeout(RelayError):
    """等待超时"""


class HandshakeTimeout(RelayTimeout):
    """握手阶段读取超时"""


# 表示目标不可达的回复码: 网络不可达、主机不可达、TTL 过期
_UNREACHABLE_CODES = (0x03, 0x04, 0x06)


def error_for_reply(code: int, message: str = '') -> HandshakeError:
    """
    根据 SOCKS5 回复码构造对应的异常

    Args:
        code: 回复字节 1（REP），非零
        message: 附加描述

    Returns:
        HandshakeError: Unreachable 或 ConnectionRejected
    """
    if code in _UNREACHABLE_CODES:
        return Unreachable(message, code=code)
    return ConnectionRejected(message, code=code)
