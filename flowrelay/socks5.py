"""
SOCKS5 协议编解码模块

本模块只包含纯函数，不做任何 I/O，负责 SOCKS5 客户端所需的全部线路格式：
- 问候消息（仅支持无认证）
- CONNECT 请求
- UDP ASSOCIATE 请求
- 命令回复解析
- UDP 数据报封装

问候消息:
┌─────────┬──────────┬──────────┐
│  VER    │ NMETHODS │ METHODS  │
│ 1 字节  │  1 字节  │  1 字节  │
└─────────┴──────────┴──────────┘

命令请求 / 回复:
┌─────────┬─────────────┬─────────┬─────────┬──────────┬──────────┐
│  VER    │ CMD / REP   │  RSV    │  ATYP   │   ADDR   │   PORT   │
│ 1 字节  │   1 字节    │ 1 字节  │ 1 字节  │  可变    │  2 字节  │
└─────────┴─────────────┴─────────┴─────────┴──────────┴──────────┘

UDP 封装:
┌─────────┬─────────┬─────────┬──────────┬──────────┬──────────┐
│  RSV    │  FRAG   │  ATYP   │   ADDR   │   PORT   │   DATA   │
│ 2 字节  │ 1 字节  │ 1 字节  │  可变    │  2 字节  │  可变    │
└─────────┴─────────┴─────────┴──────────┴──────────┴──────────┘

所有多字节字段使用大端序（网络字节序）。
"""

import socket
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional, Tuple

from .errors import (
    HandshakeRejected,
    InvalidAddress,
    InvalidDatagram,
    InvalidReply,
    TruncatedReply,
)


# ============================================================================
# SOCKS5 协议常量
# ============================================================================

class SOCKS5:
    """SOCKS5 代理协议常量定义"""
    VERSION = 0x05              # SOCKS5 协议版本
    AUTH_NONE = 0x00            # 无需认证
    AUTH_NO_ACCEPTABLE = 0xFF   # 没有可接受的认证方法
    CMD_CONNECT = 0x01          # 连接命令
    CMD_BIND = 0x02             # 绑定命令（不支持）
    CMD_UDP_ASSOCIATE = 0x03    # UDP 关联命令
    ATYP_IPV4 = 0x01            # IPv4 地址类型
    ATYP_DOMAIN = 0x03          # 域名地址类型
    ATYP_IPV6 = 0x04            # IPv6 地址类型
    REP_SUCCESS = 0x00          # 成功响应
    RSV = 0x00                  # 保留字节


class ReplyCode(IntEnum):
    """SOCKS5 回复码（回复字节 1）"""
    SUCCEEDED = 0x00
    GENERAL_FAILURE = 0x01
    NOT_ALLOWED = 0x02
    NETWORK_UNREACHABLE = 0x03
    HOST_UNREACHABLE = 0x04
    CONNECTION_REFUSED = 0x05
    TTL_EXPIRED = 0x06
    COMMAND_NOT_SUPPORTED = 0x07
    ADDRESS_TYPE_NOT_SUPPORTED = 0x08


REPLY_DESCRIPTIONS = {
    ReplyCode.SUCCEEDED: "成功",
    ReplyCode.GENERAL_FAILURE: "代理服务器一般性故障",
    ReplyCode.NOT_ALLOWED: "规则不允许的连接",
    ReplyCode.NETWORK_UNREACHABLE: "网络不可达",
    ReplyCode.HOST_UNREACHABLE: "主机不可达",
    ReplyCode.CONNECTION_REFUSED: "连接被拒绝",
    ReplyCode.TTL_EXPIRED: "TTL 已过期",
    ReplyCode.COMMAND_NOT_SUPPORTED: "不支持的命令",
    ReplyCode.ADDRESS_TYPE_NOT_SUPPORTED: "不支持的地址类型",
}

# 地址为 IPv4 时的最短回复长度: VER + REP + RSV + ATYP + 4 + 2
MIN_REPLY_SIZE = 10
# 读取回复时先读取的字节数，足以判断完整回复长度
REPLY_PREFIX_SIZE = 5
# UDP 封装头部（RSV + FRAG + ATYP）
UDP_HEADER_SIZE = 4

# 表示"由代理自行选择"的未指定地址
UNSPECIFIED_ADDRESSES = ('0.0.0.0', '::', '')


def describe_reply(code: int) -> str:
    """返回回复码的可读描述"""
    try:
        return REPLY_DESCRIPTIONS[ReplyCode(code)]
    except ValueError:
        return f"未知错误码 0x{code:02x}"


# ============================================================================
# 数据结构
# ============================================================================

@dataclass
class CommandReply:
    """
    命令回复

    Attributes:
        success: REP 为 0x00 时为 True
        error_code: REP 字节
        bound_address: 代理绑定的地址（失败回复可能缺失）
        bound_port: 代理绑定的端口
    """
    success: bool
    error_code: int
    bound_address: Optional[str] = None
    bound_port: int = 0


@dataclass
class UDPDatagram:
    """解封装后的 UDP 数据报"""
    host: str
    port: int
    payload: bytes


# ============================================================================
# 地址编解码
# ============================================================================

def _encode_domain(host: str, port: int) -> bytes:
    """
    以域名形式编码地址

    格式: ATYP(0x03) + 长度(1B) + 主机名 + 端口(2B)
    """
    if not isinstance(port, int) or not 0 <= port <= 0xFFFF:
        raise InvalidAddress(f"端口超出范围: {port}")
    host_bytes = host.encode('utf-8')
    if not host_bytes:
        raise InvalidAddress("主机名为空")
    if len(host_bytes) > 255:
        raise InvalidAddress(f"主机名过长: {len(host_bytes)} 字节")
    return (struct.pack('>BB', SOCKS5.ATYP_DOMAIN, len(host_bytes))
            + host_bytes + struct.pack('>H', port))


def _decode_address(data: bytes, offset: int, error_cls) -> Tuple[str, int, int]:
    """
    从 offset 处（指向 ATYP）解析地址和端口

    Returns:
        (主机, 端口, 地址结束后的偏移)
    """
    if len(data) < offset + 1:
        raise error_cls("缺少地址类型字段")
    atyp = data[offset]
    offset += 1

    if atyp == SOCKS5.ATYP_IPV4:
        end = offset + 4
        if len(data) < end + 2:
            raise error_cls(f"IPv4 地址需要 {end + 2} 字节，实际 {len(data)} 字节")
        host = socket.inet_ntoa(data[offset:end])
    elif atyp == SOCKS5.ATYP_DOMAIN:
        if len(data) < offset + 1:
            raise error_cls("缺少域名长度字段")
        length = data[offset]
        offset += 1
        end = offset + length
        if len(data) < end + 2:
            raise error_cls(f"域名地址需要 {end + 2} 字节，实际 {len(data)} 字节")
        host = data[offset:end].decode('utf-8', errors='replace')
    elif atyp == SOCKS5.ATYP_IPV6:
        end = offset + 16
        if len(data) < end + 2:
            raise error_cls(f"IPv6 地址需要 {end + 2} 字节，实际 {len(data)} 字节")
        host = socket.inet_ntop(socket.AF_INET6, data[offset:end])
    else:
        raise InvalidReply(f"未知的地址类型: {atyp}")

    port = struct.unpack('>H', data[end:end + 2])[0]
    return host, port, end + 2


# ============================================================================
# 问候
# ============================================================================

def encode_greeting() -> bytes:
    """创建问候消息: 版本 5，1 种方法，无认证"""
    return bytes([SOCKS5.VERSION, 0x01, SOCKS5.AUTH_NONE])


def decode_greeting_reply(data: bytes) -> None:
    """
    校验问候回复

    Args:
        data: 代理返回的 2 字节回复

    Raises:
        HandshakeRejected: 版本不是 5 或代理未选择无认证
    """
    if len(data) < 2:
        raise HandshakeRejected(f"问候回复过短: {len(data)} 字节")
    if data[0] != SOCKS5.VERSION:
        raise HandshakeRejected(f"无效的 SOCKS 版本: {data[0]}")
    if data[1] != SOCKS5.AUTH_NONE:
        raise HandshakeRejected(f"代理未接受无认证方式: 0x{data[1]:02x}")


# ============================================================================
# 命令
# ============================================================================

def encode_connect_request(host: str, port: int) -> bytes:
    """
    创建 CONNECT 请求

    Args:
        host: 目标主机名（始终按域名编码）
        port: 目标端口

    Returns:
        bytes: 05 01 00 03 + 长度 + 主机名 + 端口
    """
    return (bytes([SOCKS5.VERSION, SOCKS5.CMD_CONNECT, SOCKS5.RSV])
            + _encode_domain(host, port))


def encode_udp_associate_request() -> bytes:
    """创建 UDP ASSOCIATE 请求，地址和端口全为零，由代理选择中继端点"""
    return (bytes([SOCKS5.VERSION, SOCKS5.CMD_UDP_ASSOCIATE, SOCKS5.RSV, SOCKS5.ATYP_IPV4])
            + b'\x00' * 4 + b'\x00' * 2)


def command_reply_length(prefix: bytes) -> int:
    """
    根据回复的前 5 个字节计算完整回复长度

    Args:
        prefix: 回复的前 REPLY_PREFIX_SIZE 个字节

    Returns:
        int: 完整回复的字节数
    """
    if len(prefix) < REPLY_PREFIX_SIZE:
        raise TruncatedReply(f"回复前缀过短: {len(prefix)} 字节")
    atyp = prefix[3]
    if atyp == SOCKS5.ATYP_IPV4:
        return MIN_REPLY_SIZE
    if atyp == SOCKS5.ATYP_DOMAIN:
        return 4 + 1 + prefix[4] + 2
    if atyp == SOCKS5.ATYP_IPV6:
        return 4 + 16 + 2
    raise InvalidReply(f"未知的地址类型: {atyp}")


def decode_command_reply(data: bytes) -> CommandReply:
    """
    解析 CONNECT / UDP ASSOCIATE 的回复

    成功回复必须包含完整的绑定地址；失败回复只需要 VER 和 REP，
    地址存在时一并解析。

    Args:
        data: 代理返回的回复

    Returns:
        CommandReply: 解析结果

    Raises:
        TruncatedReply: 数据少于地址类型要求的长度
        InvalidReply: 版本号或地址类型无效
    """
    if len(data) < 2:
        raise TruncatedReply(f"回复过短: {len(data)} 字节")
    if data[0] != SOCKS5.VERSION:
        raise InvalidReply(f"无效的 SOCKS 版本: {data[0]}")

    code = data[1]
    if code != SOCKS5.REP_SUCCESS:
        reply = CommandReply(success=False, error_code=code)
        try:
            reply.bound_address, reply.bound_port, _ = _decode_address(data, 3, TruncatedReply)
        except (TruncatedReply, InvalidReply):
            pass
        return reply

    if len(data) < MIN_REPLY_SIZE:
        raise TruncatedReply(f"回复至少需要 {MIN_REPLY_SIZE} 字节，实际 {len(data)} 字节")
    host, port, _ = _decode_address(data, 3, TruncatedReply)
    return CommandReply(success=True, error_code=code, bound_address=host, bound_port=port)


def resolve_relay_host(bound_address: Optional[str], proxy_host: str) -> str:
    """
    计算实际的 UDP 中继地址

    代理返回未指定地址（0.0.0.0 或 ::）时，使用配置的代理主机。
    """
    if bound_address is None or bound_address in UNSPECIFIED_ADDRESSES:
        return proxy_host
    return bound_address


# ============================================================================
# UDP 封装
# ============================================================================

def encode_udp_envelope(host: str, port: int, payload: bytes) -> bytes:
    """
    将载荷封装为 SOCKS5 UDP 数据报

    Args:
        host: 目标主机
        port: 目标端口
        payload: 应用数据

    Returns:
        bytes: RSV(2) + FRAG(1) + 地址 + 端口 + 载荷
    """
    return b'\x00\x00\x00' + _encode_domain(host, port) + bytes(payload)


def decode_udp_envelope(data: bytes) -> UDPDatagram:
    """
    解析 SOCKS5 UDP 数据报

    Raises:
        InvalidDatagram: FRAG 非零、地址类型未知或字段超出缓冲区
    """
    if len(data) < UDP_HEADER_SIZE:
        raise InvalidDatagram(f"数据报过短: {len(data)} 字节")
    frag = data[2]
    if frag != 0:
        raise InvalidDatagram(f"不支持分片: FRAG={frag}")
    try:
        host, port, offset = _decode_address(data, 3, InvalidDatagram)
    except InvalidReply as e:
        raise InvalidDatagram(str(e)) from e
    return UDPDatagram(host=host, port=port, payload=bytes(data[offset:]))
