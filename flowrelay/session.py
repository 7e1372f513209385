"""
SOCKS5 客户端会话

本模块定义了 SOCKS5ClientSession 类，负责在到上游代理的控制连接上
完成握手并发出命令：
- CONNECT: 为 TCP 流建立隧道
- UDP ASSOCIATE: 为 UDP 流申请中继端点

状态机:
    INIT -> GREETING_SENT -> GREETING_ACKED -> COMMAND_SENT -> ESTABLISHED
                                                            \\-> FAILED

握手阶段的每次读取都有超时限制，超时后关闭控制连接并抛出 HandshakeTimeout。
会话内部不做任何重试。
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .errors import (
    ConnectivityError,
    HandshakeTimeout,
    RelayError,
    TruncatedReply,
    error_for_reply,
)
from .flow import ProxyEndpoint, ReadGate
from .socks5 import (
    REPLY_PREFIX_SIZE,
    CommandReply,
    command_reply_length,
    decode_command_reply,
    decode_greeting_reply,
    describe_reply,
    encode_connect_request,
    encode_greeting,
    encode_udp_associate_request,
    resolve_relay_host,
)

logger = logging.getLogger('flowrelay.session')

DEFAULT_HANDSHAKE_TIMEOUT = 10.0
DEFAULT_CONNECT_TIMEOUT = 10.0


class SessionState(Enum):
    """会话状态"""
    INIT = 'init'
    GREETING_SENT = 'greeting_sent'
    GREETING_ACKED = 'greeting_acked'
    COMMAND_SENT = 'command_sent'
    ESTABLISHED = 'established'
    FAILED = 'failed'


class ControlConnection:
    """
    到上游代理的 TCP 控制连接

    握手结束后，TCP 流的数据直接在这条连接上传输；
    UDP 关联期间这条连接必须保持打开，关闭即意味着代理端绑定失效。

    Attributes:
        reader: 异步流读取器
        writer: 异步流写入器
        proxy: 所连接的代理地址
    """

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                 proxy: Optional[ProxyEndpoint] = None):
        self.reader = reader
        self.writer = writer
        self.proxy = proxy
        self._gate = ReadGate(reader, writer.transport)
        self.write_closed = False
        self.closed = False

    @property
    def read_closed(self) -> bool:
        return self._gate.closed

    async def read(self, n: int = 65536) -> bytes:
        """读取最多 n 字节，EOF 或读方向已关闭时返回 b''"""
        return await self._gate.read(n)

    async def readexactly(self, n: int) -> bytes:
        return await self.reader.readexactly(n)

    async def write(self, data: bytes):
        """写入数据并等待缓冲区排空"""
        self.writer.write(data)
        await self.writer.drain()

    def close_read(self):
        """关闭读方向，写方向照常可用"""
        self._gate.close()

    def close_write(self):
        """半关闭写方向，向代理发送 FIN"""
        if self.write_closed:
            return
        self.write_closed = True
        try:
            if self.writer.can_write_eof() and not self.writer.is_closing():
                self.writer.write_eof()
        except (ConnectionError, OSError) as e:
            logger.debug(f"控制连接半关闭失败: {e}")

    async def close(self):
        """关闭整条连接，可重复调用"""
        if self.closed:
            return
        self.closed = True
        self.write_closed = True
        self._gate.close()
        try:
            self.writer.close()
            await asyncio.wait_for(self.writer.wait_closed(), timeout=2.0)
        except asyncio.TimeoutError:
            logger.warning("关闭控制连接超时,强制关闭")
            self.writer.transport.abort()
        except (ConnectionError, OSError) as e:
            logger.debug(f"关闭控制连接失败: {e}")

    def is_closing(self) -> bool:
        return self.closed or self.writer.is_closing()


@dataclass
class UDPAssociateResult:
    """
    UDP ASSOCIATE 结果

    Attributes:
        control: 控制连接，关联期间必须保持打开
        relay_host: 实际发送数据报的中继地址
        relay_port: 中继端口
    """
    control: ControlConnection
    relay_host: str
    relay_port: int


class SOCKS5ClientSession:
    """
    SOCKS5 客户端会话

    每个会话只驱动一次握手；握手成功后控制连接的所有权交给调用者。

    Attributes:
        proxy: 上游代理地址
        handshake_timeout: 每次握手读取的超时时间（秒）
        connect_timeout: 建立 TCP 连接的超时时间（秒）
        state: 当前状态
    """

    def __init__(self, proxy: ProxyEndpoint,
                 handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT,
                 connect_timeout: float = DEFAULT_CONNECT_TIMEOUT):
        self.proxy = proxy
        self.handshake_timeout = handshake_timeout
        self.connect_timeout = connect_timeout
        self.state = SessionState.INIT
        self.control: Optional[ControlConnection] = None
        self.reply: Optional[CommandReply] = None

    async def connect_tcp(self, host: str, port: int) -> ControlConnection:
        """
        通过 CONNECT 命令建立到目标的隧道

        Args:
            host: 目标主机
            port: 目标端口

        Returns:
            ControlConnection: 已建立的控制连接，之后直接用于传输数据

        Raises:
            ConnectivityError: 无法连接到代理
            HandshakeRejected: 问候被拒绝
            ConnectionRejected / Unreachable: 命令被拒绝
            HandshakeTimeout: 握手读取超时
        """
        request = encode_connect_request(host, port)
        await self._run(request, f"CONNECT {host}:{port}")
        logger.info(f"SOCKS5 握手成功: {host}:{port} (代理 {self.proxy})")
        return self.control

    async def associate_udp(self) -> UDPAssociateResult:
        """
        通过 UDP ASSOCIATE 命令申请中继端点

        Returns:
            UDPAssociateResult: 控制连接和中继地址，调用者必须在关联期间保持控制连接打开
        """
        await self._run(encode_udp_associate_request(), "UDP ASSOCIATE")
        relay_host = resolve_relay_host(self.reply.bound_address, self.proxy.host)
        if relay_host != self.reply.bound_address:
            logger.debug(f"代理返回未指定地址 {self.reply.bound_address},使用代理主机 {relay_host}")
        logger.info(f"UDP 关联成功: 中继 {relay_host}:{self.reply.bound_port} (代理 {self.proxy})")
        return UDPAssociateResult(
            control=self.control,
            relay_host=relay_host,
            relay_port=self.reply.bound_port,
        )

    async def greet_only(self):
        """只完成问候后关闭连接，用于探测代理是否可用"""
        if self.state != SessionState.INIT:
            raise RuntimeError(f"会话已使用过: {self.state.value}")
        try:
            await self._open_control()
            await self._greet()
        except (ConnectionError, OSError) as e:
            await self._fail()
            raise ConnectivityError(f"与代理 {self.proxy} 的连接中断: {e}") from e
        except BaseException:
            await self._fail()
            raise
        await self.control.close()

    async def _run(self, request: bytes, label: str):
        """驱动完整的握手流程，任何失败都关闭控制连接并进入 FAILED"""
        if self.state != SessionState.INIT:
            raise RuntimeError(f"会话已使用过: {self.state.value}")
        try:
            await self._open_control()
            await self._greet()
            self.reply = await self._command(request, label)
            self.state = SessionState.ESTABLISHED
        except asyncio.CancelledError:
            await self._fail()
            raise
        except RelayError:
            await self._fail()
            raise
        except (ConnectionError, OSError) as e:
            await self._fail()
            raise ConnectivityError(f"与代理 {self.proxy} 的连接中断: {e}") from e

    async def _open_control(self):
        logger.debug(f"连接代理 {self.proxy}")
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(self.proxy.host, self.proxy.port),
                timeout=self.connect_timeout
            )
        except asyncio.TimeoutError as e:
            raise ConnectivityError(f"连接代理 {self.proxy} 超时") from e
        except OSError as e:
            raise ConnectivityError(f"无法连接代理 {self.proxy}: {e}") from e
        self.control = ControlConnection(reader, writer, self.proxy)

    async def _greet(self):
        # 问候: 05 01 00，期望回复 05 00
        await self.control.write(encode_greeting())
        self.state = SessionState.GREETING_SENT
        data = await self._read_exactly(2)
        decode_greeting_reply(data)
        self.state = SessionState.GREETING_ACKED
        logger.debug("SOCKS5 问候完成")

    async def _command(self, request: bytes, label: str) -> CommandReply:
        await self.control.write(request)
        self.state = SessionState.COMMAND_SENT
        logger.debug(f"发送命令: {label}")

        prefix = await self._read_exactly(REPLY_PREFIX_SIZE)
        # 失败回复的地址类型可能无效，先检查回复码
        if prefix[1] != 0x00:
            reply = decode_command_reply(prefix)
        else:
            rest = await self._read_exactly(command_reply_length(prefix) - REPLY_PREFIX_SIZE)
            reply = decode_command_reply(prefix + rest)

        if not reply.success:
            raise error_for_reply(
                reply.error_code,
                f"{label} 被代理拒绝: {describe_reply(reply.error_code)}"
            )
        return reply

    async def _read_exactly(self, n: int) -> bytes:
        try:
            return await asyncio.wait_for(self.control.readexactly(n), timeout=self.handshake_timeout)
        except asyncio.TimeoutError as e:
            raise HandshakeTimeout(
                f"等待代理响应超时 ({self.handshake_timeout}s, 状态={self.state.value})"
            ) from e
        except asyncio.IncompleteReadError as e:
            raise TruncatedReply(
                f"代理提前关闭连接: 需要 {n} 字节,收到 {len(e.partial)} 字节"
            ) from e

    async def _fail(self):
        self.state = SessionState.FAILED
        if self.control:
            await self.control.close()
