"""
流模型与流适配器

本模块定义了中继引擎处理的数据模型和流适配器接口：
- Endpoint / ProxyEndpoint: 主机 + 端口
- FlowIdentity: 活跃流表的唯一键
- PolicyDecision: 每个流的代理策略
- TCPFlow / UDPFlow: 拦截层交给引擎的单个流的抽象

拦截层（平台相关）为每个流实现一个适配器，中继和会话逻辑只依赖这里的接口。
本模块同时提供三个通用实现：
- StreamTCPFlow: 基于 asyncio 流的 TCP 适配器（读方向由 ReadGate 控制）
- QueueTCPFlow / QueueUDPFlow: 基于内存队列的适配器，由宿主进程喂入数据
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

from .errors import FlowError

logger = logging.getLogger('flowrelay.flow')


# ============================================================================
# 数据模型
# ============================================================================

class ProtocolKind(str, Enum):
    """流的传输协议"""
    TCP = 'tcp'
    UDP = 'udp'


class PolicyDecision(Enum):
    """流的处理策略"""
    PROXY = 'proxy'     # 通过 SOCKS5 代理转发
    DIRECT = 'direct'   # 交还给系统直连
    REJECT = 'reject'   # 接管并立即关闭


@dataclass(frozen=True)
class Endpoint:
    """网络端点"""
    host: str
    port: int

    def __str__(self):
        if ':' in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class ProxyEndpoint:
    """上游 SOCKS5 代理地址，在中继生命周期内不可变"""
    host: str
    port: int

    def __str__(self):
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class FlowIdentity:
    """
    流标识

    活跃流表的唯一键，用于防止同一个元组出现重复的代理会话。

    Attributes:
        owner_app_id: 发起流量的应用标识（如签名标识或 bundle id）
        protocol: 传输协议
        local_endpoint: 本地端点（拦截层无法提供时为 None）
        remote_endpoint: 远程端点（无法解析时为 None）
    """
    owner_app_id: str
    protocol: ProtocolKind
    local_endpoint: Optional[Endpoint] = None
    remote_endpoint: Optional[Endpoint] = None

    def __str__(self):
        return (f"{self.protocol.value}:{self.owner_app_id} "
                f"{self.local_endpoint or '-'} -> {self.remote_endpoint or '-'}")


Datagram = Tuple[bytes, Endpoint]


# ============================================================================
# 适配器接口
# ============================================================================

class FlowAdapter(ABC):
    """
    单个被拦截流的抽象

    Attributes:
        owner_app_id: 所属应用标识
        remote_endpoint: 应用请求的远程端点
        local_endpoint: 应用的本地端点
    """

    protocol: ProtocolKind

    def __init__(self, owner_app_id: str,
                 remote_endpoint: Optional[Endpoint] = None,
                 local_endpoint: Optional[Endpoint] = None):
        self.owner_app_id = owner_app_id
        self.remote_endpoint = remote_endpoint
        self.local_endpoint = local_endpoint

    def identity(self) -> FlowIdentity:
        """返回该流的 FlowIdentity"""
        return FlowIdentity(
            owner_app_id=self.owner_app_id,
            protocol=self.protocol,
            local_endpoint=self.local_endpoint,
            remote_endpoint=self.remote_endpoint,
        )

    async def open(self):
        """代理握手成功后打开流，默认无操作"""

    @abstractmethod
    async def close_read(self):
        """关闭读方向，唤醒等待中的读取者"""

    @abstractmethod
    async def close_write(self):
        """关闭写方向"""

    async def close(self):
        """同时关闭两个方向"""
        await self.close_read()
        await self.close_write()


class TCPFlow(FlowAdapter):
    """TCP 字节流适配器"""

    protocol = ProtocolKind.TCP

    @abstractmethod
    async def read_chunk(self) -> bytes:
        """读取一块数据，对端半关闭时返回 b''"""

    @abstractmethod
    async def write_chunk(self, data: bytes):
        """向应用写入一块数据"""


class UDPFlow(FlowAdapter):
    """UDP 数据报序列适配器"""

    protocol = ProtocolKind.UDP

    @abstractmethod
    async def read_datagrams(self) -> List[Datagram]:
        """读取应用发出的 (载荷, 目标端点) 列表，流关闭时返回空列表"""

    @abstractmethod
    async def write_datagrams(self, datagrams: List[Datagram]):
        """将 (载荷, 来源端点) 列表交付给应用"""


# ============================================================================
# 通用实现
# ============================================================================

class ReadGate:
    """
    TCP 连接的读方向开关

    关闭读方向时不能向仍在收数据的 StreamReader 喂入 EOF，
    否则对端之后发来的数据会在 data_received 中触发断言并中止整条连接。
    关闭时暂停传输的读取并取消阻塞中的读取任务，读取者收到 b''。
    写方向不受影响。
    """

    def __init__(self, reader: asyncio.StreamReader, transport: asyncio.BaseTransport):
        self.reader = reader
        self.transport = transport
        self.closed = False
        self._pending: Optional[asyncio.Future] = None

    async def read(self, n: int) -> bytes:
        """读取最多 n 字节，读方向已关闭时返回 b''"""
        if self.closed:
            return b''
        task = asyncio.ensure_future(self.reader.read(n))
        self._pending = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            self._pending = None
        if task.cancelled():
            return b''
        return task.result()

    def close(self):
        if self.closed:
            return
        self.closed = True
        if not self.transport.is_closing() and self.transport.is_reading():
            self.transport.pause_reading()
        if self._pending is not None:
            self._pending.cancel()


class StreamTCPFlow(TCPFlow):
    """
    基于 asyncio 流的 TCP 适配器

    宿主进程已经持有应用侧连接的 StreamReader / StreamWriter 时使用。
    """

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                 owner_app_id: str, remote_endpoint: Optional[Endpoint] = None,
                 local_endpoint: Optional[Endpoint] = None, chunk_size: int = 65536):
        super().__init__(owner_app_id, remote_endpoint, local_endpoint)
        self.reader = reader
        self.writer = writer
        self.chunk_size = chunk_size
        self._gate = ReadGate(reader, writer.transport)
        self._write_closed = False

    async def read_chunk(self) -> bytes:
        try:
            return await self._gate.read(self.chunk_size)
        except (ConnectionError, OSError) as e:
            raise FlowError(f"读取应用数据失败: {e}") from e

    async def write_chunk(self, data: bytes):
        if self._write_closed:
            raise FlowError("写方向已关闭")
        try:
            self.writer.write(data)
            await self.writer.drain()
        except (ConnectionError, OSError) as e:
            raise FlowError(f"写入应用数据失败: {e}") from e

    async def close_read(self):
        if self._gate.closed:
            return
        self._gate.close()
        if self._write_closed:
            self.writer.close()

    async def close_write(self):
        if self._write_closed:
            return
        self._write_closed = True
        try:
            if self.writer.can_write_eof() and not self.writer.is_closing():
                self.writer.write_eof()
            else:
                self.writer.close()
        except (ConnectionError, OSError) as e:
            logger.debug(f"关闭应用写方向失败: {e}")
        if self._gate.closed:
            self.writer.close()


_EOF = object()


class QueueTCPFlow(TCPFlow):
    """
    基于内存队列的 TCP 适配器

    拦截层通过 feed() / feed_eof() 喂入应用发出的数据，
    通过 outbound 队列取走发给应用的数据（b'' 表示写方向已关闭）。
    """

    def __init__(self, owner_app_id: str, remote_endpoint: Optional[Endpoint] = None,
                 local_endpoint: Optional[Endpoint] = None):
        super().__init__(owner_app_id, remote_endpoint, local_endpoint)
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.outbound: asyncio.Queue = asyncio.Queue()
        self.opened = False
        self.read_closed = False
        self.write_closed = False

    def feed(self, data: bytes):
        """喂入应用发出的数据"""
        self.inbound.put_nowait(bytes(data))

    def feed_eof(self):
        """应用半关闭了写方向"""
        self.inbound.put_nowait(_EOF)

    async def open(self):
        self.opened = True

    async def read_chunk(self) -> bytes:
        if self.read_closed:
            return b''
        item = await self.inbound.get()
        if item is _EOF or not item:
            return b''
        return item

    async def write_chunk(self, data: bytes):
        if self.write_closed:
            raise FlowError("写方向已关闭")
        await self.outbound.put(bytes(data))

    async def close_read(self):
        if not self.read_closed:
            self.read_closed = True
            self.inbound.put_nowait(_EOF)

    async def close_write(self):
        if not self.write_closed:
            self.write_closed = True
            self.outbound.put_nowait(b'')


class QueueUDPFlow(UDPFlow):
    """
    基于内存队列的 UDP 适配器

    拦截层通过 feed(payload, endpoint) 喂入应用发出的数据报，
    通过 outbound 队列取走交付给应用的 (载荷, 来源端点)，None 表示写方向已关闭。
    """

    def __init__(self, owner_app_id: str, remote_endpoint: Optional[Endpoint] = None,
                 local_endpoint: Optional[Endpoint] = None):
        super().__init__(owner_app_id, remote_endpoint, local_endpoint)
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.outbound: asyncio.Queue = asyncio.Queue()
        self.opened = False
        self.read_closed = False
        self.write_closed = False

    def feed(self, payload: bytes, destination: Optional[Endpoint] = None):
        """喂入一个应用发出的数据报，未指定目标时使用流的远程端点"""
        self.inbound.put_nowait((bytes(payload), destination or self.remote_endpoint))

    def feed_eof(self):
        self.inbound.put_nowait(_EOF)

    async def open(self):
        self.opened = True

    async def read_datagrams(self) -> List[Datagram]:
        if self.read_closed:
            return []
        item = await self.inbound.get()
        if item is _EOF:
            return []
        datagrams = [item]
        # 一次取走队列中已就绪的全部数据报
        while not self.inbound.empty():
            item = self.inbound.get_nowait()
            if item is _EOF:
                self.inbound.put_nowait(_EOF)
                break
            datagrams.append(item)
        return datagrams

    async def write_datagrams(self, datagrams: List[Datagram]):
        if self.write_closed:
            raise FlowError("写方向已关闭")
        for datagram in datagrams:
            await self.outbound.put(datagram)

    async def close_read(self):
        if not self.read_closed:
            self.read_closed = True
            self.inbound.put_nowait(_EOF)

    async def close_write(self):
        if not self.write_closed:
            self.write_closed = True
            self.outbound.put_nowait(None)
