"""
UDP 关联

把一个 UDP 流适配器和一次 SOCKS5 UDP ASSOCIATE 配对：
1. setup(): 在控制连接上完成 UDP ASSOCIATE，拿到中继端点，
   创建连接到该端点的 UDP 数据套接字
2. run(): 并发运行两个方向泵
   - 出站: 应用数据报 -> SOCKS5 封装 -> 中继端点
   - 入站: 中继端点 -> 解封装 -> 以原始来源地址交付给应用
3. close(): 关闭控制连接和数据套接字（幂等）

控制连接在整个关联期间保持打开；代理关闭控制连接即表示绑定失效，关联随之结束。
格式错误的入站数据报会被丢弃并记录日志，不影响关联。
"""

import asyncio
import logging
from typing import Callable, Optional, Tuple

from .errors import AssociationFailed, FlowError, HandshakeError, ProtocolError, RelayError
from .flow import Endpoint, FlowIdentity, ProxyEndpoint, UDPFlow
from .session import ControlConnection, SOCKS5ClientSession
from .socks5 import decode_udp_envelope, encode_udp_envelope

logger = logging.getLogger('flowrelay.udp')


class _RelaySocketProtocol(asyncio.DatagramProtocol):
    """把收到的数据报放入队列，连接丢失时放入 None 唤醒接收者"""

    def __init__(self):
        self.queue: asyncio.Queue = asyncio.Queue()
        self.transport: Optional[asyncio.DatagramTransport] = None

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data: bytes, addr):
        self.queue.put_nowait(data)

    def error_received(self, exc):
        logger.warning(f"UDP 中继套接字错误: {exc}")

    def connection_lost(self, exc):
        self.queue.put_nowait(None)


class UDPAssociation:
    """
    UDP 关联

    Attributes:
        flow: 应用侧 UDP 流适配器
        proxy: 上游代理地址
        identity: 流标识
        control: UDP ASSOCIATE 使用的控制连接（setup 后可用）
        relay_host: 实际发送数据报的中继地址（setup 后可用）
        relay_port: 中继端口（setup 后可用）
    """

    def __init__(self, flow: UDPFlow, proxy: ProxyEndpoint,
                 identity: Optional[FlowIdentity] = None,
                 session: Optional[SOCKS5ClientSession] = None,
                 on_close: Optional[Callable[[FlowIdentity], None]] = None,
                 stats=None):
        self.flow = flow
        self.proxy = proxy
        self.identity = identity or flow.identity()
        self.session = session or SOCKS5ClientSession(proxy)
        self.on_close = on_close
        self.stats = stats

        self.control: Optional[ControlConnection] = None
        self.relay_host: Optional[str] = None
        self.relay_port: Optional[int] = None
        self._transport: Optional[asyncio.DatagramTransport] = None
        self._protocol: Optional[_RelaySocketProtocol] = None
        self._closed = False

        self.datagrams_up = 0
        self.datagrams_down = 0
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    async def setup(self):
        """
        建立 UDP 关联并绑定数据套接字

        Raises:
            AssociationFailed: 握手或套接字创建失败，code 为 SOCKS5 错误码（无则为 None）
        """
        try:
            result = await self.session.associate_udp()
        except HandshakeError as e:
            raise AssociationFailed(f"UDP ASSOCIATE 失败: {e}", code=e.code) from e
        except RelayError as e:
            raise AssociationFailed(f"UDP ASSOCIATE 失败: {e}") from e

        self.control = result.control
        self.relay_host = result.relay_host
        self.relay_port = result.relay_port
        if self._closed:
            await self.control.close()
            raise AssociationFailed("UDP 关联在建立期间被关闭")

        loop = asyncio.get_running_loop()
        try:
            self._transport, self._protocol = await loop.create_datagram_endpoint(
                _RelaySocketProtocol,
                remote_addr=(self.relay_host, self.relay_port)
            )
        except OSError as e:
            await self.control.close()
            raise AssociationFailed(
                f"无法连接 UDP 中继 {self.relay_host}:{self.relay_port}: {e}"
            ) from e
        logger.info(f"UDP 关联就绪: {self.identity} -> 中继 {self.relay_host}:{self.relay_port}")

    async def send_datagram(self, payload: bytes, dest_host: str, dest_port: int):
        """封装并发送一个数据报到中继端点"""
        if self._closed or self._transport is None:
            raise FlowError("UDP 关联已关闭")
        self._transport.sendto(encode_udp_envelope(dest_host, dest_port, payload))
        self.datagrams_up += 1
        if self.stats:
            self.stats.add_bytes(up=len(payload))

    async def receive_datagram(self) -> Optional[Tuple[bytes, str, int]]:
        """
        接收一个入站数据报

        格式错误的封装会被丢弃，继续等待下一个。

        Returns:
            (载荷, 来源主机, 来源端口)，关联关闭后返回 None
        """
        while True:
            if self._protocol is None:
                return None
            data = await self._protocol.queue.get()
            if data is None:
                # 唤醒其他可能的等待者
                self._protocol.queue.put_nowait(None)
                return None
            try:
                datagram = decode_udp_envelope(data)
            except ProtocolError as e:
                self.dropped += 1
                logger.warning(f"丢弃无效的 UDP 数据报 ({len(data)} 字节): {e}")
                continue
            self.datagrams_down += 1
            if self.stats:
                self.stats.add_bytes(down=len(datagram.payload))
            return datagram.payload, datagram.host, datagram.port

    async def run(self):
        """运行出站泵、入站泵和控制连接监视，直到关联结束"""
        if self._transport is None:
            await self.setup()
        await self.flow.open()

        outbound = asyncio.create_task(self._pump_outbound())
        inbound = asyncio.create_task(self._pump_inbound())
        watcher = asyncio.create_task(self._watch_control())
        try:
            await asyncio.gather(outbound, inbound)
        except asyncio.CancelledError:
            outbound.cancel()
            inbound.cancel()
            await asyncio.gather(outbound, inbound, return_exceptions=True)
            raise
        finally:
            watcher.cancel()
            await asyncio.gather(watcher, return_exceptions=True)
            await self.close()
            await self.flow.close()
            logger.info(f"UDP 关联结束: {self.identity} "
                        f"(上行 {self.datagrams_up} 个, 下行 {self.datagrams_down} 个, "
                        f"丢弃 {self.dropped} 个)")
            if self.on_close:
                self.on_close(self.identity)

    async def _pump_outbound(self):
        """应用 -> 中继"""
        try:
            while True:
                datagrams = await self.flow.read_datagrams()
                if not datagrams:
                    logger.debug(f"应用端关闭 UDP 流: {self.identity}")
                    break
                for payload, destination in datagrams:
                    destination = destination or self.identity.remote_endpoint
                    if destination is None:
                        logger.warning(f"数据报缺少目标地址,已丢弃: {self.identity}")
                        continue
                    try:
                        await self.send_datagram(payload, destination.host, destination.port)
                    except ProtocolError as e:
                        logger.warning(f"无法封装发往 {destination} 的数据报: {e}")
        except (FlowError, ConnectionError, OSError) as e:
            logger.warning(f"应用 -> 中继 转发中断: {self.identity}: {e}")
            await self.flow.close_read()
        finally:
            # UDP 没有半关闭，应用停止发送即结束关联
            await self.close()

    async def _pump_inbound(self):
        """中继 -> 应用"""
        try:
            while True:
                received = await self.receive_datagram()
                if received is None:
                    break
                payload, host, port = received
                await self.flow.write_datagrams([(payload, Endpoint(host, port))])
        except (FlowError, ConnectionError, OSError) as e:
            # 失败的是向应用写入，关闭流的写方向；中继套接字由 close() 统一释放
            logger.warning(f"中继 -> 应用 转发中断: {self.identity}: {e}")
        finally:
            await self.flow.close_write()
            # 关联已关闭时唤醒阻塞在 read_datagrams() 上的出站泵
            if self._closed:
                await self.flow.close_read()

    async def _watch_control(self):
        """控制连接被代理关闭时结束关联"""
        try:
            while True:
                data = await self.control.read(4096)
                if not data:
                    break
                logger.debug(f"忽略控制连接上的 {len(data)} 字节数据")
        except (ConnectionError, OSError) as e:
            logger.debug(f"控制连接读取失败: {e}")
        if not self._closed:
            logger.info(f"代理关闭了 UDP 控制连接,关联失效: {self.identity}")
            await self.close()
            await self.flow.close_read()

    async def close(self):
        """关闭控制连接和数据套接字，可重复调用"""
        if self._closed:
            return
        self._closed = True
        if self._transport is not None:
            self._transport.close()
        elif self._protocol is not None:
            self._protocol.queue.put_nowait(None)
        if self.control is not None:
            await self.control.close()
