"""
TCP 中继

把一个已打开的 TCP 流适配器和一条已完成 CONNECT 的控制连接配对，
并发运行两个独立的方向泵：

    应用 -> 代理:  flow.read_chunk()   -> control.write()
    代理 -> 应用:  control.read()      -> flow.write_chunk()

每个泵读到 EOF 时关闭目标的写方向后退出；出现 I/O 错误时只关闭自己来源的
读方向后退出，绝不强行停止另一个泵。两个泵都结束后关闭控制连接并通知调用者
移除流表条目。
"""

import asyncio
import logging
from typing import Callable, Optional

from .errors import FlowError
from .flow import FlowIdentity, TCPFlow
from .session import ControlConnection

logger = logging.getLogger('flowrelay.tcp')


class TCPRelay:
    """
    TCP 双向中继

    Attributes:
        flow: 应用侧 TCP 流适配器
        control: 已建立的控制连接（由本实例独占）
        identity: 流标识
        chunk_size: 每次从控制连接读取的最大字节数
        bytes_up: 应用 -> 代理方向已转发字节数
        bytes_down: 代理 -> 应用方向已转发字节数
    """

    def __init__(self, flow: TCPFlow, control: ControlConnection,
                 identity: Optional[FlowIdentity] = None,
                 on_close: Optional[Callable[[FlowIdentity], None]] = None,
                 chunk_size: int = 65536, stats=None):
        self.flow = flow
        self.control = control
        self.identity = identity or flow.identity()
        self.on_close = on_close
        self.chunk_size = chunk_size
        self.stats = stats
        self.bytes_up = 0
        self.bytes_down = 0
        self.finished = asyncio.Event()

    async def run(self):
        """运行两个方向泵直到都结束，然后释放资源"""
        logger.info(f"开始双向转发: {self.identity}")
        upstream = asyncio.create_task(self._pump_flow_to_control())
        downstream = asyncio.create_task(self._pump_control_to_flow())
        try:
            await asyncio.gather(upstream, downstream)
        except asyncio.CancelledError:
            upstream.cancel()
            downstream.cancel()
            await asyncio.gather(upstream, downstream, return_exceptions=True)
            raise
        finally:
            await self._teardown()

    async def _pump_flow_to_control(self):
        """应用 -> 代理"""
        try:
            while True:
                data = await self.flow.read_chunk()
                if not data:
                    logger.debug(f"应用端半关闭: {self.identity}")
                    self.control.close_write()
                    break
                await self.control.write(data)
                self.bytes_up += len(data)
                if self.stats:
                    self.stats.add_bytes(up=len(data))
        except (FlowError, ConnectionError, OSError) as e:
            logger.warning(f"应用 -> 代理 转发中断: {self.identity}: {e}")
            await self.flow.close_read()

    async def _pump_control_to_flow(self):
        """代理 -> 应用"""
        try:
            while True:
                data = await self.control.read(self.chunk_size)
                if not data:
                    logger.debug(f"代理端半关闭: {self.identity}")
                    await self.flow.close_write()
                    break
                await self.flow.write_chunk(data)
                self.bytes_down += len(data)
                if self.stats:
                    self.stats.add_bytes(down=len(data))
        except (FlowError, ConnectionError, OSError) as e:
            logger.warning(f"代理 -> 应用 转发中断: {self.identity}: {e}")
            self.control.close_read()

    async def close(self):
        """
        中止中继

        关闭控制连接和流的两个方向，阻塞中的两个泵都会被唤醒并退出。
        """
        logger.debug(f"中止中继: {self.identity}")
        await self.control.close()
        await self.flow.close()

    async def _teardown(self):
        await self.control.close()
        await self.flow.close()
        logger.info(f"连接结束: {self.identity} "
                    f"(上行 {self.bytes_up} 字节, 下行 {self.bytes_down} 字节)")
        self.finished.set()
        if self.on_close:
            self.on_close(self.identity)
