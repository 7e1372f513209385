"""
流调度器

调度器是拦截层与中继引擎之间的入口。对每个新流：
1. 按所属应用分类: 拒绝 / 代理 / 直连
2. 拒绝: 接管流并立即关闭两个方向，不创建中继，也不连接代理
3. 直连: 不接管，交还拦截层由系统直接发送
4. 代理: 接管流，登记到活跃流表，在新任务中启动 TCP 中继或 UDP 关联后立即返回

活跃流表以 FlowIdentity 为键，防止同一元组出现两个中继；
它是唯一跨流共享的状态，由 asyncio.Lock 保护，只保存轻量句柄。
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Union

from .config import RelayConfig
from .errors import FlowError, RelayError
from .flow import FlowAdapter, FlowIdentity, PolicyDecision, ProtocolKind, TCPFlow, UDPFlow
from .logger import add_context
from .session import SOCKS5ClientSession
from .stats import FlowStats, report_loop
from .tcp_relay import TCPRelay
from .udp_relay import UDPAssociation

logger = logging.getLogger('flowrelay.dispatcher')


def classify(owner_app_id: str, proxy_apps, reject_apps) -> PolicyDecision:
    """
    计算应用的处理策略

    拒绝集合优先；代理集合为空或包含该应用时代理；否则直连。
    """
    if owner_app_id in reject_apps:
        return PolicyDecision.REJECT
    if not proxy_apps or owner_app_id in proxy_apps:
        return PolicyDecision.PROXY
    return PolicyDecision.DIRECT


@dataclass
class FlowHandle:
    """
    活跃流表中的句柄

    Attributes:
        identity: 流标识
        flow: 流适配器
        task: 运行中继的任务
        relay: TCPRelay 或 UDPAssociation，握手完成前为 None
    """
    identity: FlowIdentity
    flow: FlowAdapter
    task: Optional[asyncio.Task] = None
    relay: Optional[Union[TCPRelay, UDPAssociation]] = None


class FlowTable:
    """活跃流表: FlowIdentity -> FlowHandle"""

    def __init__(self):
        self._entries: Dict[FlowIdentity, FlowHandle] = {}
        self._lock = asyncio.Lock()

    async def claim(self, handle: FlowHandle) -> bool:
        """登记句柄，相同标识已存在时返回 False"""
        async with self._lock:
            if handle.identity in self._entries:
                return False
            self._entries[handle.identity] = handle
            return True

    async def release(self, handle: FlowHandle):
        """移除句柄，只移除登记的同一个句柄"""
        async with self._lock:
            if self._entries.get(handle.identity) is handle:
                del self._entries[handle.identity]

    async def snapshot(self) -> List[FlowHandle]:
        async with self._lock:
            return list(self._entries.values())

    def identities(self) -> List[FlowIdentity]:
        return list(self._entries)

    def get(self, identity: FlowIdentity) -> Optional[FlowHandle]:
        return self._entries.get(identity)

    def __contains__(self, identity: FlowIdentity) -> bool:
        return identity in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class FlowDispatcher:
    """
    流调度器

    Attributes:
        config: 当前配置
        config_loader: 可选，每个新流到来前调用以重新读取配置
        session_factory: 创建 SOCKS5ClientSession 的工厂，参数为 RelayConfig
        table: 活跃流表
        stats: 流统计
    """

    def __init__(self, config: RelayConfig,
                 config_loader: Optional[Callable[[], RelayConfig]] = None,
                 session_factory: Optional[Callable[[RelayConfig], SOCKS5ClientSession]] = None,
                 stats: Optional[FlowStats] = None):
        self.config = config
        self.config_loader = config_loader
        self.session_factory = session_factory or self._default_session
        self.table = FlowTable()
        self.stats = stats or FlowStats()
        self._stopping = False
        self._report_task: Optional[asyncio.Task] = None
        logger.info(f"代理配置: SOCKS5 {config.proxy_host}:{config.socks_port}")
        logger.info(f"代理应用: {len(config.proxy_apps)} 个, 拒绝应用: {len(config.reject_apps)} 个")

    @staticmethod
    def _default_session(config: RelayConfig) -> SOCKS5ClientSession:
        return SOCKS5ClientSession(
            config.proxy_endpoint,
            handshake_timeout=config.handshake_timeout,
            connect_timeout=config.connect_timeout
        )

    def update_config(self, config: RelayConfig):
        """更新配置，只影响之后到来的流"""
        self.config = config
        logger.info(f"配置已更新: SOCKS5 {config.proxy_host}:{config.socks_port}, "
                    f"代理应用 {len(config.proxy_apps)} 个, 拒绝应用 {len(config.reject_apps)} 个")

    def classify(self, owner_app_id: str) -> PolicyDecision:
        return classify(owner_app_id, self.config.proxy_apps, self.config.reject_apps)

    @property
    def active_flows(self) -> List[FlowIdentity]:
        return self.table.identities()

    async def on_new_flow(self, flow: FlowAdapter) -> bool:
        """
        处理拦截层交来的新流

        参数:
            flow: TCPFlow 或 UDPFlow

        返回:
            bool: True 表示接管了该流，False 表示交还系统直连
        """
        if self.config_loader:
            try:
                self.update_config(self.config_loader())
            except (OSError, ValueError) as e:
                logger.error(f"重新加载配置失败,继续使用当前配置: {e}")

        self.stats.total += 1
        app_id = flow.owner_app_id

        if self._stopping:
            logger.warning(f"调度器正在停止,交还流: {app_id}")
            self.stats.direct += 1
            return False

        decision = self.classify(app_id)

        if decision == PolicyDecision.REJECT:
            logger.info(f"拒绝流量: {app_id}")
            self.stats.rejected += 1
            await self._close_flow(flow)
            return True

        if decision == PolicyDecision.DIRECT:
            logger.debug(f"直连: {app_id}")
            self.stats.direct += 1
            return False

        if not isinstance(flow, (TCPFlow, UDPFlow)):
            logger.warning(f"未知的流类型 {type(flow).__name__},交还系统: {app_id}")
            self.stats.direct += 1
            return False

        if flow.remote_endpoint is None:
            logger.error(f"无法获取远程端点,关闭流: {app_id}")
            self.stats.failed += 1
            await self._close_flow(flow)
            return True

        identity = flow.identity()
        handle = FlowHandle(identity=identity, flow=flow)
        if not await self.table.claim(handle):
            logger.warning(f"重复的流,已存在活跃中继: {identity}")
            self.stats.duplicates += 1
            await self._close_flow(flow)
            return True

        logger.info(f"代理流量: {identity}")
        self.stats.proxied += 1
        if flow.protocol == ProtocolKind.TCP:
            handle.task = asyncio.create_task(self._run_tcp(handle, self.config))
        else:
            handle.task = asyncio.create_task(self._run_udp(handle, self.config))
        return True

    async def _run_tcp(self, handle: FlowHandle, config: RelayConfig):
        flow = handle.flow
        add_context(app_id=flow.owner_app_id, flow=f"{flow.protocol.value}:{flow.remote_endpoint}",
                    proxy=config.proxy_url)
        target = flow.remote_endpoint
        logger.info(f"TCP 连接: {target}")
        try:
            session = self.session_factory(config)
            try:
                control = await session.connect_tcp(target.host, target.port)
            except RelayError as e:
                logger.error(f"SOCKS5 握手失败: {target}: {e}")
                self.stats.failed += 1
                await self._close_flow(flow)
                return

            try:
                await flow.open()
            except FlowError as e:
                logger.error(f"打开流失败: {target}: {e}")
                self.stats.failed += 1
                await control.close()
                await self._close_flow(flow)
                return

            handle.relay = TCPRelay(flow, control, handle.identity,
                                    chunk_size=config.chunk_size, stats=self.stats)
            await handle.relay.run()
            self.stats.closed += 1
        finally:
            await self.table.release(handle)

    async def _run_udp(self, handle: FlowHandle, config: RelayConfig):
        flow = handle.flow
        add_context(app_id=flow.owner_app_id, flow=f"{flow.protocol.value}:{flow.remote_endpoint}",
                    proxy=config.proxy_url)
        logger.info(f"UDP 流: {flow.remote_endpoint}")
        try:
            association = UDPAssociation(flow, config.proxy_endpoint, handle.identity,
                                         session=self.session_factory(config), stats=self.stats)
            handle.relay = association
            try:
                await association.setup()
            except RelayError as e:
                logger.error(f"UDP 关联失败: {flow.remote_endpoint}: {e}")
                self.stats.failed += 1
                await self._close_flow(flow)
                return
            await association.run()
            self.stats.closed += 1
        finally:
            await self.table.release(handle)

    @staticmethod
    async def _close_flow(flow: FlowAdapter):
        try:
            await flow.close()
        except FlowError as e:
            logger.debug(f"关闭流失败: {e}")

    def start_stats_report(self) -> Optional[asyncio.Task]:
        """
        按 config.stats_interval 启动周期统计报告

        间隔不大于 0 时不启动。报告任务在 shutdown() 中停止。
        """
        if self._report_task is None and self.config.stats_interval > 0:
            self._report_task = asyncio.create_task(
                report_loop(self, self.config.stats_interval)
            )
        return self._report_task

    async def shutdown(self, timeout: float = 5.0):
        """关闭全部活跃中继并等待其任务结束"""
        self._stopping = True
        if self._report_task is not None:
            self._report_task.cancel()
            await asyncio.gather(self._report_task, return_exceptions=True)
            self._report_task = None
        handles = await self.table.snapshot()
        logger.info(f"停止调度器,关闭 {len(handles)} 个活跃流")
        for handle in handles:
            if handle.relay is not None:
                await handle.relay.close()
            else:
                await self._close_flow(handle.flow)
        tasks = [h.task for h in handles if h.task is not None]
        if not tasks:
            return
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
