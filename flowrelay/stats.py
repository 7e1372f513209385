"""
流统计

记录调度器处理的流数量和转发字节数，并定期输出包含进程资源占用的统计日志。
"""

import asyncio
import logging
import os
from dataclasses import asdict, dataclass
from typing import Dict

import psutil

logger = logging.getLogger('flowrelay.stats')


@dataclass
class FlowStats:
    """流计数器"""
    total: int = 0          # 收到的流总数
    proxied: int = 0        # 交给中继处理的流
    direct: int = 0         # 交还系统直连的流
    rejected: int = 0       # 按规则拒绝的流
    duplicates: int = 0     # 因重复而拒绝的流
    failed: int = 0         # 握手或建立失败的流
    closed: int = 0         # 已结束的中继
    bytes_up: int = 0       # 应用 -> 代理
    bytes_down: int = 0     # 代理 -> 应用

    def add_bytes(self, up: int = 0, down: int = 0):
        self.bytes_up += up
        self.bytes_down += down

    def snapshot(self) -> Dict[str, int]:
        return asdict(self)


def process_usage() -> Dict[str, float]:
    """
    获取当前进程的资源占用

    Returns:
        dict: memory_mb, num_fds, cpu_percent, tasks
    """
    proc = psutil.Process(os.getpid())
    return {
        'memory_mb': proc.memory_info().rss / 1024 / 1024,
        'num_fds': proc.num_fds() if hasattr(proc, 'num_fds') else 0,
        'cpu_percent': proc.cpu_percent(interval=None),
        'tasks': len(asyncio.all_tasks()),
    }


def format_report(stats: FlowStats, active: int) -> str:
    usage = process_usage()
    return (f"流统计: 总计={stats.total}, "
            f"代理={stats.proxied}, "
            f"直连={stats.direct}, "
            f"拒绝={stats.rejected}, "
            f"重复={stats.duplicates}, "
            f"失败={stats.failed}, "
            f"关闭={stats.closed}, "
            f"活跃={active}, "
            f"上行={stats.bytes_up}B, "
            f"下行={stats.bytes_down}B, "
            f"任务={usage['tasks']}, "
            f"文件描述符={usage['num_fds']}, "
            f"内存={usage['memory_mb']:.1f}MB, "
            f"CPU={usage['cpu_percent']:.1f}%")


async def report_loop(dispatcher, interval: float = 60.0):
    """
    定期报告调度器统计，直到任务被取消

    Args:
        dispatcher: FlowDispatcher 实例
        interval: 报告间隔（秒）
    """
    while True:
        try:
            await asyncio.sleep(interval)
            logger.info(format_report(dispatcher.stats, len(dispatcher.table)))
        except asyncio.CancelledError:
            break
        except psutil.Error as e:
            logger.error(f"报告流统计时出错: {e}")
