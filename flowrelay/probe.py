#!/usr/bin/env python3
"""
上游代理探测

检查配置的 SOCKS5 代理是否可用：
1. 建立 TCP 连接并完成无认证问候
2. 可选: 对指定目标发出 CONNECT，确认代理能够建立隧道

使用方法:
    flowrelay-probe -c config.yaml
    flowrelay-probe --proxy-host 192.168.1.68 --socks-port 6153 --target example.com:443
"""

import argparse
import asyncio
import sys
import time
from dataclasses import dataclass
from typing import Optional

from .config import load_config
from .errors import HandshakeError, RelayError
from .flow import Endpoint, ProxyEndpoint
from .logger import LogConfig, LoggerManager, add_context, get_logger
from .session import DEFAULT_HANDSHAKE_TIMEOUT, SOCKS5ClientSession, SessionState

logger = get_logger('probe')


@dataclass
class ProbeResult:
    """
    探测结果

    Attributes:
        ok: 代理是否可用
        elapsed: 耗时（秒）
        error: 失败原因
        code: SOCKS5 错误码（如有）
    """
    ok: bool
    elapsed: float
    error: str = ''
    code: Optional[int] = None


async def probe_proxy(proxy: ProxyEndpoint, timeout: float = DEFAULT_HANDSHAKE_TIMEOUT) -> ProbeResult:
    """只完成问候，不发出任何命令"""
    start = time.monotonic()
    session = SOCKS5ClientSession(proxy, handshake_timeout=timeout, connect_timeout=timeout)
    try:
        await session.greet_only()
    except HandshakeError as e:
        return ProbeResult(False, time.monotonic() - start, str(e), e.code)
    except RelayError as e:
        return ProbeResult(False, time.monotonic() - start, str(e))
    return ProbeResult(True, time.monotonic() - start)


async def probe_connect(proxy: ProxyEndpoint, target: Endpoint,
                        timeout: float = DEFAULT_HANDSHAKE_TIMEOUT) -> ProbeResult:
    """完成 CONNECT 后立即关闭隧道"""
    start = time.monotonic()
    session = SOCKS5ClientSession(proxy, handshake_timeout=timeout, connect_timeout=timeout)
    try:
        control = await session.connect_tcp(target.host, target.port)
    except HandshakeError as e:
        return ProbeResult(False, time.monotonic() - start, str(e), e.code)
    except RelayError as e:
        return ProbeResult(False, time.monotonic() - start, str(e))
    await control.close()
    return ProbeResult(session.state == SessionState.ESTABLISHED, time.monotonic() - start)


def parse_target(value: str) -> Endpoint:
    """解析 host:port，IPv6 地址使用 [addr]:port"""
    host, sep, port = value.rpartition(':')
    if not sep or not host:
        raise argparse.ArgumentTypeError(f"目标格式应为 host:port: {value}")
    try:
        port_number = int(port)
    except ValueError:
        raise argparse.ArgumentTypeError(f"无效端口: {port}")
    if not 0 <= port_number <= 65535:
        raise argparse.ArgumentTypeError(f"端口超出范围: {port_number}")
    return Endpoint(host.strip('[]'), port_number)


async def run_probe(proxy: ProxyEndpoint, target: Optional[Endpoint], timeout: float) -> int:
    result = await probe_proxy(proxy, timeout)
    if not result.ok:
        logger.error(f"代理 {proxy} 不可用: {result.error}")
        return 1
    logger.info(f"代理 {proxy} 问候成功 ({result.elapsed * 1000:.0f}ms)")

    if target is None:
        return 0
    result = await probe_connect(proxy, target, timeout)
    if not result.ok:
        logger.error(f"CONNECT {target} 失败: {result.error}")
        return 2
    logger.info(f"CONNECT {target} 成功 ({result.elapsed * 1000:.0f}ms)")
    return 0


def main():
    """
    主函数 - 解析命令行参数并探测代理

    命令行参数:
        --config, -c: 配置文件路径 (默认: config.yaml)
        --proxy-host: 覆盖配置中的代理地址
        --socks-port, -p: 覆盖配置中的 SOCKS5 端口
        --target, -t: 额外测试 CONNECT 的目标 host:port
        --timeout: 超时时间（秒）
        --debug, -d: 启用调试模式
    """
    parser = argparse.ArgumentParser(description='SOCKS5 上游代理探测')
    parser.add_argument('--config', '-c', default='config.yaml', help='配置文件路径')
    parser.add_argument('--proxy-host', default=None, help='SOCKS5 代理地址')
    parser.add_argument('--socks-port', '-p', type=int, default=None, help='SOCKS5 代理端口')
    parser.add_argument('--target', '-t', type=parse_target, default=None, help='测试 CONNECT 的目标 host:port')
    parser.add_argument('--timeout', type=float, default=None, help='超时时间（秒）')
    parser.add_argument('--debug', '-d', action='store_true', help='启用调试模式')
    args = parser.parse_args()

    LoggerManager().initialize(LogConfig(
        level='DEBUG' if args.debug else 'INFO',
        context_fields=['proxy']
    ))

    try:
        config = load_config(args.config).with_options({
            'proxyHost': args.proxy_host,
            'socksPort': args.socks_port,
        })
    except ValueError as e:
        logger.error(f"配置错误: {e}")
        sys.exit(3)

    timeout = args.timeout or config.handshake_timeout
    add_context(proxy=config.proxy_url)
    logger.info(f"探测代理: {config.proxy_url}")
    sys.exit(asyncio.run(run_probe(config.proxy_endpoint, args.target, timeout)))


if __name__ == '__main__':
    main()
