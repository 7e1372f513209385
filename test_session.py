#!/usr/bin/env python3
"""
测试 SOCKS5 客户端会话

使用 mock_proxy.MockSocks5Proxy 在本地模拟上游代理。

测试内容:
1. CONNECT 握手成功，控制连接可直接传输数据
2. 问候被拒绝
3. 命令回复码映射为对应异常
4. 握手读取超时
5. 代理不可达
6. UDP ASSOCIATE 的未指定地址替换
7. 回复被截断
8. 会话不可重复使用
"""

import asyncio
import sys
import os

# 添加当前目录到路径
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from flowrelay.errors import (
    ConnectionRejected,
    ConnectivityError,
    HandshakeRejected,
    HandshakeTimeout,
    TruncatedReply,
    Unreachable,
)
from flowrelay.flow import ProxyEndpoint
from flowrelay.session import SOCKS5ClientSession, SessionState
from flowrelay.socks5 import encode_connect_request
from mock_proxy import MockSocks5Proxy, free_port, make_reply, wait_until


async def test_connect_success():
    """测试 CONNECT 握手成功"""
    print("\n=== 测试1: CONNECT 握手成功 ===")
    proxy = await MockSocks5Proxy(echo=True).start()
    try:
        session = SOCKS5ClientSession(ProxyEndpoint('127.0.0.1', proxy.port))
        control = await session.connect_tcp('example.com', 443)
        assert session.state == SessionState.ESTABLISHED
        assert proxy.greetings == [b'\x05\x01\x00']
        assert proxy.requests == [encode_connect_request('example.com', 443)]

        await control.write(b'ping')
        assert await control.readexactly(4) == b'ping'
        await control.close()
        assert control.closed
    finally:
        await proxy.stop()
    print("✓ 测试通过: CONNECT 握手成功")


async def test_greeting_rejected():
    """测试问候被拒绝"""
    print("\n=== 测试2: 问候被拒绝 ===")
    proxy = await MockSocks5Proxy(greeting_reply=b'\x05\xff').start()
    try:
        session = SOCKS5ClientSession(ProxyEndpoint('127.0.0.1', proxy.port))
        try:
            await session.connect_tcp('example.com', 443)
        except HandshakeRejected as e:
            assert e.code is None
        else:
            raise AssertionError("应该抛出 HandshakeRejected")
        assert session.state == SessionState.FAILED
        assert session.control.closed
        # 没有发出命令
        assert proxy.requests == []
    finally:
        await proxy.stop()
    print("✓ 测试通过: 问候被拒绝")


async def test_reply_code_mapping():
    """测试回复码映射"""
    print("\n=== 测试3: 回复码映射 ===")
    cases = [
        (0x01, ConnectionRejected),
        (0x02, ConnectionRejected),
        (0x03, Unreachable),
        (0x04, Unreachable),
        (0x05, ConnectionRejected),
        (0x06, Unreachable),
        (0x07, ConnectionRejected),
        (0x08, ConnectionRejected),
    ]
    for code, expected in cases:
        proxy = await MockSocks5Proxy(reply=make_reply(code)).start()
        try:
            session = SOCKS5ClientSession(ProxyEndpoint('127.0.0.1', proxy.port))
            try:
                await session.connect_tcp('example.com', 443)
            except expected as e:
                assert e.code == code, f"错误码应为 {code}, 实际 {e.code}"
            else:
                raise AssertionError(f"回复码 {code} 应该抛出 {expected.__name__}")
            assert session.state == SessionState.FAILED
        finally:
            await proxy.stop()
        print(f"  回复码 {code} -> {expected.__name__}")

    # 失败回复只有 VER 和 REP 就关闭连接
    proxy = await MockSocks5Proxy(reply=b'\x05\x05\x00').start()
    try:
        session = SOCKS5ClientSession(ProxyEndpoint('127.0.0.1', proxy.port))
        try:
            await session.connect_tcp('example.com', 443)
        except TruncatedReply:
            pass
        else:
            raise AssertionError("过短的失败回复应该抛出 TruncatedReply")
    finally:
        await proxy.stop()
    print("✓ 测试通过: 回复码映射正确")


async def test_handshake_timeout():
    """测试握手读取超时"""
    print("\n=== 测试4: 握手超时 ===")
    proxy = await MockSocks5Proxy(stall=True).start()
    try:
        session = SOCKS5ClientSession(ProxyEndpoint('127.0.0.1', proxy.port), handshake_timeout=0.2)
        loop = asyncio.get_running_loop()
        start = loop.time()
        try:
            await session.connect_tcp('example.com', 443)
        except HandshakeTimeout:
            pass
        else:
            raise AssertionError("应该抛出 HandshakeTimeout")
        assert loop.time() - start < 2.0
        assert session.state == SessionState.FAILED
        assert session.control.closed
    finally:
        await proxy.stop()
    print("✓ 测试通过: 握手超时后连接已关闭")


async def test_proxy_unreachable():
    """测试代理不可达"""
    print("\n=== 测试5: 代理不可达 ===")
    session = SOCKS5ClientSession(ProxyEndpoint('127.0.0.1', free_port()), connect_timeout=2.0)
    try:
        await session.connect_tcp('example.com', 443)
    except ConnectivityError:
        pass
    else:
        raise AssertionError("应该抛出 ConnectivityError")
    assert session.state == SessionState.FAILED
    assert session.control is None
    print("✓ 测试通过: 代理不可达")


async def test_udp_associate_unspecified_address():
    """测试 UDP ASSOCIATE 未指定地址替换为代理主机"""
    print("\n=== 测试6: UDP ASSOCIATE ===")
    proxy = await MockSocks5Proxy(reply=make_reply(0, '0.0.0.0', 9050)).start()
    try:
        session = SOCKS5ClientSession(ProxyEndpoint('127.0.0.1', proxy.port))
        result = await session.associate_udp()
        assert result.relay_host == '127.0.0.1'
        assert result.relay_port == 9050
        assert proxy.requests == [b'\x05\x03\x00\x01\x00\x00\x00\x00\x00\x00']
        assert not result.control.is_closing()
        await result.control.close()
    finally:
        await proxy.stop()

    proxy = await MockSocks5Proxy(reply=make_reply(0, '10.0.0.7', 9051)).start()
    try:
        session = SOCKS5ClientSession(ProxyEndpoint('127.0.0.1', proxy.port))
        result = await session.associate_udp()
        assert (result.relay_host, result.relay_port) == ('10.0.0.7', 9051)
        await result.control.close()
    finally:
        await proxy.stop()
    print("✓ 测试通过: 中继地址正确")


async def test_truncated_success_reply():
    """测试成功回复被截断"""
    print("\n=== 测试7: 截断的成功回复 ===")
    proxy = await MockSocks5Proxy(reply=b'\x05\x00\x00\x01\x7f\x00', close_after_reply=True).start()
    try:
        session = SOCKS5ClientSession(ProxyEndpoint('127.0.0.1', proxy.port), handshake_timeout=2.0)
        try:
            await session.connect_tcp('example.com', 443)
        except TruncatedReply:
            pass
        else:
            raise AssertionError("应该抛出 TruncatedReply")
        assert session.state == SessionState.FAILED
    finally:
        await proxy.stop()
    print("✓ 测试通过: 截断回复被拒绝")


async def test_session_single_use():
    """测试会话不可重复使用"""
    print("\n=== 测试8: 会话只能使用一次 ===")
    proxy = await MockSocks5Proxy().start()
    try:
        session = SOCKS5ClientSession(ProxyEndpoint('127.0.0.1', proxy.port))
        control = await session.connect_tcp('example.com', 80)
        try:
            await session.connect_tcp('example.com', 80)
        except RuntimeError:
            pass
        else:
            raise AssertionError("重复使用会话应该抛出 RuntimeError")
        await control.close()
        await wait_until(lambda: proxy.eof_received)
        assert proxy.connections == 1
    finally:
        await proxy.stop()
    print("✓ 测试通过: 会话只能使用一次")


async def main():
    """运行所有测试"""
    print("=" * 60)
    print("SOCKS5 客户端会话测试")
    print("=" * 60)

    tests = [
        ("CONNECT 握手成功", test_connect_success),
        ("问候被拒绝", test_greeting_rejected),
        ("回复码映射", test_reply_code_mapping),
        ("握手超时", test_handshake_timeout),
        ("代理不可达", test_proxy_unreachable),
        ("UDP ASSOCIATE", test_udp_associate_unspecified_address),
        ("截断的成功回复", test_truncated_success_reply),
        ("会话只能使用一次", test_session_single_use),
    ]

    passed = 0
    failed = 0

    for name, test_func in tests:
        try:
            await test_func()
            passed += 1
        except AssertionError as e:
            print(f"✗ 测试失败: {name} - {e}")
            failed += 1
        except Exception as e:
            print(f"✗ 测试异常: {name} - {e}")
            failed += 1

    print("\n" + "=" * 60)
    print(f"测试结果: 通过={passed}, 失败={failed}")
    print("=" * 60)

    return failed == 0


if __name__ == '__main__':
    success = asyncio.run(main())
    sys.exit(0 if success else 1)
