#!/usr/bin/env python3
"""
测试 SOCKS5 编解码

测试内容:
1. 问候消息和问候回复校验
2. CONNECT 请求格式
3. 命令回复解析（成功、失败、截断）
4. 回复码与异常的映射
5. UDP 封装与解封装
6. 未指定中继地址的替换
"""

import asyncio
import socket
import struct
import sys
import os

# 添加当前目录到路径
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from flowrelay.errors import (
    ConnectionRejected,
    HandshakeRejected,
    InvalidAddress,
    InvalidDatagram,
    InvalidReply,
    TruncatedReply,
    Unreachable,
    error_for_reply,
)
from flowrelay.socks5 import (
    ReplyCode,
    command_reply_length,
    decode_command_reply,
    decode_greeting_reply,
    decode_udp_envelope,
    describe_reply,
    encode_connect_request,
    encode_greeting,
    encode_udp_associate_request,
    encode_udp_envelope,
    resolve_relay_host,
)


def test_greeting():
    """测试问候消息"""
    print("\n=== 测试1: 问候消息 ===")
    assert encode_greeting() == b'\x05\x01\x00'

    decode_greeting_reply(b'\x05\x00')
    for bad in (b'\x05\xff', b'\x04\x00', b'\x05'):
        try:
            decode_greeting_reply(bad)
        except HandshakeRejected as e:
            assert e.code is None
        else:
            raise AssertionError(f"问候回复 {bad!r} 应该被拒绝")
    print("✓ 测试通过: 问候消息正确")


def test_connect_request():
    """测试 CONNECT 请求格式"""
    print("\n=== 测试2: CONNECT 请求 ===")
    request = encode_connect_request('example.com', 443)
    assert request[:4] == b'\x05\x01\x00\x03'
    assert request[4] == len('example.com')
    assert request[5:5 + 11] == b'example.com'
    assert struct.unpack('>H', request[-2:])[0] == 443

    # IP 字面量同样按域名编码
    request = encode_connect_request('10.0.0.1', 80)
    assert request[3] == 0x03
    assert request[5:-2] == b'10.0.0.1'

    for host, port in (('', 80), ('a' * 256, 80), ('example.com', 70000)):
        try:
            encode_connect_request(host, port)
        except InvalidAddress:
            pass
        else:
            raise AssertionError(f"{host[:10]}:{port} 应该无法编码")
    print("✓ 测试通过: CONNECT 请求格式正确")


def test_udp_associate_request():
    """测试 UDP ASSOCIATE 请求"""
    print("\n=== 测试3: UDP ASSOCIATE 请求 ===")
    assert encode_udp_associate_request() == b'\x05\x03\x00\x01\x00\x00\x00\x00\x00\x00'
    print("✓ 测试通过: UDP ASSOCIATE 请求正确")


def test_success_reply():
    """测试成功回复解析"""
    print("\n=== 测试4: 成功回复 ===")
    data = b'\x05\x00\x00\x01' + socket.inet_aton('10.1.2.3') + struct.pack('>H', 9050)
    assert command_reply_length(data[:5]) == 10
    reply = decode_command_reply(data)
    assert reply.success
    assert reply.error_code == 0
    assert reply.bound_address == '10.1.2.3'
    assert reply.bound_port == 9050

    data = b'\x05\x00\x00\x03\x09relay.lan' + struct.pack('>H', 1080)
    assert command_reply_length(data[:5]) == len(data)
    reply = decode_command_reply(data)
    assert reply.bound_address == 'relay.lan'
    assert reply.bound_port == 1080

    data = b'\x05\x00\x00\x04' + socket.inet_pton(socket.AF_INET6, '::1') + struct.pack('>H', 53)
    assert command_reply_length(data[:5]) == 22
    reply = decode_command_reply(data)
    assert reply.bound_address == '::1'
    print("✓ 测试通过: 成功回复解析正确")


def test_failure_replies():
    """测试失败回复码 1-8"""
    print("\n=== 测试5: 失败回复 ===")
    for code in range(1, 9):
        data = bytes([0x05, code, 0x00, 0x01]) + b'\x00' * 6
        reply = decode_command_reply(data)
        assert not reply.success
        assert reply.error_code == code
        assert describe_reply(code) != describe_reply(0)

        error = error_for_reply(code, describe_reply(code))
        assert error.code == code
        if code in (ReplyCode.NETWORK_UNREACHABLE, ReplyCode.HOST_UNREACHABLE, ReplyCode.TTL_EXPIRED):
            assert isinstance(error, Unreachable)
        else:
            assert isinstance(error, ConnectionRejected)

    # 失败回复只需要 VER 和 REP
    reply = decode_command_reply(b'\x05\x05')
    assert not reply.success and reply.error_code == 5
    assert reply.bound_address is None
    assert 'ff' in describe_reply(0xFF)
    print("✓ 测试通过: 失败回复映射正确")


def test_truncated_reply():
    """测试截断和无效回复"""
    print("\n=== 测试6: 截断回复 ===")
    for data in (b'\x05', b'\x05\x00\x00\x01\x7f\x00', b'\x05\x00\x00\x03\x09relay'):
        try:
            decode_command_reply(data)
        except TruncatedReply:
            pass
        else:
            raise AssertionError(f"回复 {data!r} 应该被判定为截断")

    for data in (b'\x04\x00\x00\x01' + b'\x00' * 6, b'\x05\x00\x00\x07' + b'\x00' * 6):
        try:
            decode_command_reply(data)
        except InvalidReply:
            pass
        else:
            raise AssertionError(f"回复 {data!r} 应该无效")
    print("✓ 测试通过: 截断回复被拒绝")


def test_udp_envelope():
    """测试 UDP 封装"""
    print("\n=== 测试7: UDP 封装 ===")
    envelope = encode_udp_envelope('8.8.8.8', 53, b'query')
    assert envelope[:3] == b'\x00\x00\x00'
    assert envelope[3] == 0x03
    datagram = decode_udp_envelope(envelope)
    assert (datagram.host, datagram.port, datagram.payload) == ('8.8.8.8', 53, b'query')

    # 中继回送的 IPv4 地址形式
    data = b'\x00\x00\x00\x01' + socket.inet_aton('1.1.1.1') + struct.pack('>H', 53) + b'answer'
    datagram = decode_udp_envelope(data)
    assert (datagram.host, datagram.port, datagram.payload) == ('1.1.1.1', 53, b'answer')

    # 边界: 255 字节主机名、最大端口、大载荷
    host = 'h' * 255
    payload = bytes(range(256)) * 254
    datagram = decode_udp_envelope(encode_udp_envelope(host, 65535, payload))
    assert (datagram.host, datagram.port, datagram.payload) == (host, 65535, payload)

    empty = decode_udp_envelope(encode_udp_envelope('example.com', 9, b''))
    assert empty.payload == b''
    print("✓ 测试通过: UDP 封装正确")


def test_udp_envelope_rejects():
    """测试无效的 UDP 封装"""
    print("\n=== 测试8: 无效 UDP 封装 ===")
    fragmented = b'\x00\x00\x01\x01' + socket.inet_aton('1.1.1.1') + b'\x00\x35' + b'x'
    bad = [
        fragmented,
        b'\x00\x00',
        b'\x00\x00\x00\x01\x01\x01',
        b'\x00\x00\x00\x09' + b'\x00' * 8,
    ]
    for data in bad:
        try:
            decode_udp_envelope(data)
        except InvalidDatagram:
            pass
        else:
            raise AssertionError(f"数据报 {data!r} 应该被拒绝")
    print("✓ 测试通过: 无效 UDP 封装被拒绝")


def test_resolve_relay_host():
    """测试未指定中继地址的替换"""
    print("\n=== 测试9: 中继地址替换 ===")
    assert resolve_relay_host('0.0.0.0', '192.168.1.68') == '192.168.1.68'
    assert resolve_relay_host('::', '192.168.1.68') == '192.168.1.68'
    assert resolve_relay_host(None, 'proxy.lan') == 'proxy.lan'
    assert resolve_relay_host('10.0.0.5', '192.168.1.68') == '10.0.0.5'
    print("✓ 测试通过: 中继地址替换正确")


async def main():
    """运行所有测试"""
    print("=" * 60)
    print("SOCKS5 编解码测试")
    print("=" * 60)

    tests = [
        ("问候消息", test_greeting),
        ("CONNECT 请求", test_connect_request),
        ("UDP ASSOCIATE 请求", test_udp_associate_request),
        ("成功回复", test_success_reply),
        ("失败回复", test_failure_replies),
        ("截断回复", test_truncated_reply),
        ("UDP 封装", test_udp_envelope),
        ("无效 UDP 封装", test_udp_envelope_rejects),
        ("中继地址替换", test_resolve_relay_host),
    ]

    passed = 0
    failed = 0

    for name, test_func in tests:
        try:
            test_func()
            passed += 1
        except AssertionError as e:
            print(f"✗ 测试失败: {name} - {e}")
            failed += 1

    print("\n" + "=" * 60)
    print(f"测试结果: 通过={passed}, 失败={failed}")
    print("=" * 60)

    return failed == 0


if __name__ == '__main__':
    success = asyncio.run(main())
    sys.exit(0 if success else 1)
