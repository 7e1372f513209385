#!/usr/bin/env python3
"""
本地模拟 SOCKS5 代理

供测试使用，在 127.0.0.1 的随机端口上监听：
- MockSocks5Proxy: TCP 控制连接，可配置问候回复、命令回复、挂起和握手后行为
- MockUDPRelay: UDP 中继，解封装收到的数据报并回送 "echo:" + 载荷

使用示例:
    proxy = MockSocks5Proxy()
    await proxy.start()
    ...
    await proxy.stop()
"""

import asyncio
import socket
import struct
from typing import List, Optional, Tuple

from flowrelay.socks5 import decode_udp_envelope, encode_udp_envelope

SUCCESS_REPLY = bytes([0x05, 0x00, 0x00, 0x01, 0, 0, 0, 0, 0, 0])


def make_reply(code: int = 0, host: str = '0.0.0.0', port: int = 0) -> bytes:
    """构造 IPv4 地址的命令回复"""
    return bytes([0x05, code, 0x00, 0x01]) + socket.inet_aton(host) + struct.pack('>H', port)


def free_port() -> int:
    """获取一个当前未被监听的端口"""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(('127.0.0.1', 0))
        return s.getsockname()[1]


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01):
    """轮询等待条件成立，超时抛出 AssertionError"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("等待条件超时")
        await asyncio.sleep(interval)


class MockSocks5Proxy:
    """
    模拟 SOCKS5 代理

    Attributes:
        greeting_reply: 问候回复
        reply: 命令回复
        stall: 为 True 时接受连接后不做任何响应
        echo: 握手后回显收到的数据
        close_after_reply: 发送命令回复后立即关闭连接
        initial_data: 握手成功后立即发给客户端的数据
        connections: 已接受的连接数
        greetings: 收到的问候消息
        requests: 收到的命令请求（原始字节）
        received: 握手后收到的隧道数据
        eof_received: 客户端已半关闭
    """

    def __init__(self, greeting_reply: bytes = b'\x05\x00', reply: bytes = SUCCESS_REPLY,
                 stall: bool = False, echo: bool = False, close_after_reply: bool = False,
                 initial_data: bytes = b''):
        self.greeting_reply = greeting_reply
        self.reply = reply
        self.stall = stall
        self.echo = echo
        self.close_after_reply = close_after_reply
        self.initial_data = initial_data

        self.connections = 0
        self.greetings: List[bytes] = []
        self.requests: List[bytes] = []
        self.received = bytearray()
        self.eof_received = False
        self.port: Optional[int] = None
        self._server: Optional[asyncio.AbstractServer] = None
        self._writers: List[asyncio.StreamWriter] = []

    async def start(self):
        self._server = await asyncio.start_server(self._handle, '127.0.0.1', 0)
        self.port = self._server.sockets[0].getsockname()[1]
        return self

    async def stop(self):
        for writer in self._writers:
            writer.close()
        if self._server:
            self._server.close()
            await self._server.wait_closed()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.connections += 1
        self._writers.append(writer)
        try:
            if self.stall:
                await reader.read()
                return

            greeting = await reader.readexactly(3)
            self.greetings.append(greeting)
            writer.write(self.greeting_reply)
            await writer.drain()
            if self.greeting_reply[1:2] != b'\x00':
                return

            header = await reader.readexactly(4)
            atyp = header[3]
            if atyp == 0x01:
                addr = await reader.readexactly(4)
            elif atyp == 0x03:
                length = await reader.readexactly(1)
                addr = length + await reader.readexactly(length[0])
            else:
                addr = await reader.readexactly(16)
            port = await reader.readexactly(2)
            self.requests.append(header + addr + port)

            writer.write(self.reply)
            await writer.drain()
            if self.reply[1] != 0x00 or self.close_after_reply:
                return

            if self.initial_data:
                writer.write(self.initial_data)
                await writer.drain()

            while True:
                data = await reader.read(65536)
                if not data:
                    self.eof_received = True
                    break
                self.received.extend(data)
                if self.echo:
                    writer.write(data)
                    await writer.drain()
            if writer.can_write_eof():
                writer.write_eof()
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            writer.close()


class _RelayProtocol(asyncio.DatagramProtocol):

    def __init__(self, relay: 'MockUDPRelay'):
        self.relay = relay

    def connection_made(self, transport):
        self.relay.transport = transport

    def datagram_received(self, data: bytes, addr):
        self.relay.client_addr = addr
        self.relay.datagrams.append(data)
        datagram = decode_udp_envelope(data)
        reply = encode_udp_envelope(datagram.host, datagram.port, b'echo:' + datagram.payload)
        self.relay.transport.sendto(reply, addr)


class MockUDPRelay:
    """模拟 UDP 中继，回送 echo:载荷，来源地址保持为原目标地址"""

    def __init__(self):
        self.transport: Optional[asyncio.DatagramTransport] = None
        self.datagrams: List[bytes] = []
        self.client_addr: Optional[Tuple[str, int]] = None
        self.port: Optional[int] = None

    async def start(self):
        loop = asyncio.get_running_loop()
        await loop.create_datagram_endpoint(
            lambda: _RelayProtocol(self), local_addr=('127.0.0.1', 0)
        )
        self.port = self.transport.get_extra_info('sockname')[1]
        return self

    def send_raw(self, data: bytes):
        """向最近的客户端发送任意原始数据"""
        self.transport.sendto(data, self.client_addr)

    async def stop(self):
        if self.transport:
            self.transport.close()
