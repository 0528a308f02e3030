#!/usr/bin/env python3
"""
测试用 SOCKS5 代理服务器

在本地随机端口上模拟 SOCKS5 代理的各种行为:
- 无认证 / 用户名密码认证
- 拒绝所有认证方法（0xFF）、拒绝认证、拒绝 CONNECT
- 逐字节发送响应
- 握手中途关闭连接或一直不响应
- 握手成功后回显数据，或转发到另一个地址
"""

import asyncio
import ipaddress
import struct
from typing import List, Optional, Tuple


class FakeSOCKS5Proxy:
    """
    可配置的 SOCKS5 代理

    Attributes:
        method: 方法协商时选择的方法
        auth_status: 认证响应状态
        reply_code: CONNECT 响应状态
        chunk_size: 每次发送的字节数，None 表示整帧发送
        close_after: 在指定阶段后直接关闭连接（'methods', 'method_partial', 'auth', 'connect'）
        hang_after: 在指定阶段后不再响应（'methods', 'connect'）
        relay_to: 握手成功后转发的目标 (host, port)，None 表示回显
        tunnel_payload: 与 CONNECT 响应一起发送的隧道数据
        bound: CONNECT 响应中的绑定地址
        received: 按顺序收到的握手帧
        credentials: 收到的 (用户名, 密码)
    """

    def __init__(self, method: int = 0x00, auth_status: int = 0x00, reply_code: int = 0x00,
                 chunk_size: Optional[int] = None, close_after: Optional[str] = None,
                 hang_after: Optional[str] = None, relay_to: Optional[Tuple[str, int]] = None,
                 tunnel_payload: bytes = b'', bound: Tuple[str, int] = ('10.0.0.1', 4321)):
        self.method = method
        self.auth_status = auth_status
        self.reply_code = reply_code
        self.chunk_size = chunk_size
        self.close_after = close_after
        self.hang_after = hang_after
        self.relay_to = relay_to
        self.tunnel_payload = tunnel_payload
        self.bound = bound
        self.received: List[bytes] = []
        self.credentials: Optional[Tuple[str, str]] = None
        self.connections = 0
        self.writers = set()
        self.client_closed = asyncio.Event()
        self.server = None
        self.port = None

    async def start(self) -> 'FakeSOCKS5Proxy':
        self.server = await asyncio.start_server(self.handle, '127.0.0.1', 0)
        self.port = self.server.sockets[0].getsockname()[1]
        return self

    async def stop(self):
        if self.server:
            self.server.close()
            for writer in list(self.writers):
                writer.close()
            await self.server.wait_closed()

    async def __aenter__(self):
        return await self.start()

    async def __aexit__(self, *exc):
        await self.stop()

    async def send(self, writer: asyncio.StreamWriter, data: bytes):
        if not self.chunk_size:
            writer.write(data)
            await writer.drain()
            return
        for i in range(0, len(data), self.chunk_size):
            writer.write(data[i:i + self.chunk_size])
            await writer.drain()
            await asyncio.sleep(0.001)

    def connect_reply(self, code: int) -> bytes:
        host, port = self.bound
        return (bytes([0x05, code, 0x00, 0x01]) + ipaddress.IPv4Address(host).packed
                + struct.pack('>H', port))

    async def wait_for_client_close(self, reader: asyncio.StreamReader):
        while await reader.read(4096):
            pass

    async def handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.connections += 1
        self.writers.add(writer)
        try:
            await self._negotiate(reader, writer)
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            self.client_closed.set()
            self.writers.discard(writer)
            writer.close()

    async def _negotiate(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        head = await reader.readexactly(2)
        methods = await reader.readexactly(head[1])
        self.received.append(head + methods)

        if self.close_after == 'methods':
            return
        if self.close_after == 'method_partial':
            writer.write(b'\x05')
            await writer.drain()
            return
        if self.hang_after == 'methods':
            await self.wait_for_client_close(reader)
            return

        await self.send(writer, bytes([0x05, self.method]))
        if self.method not in (0x00, 0x02):
            await self.wait_for_client_close(reader)
            return

        if self.method == 0x02:
            version, ulen = await reader.readexactly(2)
            username = await reader.readexactly(ulen)
            plen = (await reader.readexactly(1))[0]
            password = await reader.readexactly(plen)
            self.received.append(bytes([version, ulen]) + username + bytes([plen]) + password)
            self.credentials = (username.decode(), password.decode())
            if self.close_after == 'auth':
                return
            await self.send(writer, bytes([0x01, self.auth_status]))
            if self.auth_status:
                await self.wait_for_client_close(reader)
                return

        request = await reader.readexactly(10)
        self.received.append(request)
        if self.close_after == 'connect':
            return
        if self.hang_after == 'connect':
            await self.wait_for_client_close(reader)
            return

        await self.send(writer, self.connect_reply(self.reply_code) + self.tunnel_payload)
        if self.reply_code:
            await self.wait_for_client_close(reader)
            return

        if self.relay_to:
            await self._relay(reader, writer)
            return
        while True:
            data = await reader.read(4096)
            if not data:
                break
            writer.write(data)
            await writer.drain()

    async def _relay(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        up_reader, up_writer = await asyncio.open_connection(*self.relay_to)

        async def pipe(src: asyncio.StreamReader, dst: asyncio.StreamWriter):
            try:
                while True:
                    data = await src.read(4096)
                    if not data:
                        break
                    dst.write(data)
                    await dst.drain()
            except ConnectionError:
                pass
            finally:
                dst.close()

        await asyncio.gather(pipe(reader, up_writer), pipe(up_reader, writer))
