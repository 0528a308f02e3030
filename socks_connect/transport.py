"""
字节传输模块

本模块把 asyncio 流适配为握手状态机需要的字节传输接口:
- write(data): 按调用顺序发送数据
- on_receive(data, eof): 收到数据或对端关闭时的回调
- close(): 释放连接（幂等）

握手完成后，传输被转换为 Stream 交给调用方，作为到目标主机的透明隧道。
"""

import asyncio
import logging
from typing import Callable, Optional, Tuple

from .connection import Endpoint

logger = logging.getLogger('socks-connect-transport')

ReceiveCallback = Callable[[bytes, bool], None]


class Stream:
    """
    通过代理建立的双向字节流

    对 asyncio.StreamReader / StreamWriter 的薄封装。握手阶段多读的字节保存在
    prefix 中，最先被读出。

    Attributes:
        reader: 异步流读取器
        writer: 异步流写入器
        proxy: 使用的代理端点
        target: 目标端点
        bound: 代理报告的绑定地址 (host, port)
        tls: 是否已升级为 TLS
        peer_certificate: TLS 对端证书摘要（仅 TLS 时存在）
    """

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                 proxy: Endpoint, target: Endpoint, bound: Optional[Tuple[str, int]] = None,
                 prefix: bytes = b''):
        self.reader = reader
        self.writer = writer
        self.proxy = proxy
        self.target = target
        self.bound = bound
        self.tls = False
        self.peer_certificate = None
        self.detached = False
        self._prefix = prefix

    @property
    def pending(self) -> bytes:
        """尚未被读出的握手剩余数据"""
        return self._prefix

    async def read(self, n: int = -1) -> bytes:
        if self._prefix:
            if n < 0 or n >= len(self._prefix):
                data, self._prefix = self._prefix, b''
            else:
                data, self._prefix = self._prefix[:n], self._prefix[n:]
            return data
        return await self.reader.read(n)

    async def readexactly(self, n: int) -> bytes:
        head = await self.read(min(n, len(self._prefix))) if self._prefix else b''
        if len(head) == n:
            return head
        return head + await self.reader.readexactly(n - len(head))

    async def readline(self) -> bytes:
        if self._prefix:
            line, sep, rest = self._prefix.partition(b'\n')
            if sep:
                self._prefix = rest
                return line + sep
            self._prefix = b''
            return line + await self.reader.readline()
        return await self.reader.readline()

    def write(self, data: bytes):
        self.writer.write(data)

    async def drain(self):
        await self.writer.drain()

    def get_extra_info(self, name: str, default=None):
        return self.writer.get_extra_info(name, default)

    def is_closing(self) -> bool:
        return self.writer.is_closing()

    def close(self):
        if not self.writer.is_closing():
            self.writer.close()

    async def wait_closed(self):
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError) as e:
            logger.debug(f"关闭连接时出错: {e}")

    def __repr__(self):
        return (f"<Stream {self.target} via {self.proxy}"
                f"{' tls' if self.tls else ''}{' detached' if self.detached else ''}>")


class Transport:
    """
    握手期间使用的字节传输

    pump() 串行地从读取器读取数据并调用 on_receive，同一时刻只有一次回调在执行。

    Attributes:
        reader: 异步流读取器
        writer: 异步流写入器
        endpoint: 已连接的代理端点
        on_receive: 接收回调 (data, eof)
        error: 读取时遇到的传输错误
    """

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                 endpoint: Endpoint):
        self.reader = reader
        self.writer = writer
        self.endpoint = endpoint
        self.on_receive: Optional[ReceiveCallback] = None
        self.error: Optional[BaseException] = None
        self.closed = False

    def write(self, data: bytes):
        """
        发送数据

        asyncio 传输按调用顺序发送，不需要额外排队。
        """
        if self.closed:
            raise ConnectionError("传输已关闭")
        self.writer.write(data)

    async def pump(self, wanted: Callable[[], int]):
        """
        读取数据并送给 on_receive，直到 wanted() 返回 0 或对端关闭

        每次最多读取 wanted() 字节，握手完成后不会读走隧道数据。
        读取错误按 EOF 处理，错误保存在 self.error 中。

        Args:
            wanted: 返回当前还需要多少字节的回调
        """
        while not self.closed:
            size = wanted()
            if size <= 0:
                return
            try:
                data = await self.reader.read(size)
            except (ConnectionError, OSError) as e:
                logger.debug(f"从 {self.endpoint} 读取失败: {e}")
                self.error = e
                data = b''
            self._deliver(data, not data)
            if not data:
                return

    def _deliver(self, data: bytes, eof: bool):
        if self.on_receive is None:
            raise RuntimeError("未设置 on_receive 回调")
        self.on_receive(data, eof)

    def into_stream(self, target: Endpoint, bound: Optional[Tuple[str, int]] = None,
                    surplus: bytes = b'') -> Stream:
        """
        握手完成后把传输交给调用方

        Args:
            target: 目标端点
            bound: 代理绑定地址
            surplus: 握手阶段多收到的隧道数据
        """
        self.on_receive = None
        return Stream(self.reader, self.writer, proxy=self.endpoint, target=target,
                      bound=bound, prefix=surplus)

    def close(self):
        """关闭传输（幂等）"""
        if self.closed:
            return
        self.closed = True
        self.on_receive = None
        logger.debug(f"关闭到 {self.endpoint} 的传输")
        self.writer.close()


async def dial(endpoint: Endpoint) -> Transport:
    """
    连接到代理服务器

    Args:
        endpoint: 代理端点

    Returns:
        Transport: 已连接的传输
    """
    logger.debug(f"正在连接代理 {endpoint}")
    reader, writer = await asyncio.open_connection(endpoint.host, endpoint.port)
    logger.debug(f"已连接代理 {endpoint}")
    return Transport(reader, writer, endpoint)
