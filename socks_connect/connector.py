"""
SOCKS5 连接器

本模块把连接代理、SOCKS5 握手和可选的 TLS 升级组合成一个可取消的操作。

工作流程:
1. 通过 dialer 连接 SOCKS5 代理（失败标记为 dial）
2. 创建新的握手会话，把传输的接收回调接到会话上，会话的输出写到传输
3. 驱动握手直到终止阶段（失败标记为 socks）
4. 如果请求了 TLS，调用 upgrader 升级隧道（失败标记为 ssl）
5. 把最终的流或带标记的错误交给调用方，只交付一次

任何失败都会先关闭已经建立的传输。连接器不做重试。
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from . import tls
from .config import ConnectorConfig
from .connection import ConnectionRequest, Endpoint, TLSOptions
from .errors import FailureReason, SocksError, Stage, TaggedError, tag
from .handshake import HandshakeSession, Phase
from .transport import Stream, Transport, dial

logger = logging.getLogger('socks-connect')

Dialer = Callable[[Endpoint], Awaitable[Transport]]
Upgrader = Callable[[Stream, TLSOptions], Awaitable[Stream]]
Deadline = Callable[[Stage], Optional[float]]


class Completion:
    """
    只结算一次的完成通道

    第一次 resolve / fail / cancel 生效，之后的调用被忽略并返回 False。
    取消后不会调用任何回调。

    Attributes:
        on_stream: 成功回调
        on_error: 失败回调
        outcome: 结算结果（Stream 或 TaggedError），取消时为 None
    """

    def __init__(self, on_stream: Optional[Callable[[Stream], None]] = None,
                 on_error: Optional[Callable[[TaggedError], None]] = None):
        self.on_stream = on_stream
        self.on_error = on_error
        self.outcome = None
        self.settled = False
        self.cancelled = False

    def resolve(self, stream: Stream) -> bool:
        if not self._settle(stream):
            return False
        if self.on_stream:
            self.on_stream(stream)
        return True

    def fail(self, error: TaggedError) -> bool:
        if not self._settle(error):
            return False
        if self.on_error:
            self.on_error(error)
        return True

    def cancel(self) -> bool:
        if not self._settle(None):
            return False
        self.cancelled = True
        return True

    def _settle(self, outcome) -> bool:
        if self.settled:
            logger.debug(f"忽略重复的结算: {outcome!r}")
            return False
        self.settled = True
        self.outcome = outcome
        return True


class SOCKSConnector:
    """
    通过 SOCKS5 代理建立连接

    Attributes:
        dialer: 连接代理的协程函数，返回 Transport
        upgrader: TLS 升级协程函数
        deadline: 各阶段超时钩子，返回秒数或 None（不设超时）
    """

    def __init__(self, dialer: Optional[Dialer] = None, upgrader: Optional[Upgrader] = None,
                 deadline: Optional[Deadline] = None):
        self.dialer = dialer or dial
        self.upgrader = upgrader or tls.upgrade
        self.deadline = deadline
        self.attempts = 0

    @classmethod
    def from_config(cls, config: ConnectorConfig, **kwargs) -> 'SOCKSConnector':
        return cls(deadline=config.deadline(), **kwargs)

    async def establish(self, request: ConnectionRequest) -> Stream:
        """
        建立到目标的连接

        Args:
            request: 连接请求

        Returns:
            Stream: 可用的双向字节流（请求 TLS 时为升级后的流）

        Raises:
            TaggedError: 带阶段标记的失败
            asyncio.CancelledError: 操作被取消，传输已关闭
        """
        self.attempts += 1
        attempt = self.attempts
        logger.info(f"#{attempt} 正在通过 SOCKS5 代理 {request.proxy} 连接 {request.target}")

        transport = None
        stream = None
        stage = Stage.DIAL
        try:
            transport = await self._within(Stage.DIAL, self.dialer(request.proxy))

            stage = Stage.SOCKS
            stream = await self._within(Stage.SOCKS, self._handshake(transport, request))

            if request.tls is not None:
                stage = Stage.SSL
                stream = await self._within(Stage.SSL, self.upgrader(stream, request.tls))
        except asyncio.CancelledError:
            logger.info(f"#{attempt} 连接已取消（阶段 {stage.value}）")
            self._release(transport, stream)
            raise
        except Exception as e:
            error = tag(stage, e)
            self._release(transport, stream)
            logger.error(f"#{attempt} 连接失败 [{error.stage.value}]: {error.cause}")
            raise error

        logger.info(f"#{attempt} 已连接 {request.target}{'（TLS）' if stream.tls else ''}")
        return stream

    def connect(self, request: ConnectionRequest,
                on_stream: Optional[Callable[[Stream], None]] = None,
                on_connected: Optional[Callable[[object], None]] = None,
                on_error: Optional[Callable[[TaggedError], None]] = None) -> asyncio.Task:
        """
        以回调方式建立连接

        on_stream 和 on_connected 最多只能提供一个；on_connected 收到底层 socket。
        提供 on_error 时，失败只交给回调，任务结果为 None；否则失败从任务中抛出。
        取消任务后不会调用任何回调。

        Returns:
            asyncio.Task: 连接任务
        """
        if on_stream is not None and on_connected is not None:
            raise ValueError("on_stream 和 on_connected 只能提供一个")
        if on_connected is not None:
            def on_stream(stream: Stream):
                on_connected(stream.get_extra_info('socket'))

        completion = Completion(on_stream=on_stream, on_error=on_error)

        async def run():
            try:
                stream = await self.establish(request)
            except asyncio.CancelledError:
                completion.cancel()
                raise
            except TaggedError as e:
                completion.fail(e)
                if on_error is None:
                    raise
                return None
            completion.resolve(stream)
            return stream

        return asyncio.ensure_future(run())

    async def _handshake(self, transport: Transport, request: ConnectionRequest) -> Stream:
        session = HandshakeSession(request.target, request.auth, writer=transport.write)

        def on_receive(data: bytes, eof: bool):
            if data:
                session.feed(data)
            if eof:
                session.feed_eof()

        transport.on_receive = on_receive
        session.start()
        await transport.pump(lambda: session.bytes_wanted)

        if session.phase is Phase.FAILED:
            if transport.error is not None:
                session.error.__cause__ = transport.error
            raise session.error
        if session.phase is not Phase.ESTABLISHED:
            raise SocksError(FailureReason.UNEXPECTED_CLOSE, "握手完成前传输已被关闭")

        host, port = session.bound
        logger.debug(f"SOCKS5 握手完成，代理绑定地址 {host}:{port}")
        return transport.into_stream(request.target, session.bound, session.take_surplus())

    async def _within(self, stage: Stage, aw):
        timeout = self.deadline(stage) if self.deadline else None
        if timeout is None:
            return await aw
        return await asyncio.wait_for(aw, timeout)

    @staticmethod
    def _release(transport: Optional[Transport], stream: Optional[Stream]):
        if stream is not None:
            stream.close()
        if transport is not None:
            transport.close()


async def socks_connect(connector: Optional[SOCKSConnector] = None, **params) -> Stream:
    """
    通过 SOCKS5 代理连接（便捷函数）

    用法:
        stream = await socks_connect(
            SOCKS_host='localhost', SOCKS_port=1080,
            host='1.2.3.4', port=80,
        )

    参数说明见 ConnectionRequest.from_params()。
    """
    request = ConnectionRequest.from_params(**params)
    return await (connector or SOCKSConnector()).establish(request)
