"""
SOCKS5 客户端握手状态机

本模块实现不依赖任何 I/O 的 SOCKS5 客户端协商逻辑。
调用方通过 feed() 逐步送入收到的字节，状态机通过 writer 回调（或 data_to_send()）
产出需要发送的帧。

状态流转:
    INIT -> AWAITING_METHOD_SELECTION -> [AUTHENTICATING] -> READY_TO_CONNECT
         -> AWAITING_CONNECT_REPLY -> ESTABLISHED | FAILED

每个阶段只在收到完整帧后才前进，多余的字节留在缓冲区供下一阶段使用，
因此无论响应是一次到达还是逐字节到达，结果都相同。
"""

import logging
from collections import deque
from enum import IntEnum
from typing import Callable, Deque, List, Optional, Tuple

from .connection import Endpoint, ProxyAuth
from .errors import FailureReason, SocksError
from .protocol import (
    SOCKS5, AUTH_REPLY_SIZE, CONNECT_REPLY_PROBE_SIZE, METHOD_REPLY_SIZE,
    ConnectReply, connect_reply_length, make_auth_request,
    make_connect_request, make_method_request, parse_connect_reply,
    reply_message
)

logger = logging.getLogger('socks-connect-handshake')


class Phase(IntEnum):
    INIT = 0
    AWAITING_METHOD_SELECTION = 1
    AUTHENTICATING = 2
    READY_TO_CONNECT = 3
    AWAITING_CONNECT_REPLY = 4
    ESTABLISHED = 5
    FAILED = 6

    @property
    def terminal(self) -> bool:
        return self in (Phase.ESTABLISHED, Phase.FAILED)


class HandshakeSession:
    """
    一次连接尝试的 SOCKS5 握手会话

    会话只属于一次连接尝试，不能复用。阶段只会向前推进。

    Attributes:
        target: CONNECT 目标端点
        auth: 代理认证参数，None 表示只提供无认证方法
        writer: 发送字节的回调；为 None 时帧保留在 pending_writes 中
        phase: 当前阶段
        buffer: 尚未解析的接收数据
        method: 代理服务器选中的认证方法
        pending_writes: 待发送帧队列（先进先出）
        error: 失败时的 SocksError
        reply: 成功时解析出的 CONNECT 响应
    """

    def __init__(self, target: Endpoint, auth: Optional[ProxyAuth] = None,
                 writer: Optional[Callable[[bytes], None]] = None):
        self.target = target
        self.auth = auth
        self.writer = writer
        self.phase = Phase.INIT
        self.buffer = b''
        self.method: Optional[int] = None
        self.pending_writes: Deque[bytes] = deque()
        self.error: Optional[SocksError] = None
        self.reply: Optional[ConnectReply] = None
        self._connect_frame = make_connect_request(target.host, target.port)
        self._feeding = False

    @property
    def methods(self) -> List[int]:
        """客户端提供的认证方法"""
        if self.auth is not None:
            return [SOCKS5.AUTH_NONE, SOCKS5.AUTH_USERPASS]
        return [SOCKS5.AUTH_NONE]

    @property
    def finished(self) -> bool:
        return self.phase.terminal

    @property
    def bound(self) -> Optional[Tuple[str, int]]:
        """代理服务器报告的绑定地址"""
        if self.reply is None:
            return None
        return self.reply.host, self.reply.port

    @property
    def bytes_wanted(self) -> int:
        """
        当前阶段还需要多少字节才能解析出完整帧

        传输层可以据此限制读取量，避免读走隧道数据。终止阶段返回 0。
        """
        if self.phase is Phase.AWAITING_METHOD_SELECTION:
            need = METHOD_REPLY_SIZE
        elif self.phase is Phase.AUTHENTICATING:
            need = AUTH_REPLY_SIZE
        elif self.phase is Phase.AWAITING_CONNECT_REPLY:
            try:
                need = connect_reply_length(self.buffer) or CONNECT_REPLY_PROBE_SIZE
            except ValueError:
                need = 0
        else:
            return 0
        return max(need - len(self.buffer), 0)

    def start(self):
        """
        开始握手，发送版本/方法协商请求
        """
        if self.phase is not Phase.INIT:
            raise RuntimeError(f"握手已经开始（当前阶段 {self.phase.name}）")
        self._emit(make_method_request(self.methods), 'METHODS')
        self._transition(Phase.AWAITING_METHOD_SELECTION)
        self._run()

    def feed(self, data: bytes) -> Phase:
        """
        送入收到的数据并尽可能推进状态机

        Args:
            data: 从代理服务器收到的字节

        Returns:
            Phase: 处理后的阶段
        """
        if self._feeding:
            raise RuntimeError("feed() 不允许重入调用")
        if self.phase is Phase.FAILED:
            return self.phase

        self.buffer += data
        logger.debug(f"收到 {len(data)} 字节，缓冲区 {len(self.buffer)} 字节，阶段 {self.phase.name}")
        self._run()
        return self.phase

    def feed_eof(self) -> Phase:
        """
        通知对端已关闭连接

        非终止阶段收到 EOF 视为失败。
        """
        if not self.phase.terminal:
            self._fail(FailureReason.UNEXPECTED_CLOSE,
                       f"握手过程中代理服务器关闭了连接（阶段 {self.phase.name}）")
        return self.phase

    def data_to_send(self) -> bytes:
        """
        取出所有待发送的数据（未设置 writer 时使用）
        """
        data = b''.join(self.pending_writes)
        self.pending_writes.clear()
        return data

    def take_surplus(self) -> bytes:
        """
        取出握手完成后缓冲区中剩余的隧道数据
        """
        if self.phase is not Phase.ESTABLISHED:
            return b''
        surplus, self.buffer = self.buffer, b''
        return surplus

    def _run(self):
        if self.phase.terminal or self.phase is Phase.INIT:
            return
        self._feeding = True
        try:
            while not self.phase.terminal and self._advance():
                pass
        finally:
            self._feeding = False

    def _advance(self) -> bool:
        handler = {
            Phase.AWAITING_METHOD_SELECTION: self._on_method_reply,
            Phase.AUTHENTICATING: self._on_auth_reply,
            Phase.AWAITING_CONNECT_REPLY: self._on_connect_reply,
        }.get(self.phase)
        if handler is None:
            return False
        return handler()

    def _on_method_reply(self) -> bool:
        if len(self.buffer) < METHOD_REPLY_SIZE:
            return False

        version, method = self._consume(METHOD_REPLY_SIZE)
        if version != SOCKS5.VERSION:
            return self._fail(FailureReason.MALFORMED_REPLY,
                              f"方法协商响应版本号错误: 0x{version:02x}")
        if method == SOCKS5.AUTH_NO_ACCEPTABLE:
            return self._fail(FailureReason.NO_ACCEPTABLE_METHOD,
                              "代理服务器不接受客户端提供的任何认证方法")
        if method not in self.methods:
            return self._fail(FailureReason.MALFORMED_REPLY,
                              f"代理服务器选择了未提供的认证方法: 0x{method:02x}")

        self.method = method
        if method == SOCKS5.AUTH_USERPASS:
            self._emit(make_auth_request(self.auth.username, self.auth.password), 'AUTH')
            self._transition(Phase.AUTHENTICATING)
        else:
            self._send_connect()
        return True

    def _on_auth_reply(self) -> bool:
        if len(self.buffer) < AUTH_REPLY_SIZE:
            return False

        version, status = self._consume(AUTH_REPLY_SIZE)
        if version != SOCKS5.USERPASS_VERSION:
            return self._fail(FailureReason.MALFORMED_REPLY,
                              f"认证响应版本号错误: 0x{version:02x}")
        if status != SOCKS5.USERPASS_SUCCESS:
            return self._fail(FailureReason.AUTH_REJECTED,
                              f"代理服务器拒绝了用户名/密码（状态 0x{status:02x}）")

        self._send_connect()
        return True

    def _on_connect_reply(self) -> bool:
        try:
            length = connect_reply_length(self.buffer)
        except ValueError as e:
            return self._fail(FailureReason.MALFORMED_REPLY, f"CONNECT 响应格式错误: {e}")
        if length is None or len(self.buffer) < length:
            return False

        try:
            reply = parse_connect_reply(self._consume(length))
        except ValueError as e:
            return self._fail(FailureReason.MALFORMED_REPLY, f"CONNECT 响应格式错误: {e}")

        if reply.status != SOCKS5.REP_SUCCESS:
            return self._fail(FailureReason.CONNECT_REJECTED,
                              f"代理服务器拒绝了 CONNECT 请求: {reply_message(reply.status)}",
                              reply_code=reply.status)

        self.reply = reply
        self._transition(Phase.ESTABLISHED)
        logger.debug(f"隧道已建立，代理绑定地址 {reply.host}:{reply.port}")
        return True

    def _send_connect(self):
        self._transition(Phase.READY_TO_CONNECT)
        self._emit(self._connect_frame, 'CONNECT')
        self._transition(Phase.AWAITING_CONNECT_REPLY)

    def _consume(self, size: int) -> bytes:
        frame, self.buffer = self.buffer[:size], self.buffer[size:]
        return frame

    def _emit(self, frame: bytes, label: str):
        # 认证帧包含密码，只记录长度
        if label == 'AUTH':
            logger.debug(f"发送 {label} 帧: {len(frame)} 字节")
        else:
            logger.debug(f"发送 {label} 帧: {frame.hex()}")

        self.pending_writes.append(frame)
        if self.writer is None:
            return
        while self.pending_writes:
            self.writer(self.pending_writes.popleft())

    def _transition(self, phase: Phase):
        if phase <= self.phase:
            raise RuntimeError(f"阶段不能回退: {self.phase.name} -> {phase.name}")
        logger.debug(f"阶段切换: {self.phase.name} -> {phase.name}")
        self.phase = phase

    def _fail(self, reason: FailureReason, message: str, reply_code: Optional[int] = None) -> bool:
        self.error = SocksError(reason, message, reply_code=reply_code)
        self.buffer = b''
        self._transition(Phase.FAILED)
        logger.debug(f"握手失败: {reason.value} - {message}")
        return True
