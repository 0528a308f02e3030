"""
错误分类模块

每个失败都被标记为发生的阶段:
- dial: 连接代理服务器失败
- socks: SOCKS5 握手失败（方法被拒、认证失败、CONNECT 被拒、响应格式错误、连接意外关闭）
- ssl: TLS 升级失败

调用方只会收到 TaggedError，通过 stage 区分失败原因。
"""

from enum import Enum
from typing import Optional


class Stage(str, Enum):
    DIAL = 'dial'
    SOCKS = 'socks'
    SSL = 'ssl'


class FailureReason(str, Enum):
    MALFORMED_REPLY = 'malformed_reply'
    NO_ACCEPTABLE_METHOD = 'no_acceptable_method'
    AUTH_REJECTED = 'auth_rejected'
    CONNECT_REJECTED = 'connect_rejected'
    UNEXPECTED_CLOSE = 'unexpected_close'
    TIMEOUT = 'timeout'


class ConnectorError(Exception):
    pass


class DialError(ConnectorError):
    """代理服务器不可达、拒绝连接或地址解析失败"""


class SocksError(ConnectorError):
    """
    SOCKS5 握手失败

    Attributes:
        reason: 失败原因
        reply_code: CONNECT 响应状态码（仅 CONNECT_REJECTED 时存在）
    """

    def __init__(self, reason: FailureReason, message: str, reply_code: Optional[int] = None):
        super().__init__(message)
        self.reason = reason
        self.reply_code = reply_code


class SslError(ConnectorError):
    """TLS 升级失败"""


STAGE_ERRORS = {
    Stage.DIAL: DialError,
    Stage.SOCKS: SocksError,
    Stage.SSL: SslError,
}


class TaggedError(ConnectorError):
    """
    带阶段标记的错误，是连接器对外抛出的唯一错误类型

    Attributes:
        stage: 失败发生的阶段
        cause: 底层错误（DialError / SocksError / SslError）
    """

    def __init__(self, stage: Stage, cause: ConnectorError):
        super().__init__(f"[{stage.value}] {cause}")
        self.stage = stage
        self.cause = cause


def tag(stage: Stage, exc: BaseException) -> TaggedError:
    """
    为错误加上阶段标记

    已经带标记的错误原样返回，保证最早发生的失败不会被后来的错误覆盖。

    Args:
        stage: 当前阶段
        exc: 原始异常

    Returns:
        TaggedError: 带阶段标记的错误
    """
    if isinstance(exc, TaggedError):
        return exc

    error_cls = STAGE_ERRORS[stage]
    if isinstance(exc, error_cls):
        cause = exc
    elif stage is Stage.SOCKS:
        if isinstance(exc, TimeoutError):
            cause = SocksError(FailureReason.TIMEOUT, "等待 SOCKS5 响应超时")
        else:
            cause = SocksError(FailureReason.UNEXPECTED_CLOSE, str(exc) or type(exc).__name__)
        cause.__cause__ = exc
    else:
        detail = str(exc) or type(exc).__name__
        if isinstance(exc, TimeoutError):
            detail = f"超时 ({detail})"
        cause = error_cls(detail)
        cause.__cause__ = exc

    tagged = TaggedError(stage, cause)
    tagged.__cause__ = cause
    return tagged
