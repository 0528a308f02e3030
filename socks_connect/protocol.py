"""
SOCKS5 协议模块

本模块定义了 SOCKS5 客户端握手使用的协议常量和帧构造/解析函数。

支持的帧（RFC 1928 / RFC 1929）:
- 版本/方法协商请求: [0x05] [方法数量(1B)] [方法列表]
- 方法协商响应:     [0x05] [选中方法(1B)]，0xFF 表示没有可接受的方法
- 用户名/密码认证:   [0x01] [用户名长度] [用户名] [密码长度] [密码]
- 认证响应:         [0x01] [状态(1B)]，0x00 表示成功
- CONNECT 请求:     [0x05] [0x01] [0x00] [地址类型] [地址] [端口(2B, 大端序)]
- CONNECT 响应:     [0x05] [状态] [0x00] [地址类型] [地址] [端口(2B, 大端序)]
"""

import ipaddress
import socket
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Iterable, Optional


# ============================================================================
# 协议常量
# ============================================================================

class SOCKS5:
    """
    SOCKS5 协议常量定义
    """
    VERSION = 0x05
    AUTH_NONE = 0x00
    AUTH_GSSAPI = 0x01
    AUTH_USERPASS = 0x02
    AUTH_NO_ACCEPTABLE = 0xFF
    USERPASS_VERSION = 0x01
    USERPASS_SUCCESS = 0x00
    CMD_CONNECT = 0x01
    RSV = 0x00
    REP_SUCCESS = 0x00


DEFAULT_PORT = 1080  # SOCKS 代理默认端口

METHOD_REPLY_SIZE = 2
AUTH_REPLY_SIZE = 2
CONNECT_REPLY_HEADER_SIZE = 4
# 任何合法 CONNECT 响应都不短于 5 字节，可以安全地先读取这么多
CONNECT_REPLY_PROBE_SIZE = 5


class AddressType(IntEnum):
    IPV4 = 0x01
    DOMAIN = 0x03
    IPV6 = 0x04


REPLY_MESSAGES = {
    0x01: "SOCKS 服务器一般性故障",
    0x02: "规则集不允许连接",
    0x03: "网络不可达",
    0x04: "主机不可达",
    0x05: "连接被拒绝",
    0x06: "TTL 已过期",
    0x07: "不支持的命令",
    0x08: "不支持的地址类型",
}


def reply_message(code: int) -> str:
    """返回 CONNECT 响应状态码对应的说明"""
    return REPLY_MESSAGES.get(code, f"未知的 SOCKS5 错误码 0x{code:02x}")


@dataclass
class ConnectReply:
    """
    解析后的 CONNECT 响应

    Attributes:
        status: 响应状态码（0 表示成功）
        atype: 绑定地址类型
        host: 代理服务器绑定的地址
        port: 代理服务器绑定的端口
    """
    status: int
    atype: AddressType
    host: str
    port: int


# ============================================================================
# 帧构造
# ============================================================================

def make_method_request(methods: Iterable[int]) -> bytes:
    """
    构造版本/方法协商请求

    Args:
        methods: 客户端支持的认证方法列表

    Returns:
        bytes: [0x05, 方法数量, 方法...]
    """
    methods = bytes(methods)
    if not 1 <= len(methods) <= 255:
        raise ValueError(f"认证方法数量无效: {len(methods)}")
    return bytes([SOCKS5.VERSION, len(methods)]) + methods


def make_auth_request(username: str, password: str) -> bytes:
    """
    构造用户名/密码子协商请求（RFC 1929）

    Args:
        username: 用户名，UTF-8 编码后 1-255 字节
        password: 密码，UTF-8 编码后 1-255 字节
    """
    user_bytes = username.encode('utf-8')
    pass_bytes = password.encode('utf-8')
    if not 1 <= len(user_bytes) <= 255:
        raise ValueError("用户名长度必须为 1-255 字节")
    if not 1 <= len(pass_bytes) <= 255:
        raise ValueError("密码长度必须为 1-255 字节")
    return (bytes([SOCKS5.USERPASS_VERSION, len(user_bytes)]) + user_bytes
            + bytes([len(pass_bytes)]) + pass_bytes)


def make_connect_request(host: str, port: int) -> bytes:
    """
    构造 CONNECT 请求

    目前只支持 IPv4 目标地址。

    Args:
        host: 目标 IPv4 地址
        port: 目标端口号
    """
    try:
        addr = ipaddress.IPv4Address(host).packed
    except ValueError:
        raise ValueError(f"CONNECT 目标只支持 IPv4 地址: {host!r}") from None
    if not 0 < port <= 0xFFFF:
        raise ValueError(f"端口号无效: {port}")
    return (bytes([SOCKS5.VERSION, SOCKS5.CMD_CONNECT, SOCKS5.RSV, AddressType.IPV4])
            + addr + struct.pack('>H', port))


# ============================================================================
# 帧解析
# ============================================================================

def connect_reply_length(data: bytes) -> Optional[int]:
    """
    计算 CONNECT 响应的总长度

    响应长度取决于地址类型，因此需要先收到头部（域名类型还需要长度字节）。

    Args:
        data: 当前已缓冲的数据

    Returns:
        Optional[int]: 完整帧长度；数据不足以确定长度时返回 None

    Raises:
        ValueError: 地址类型未知
    """
    if len(data) < CONNECT_REPLY_HEADER_SIZE:
        return None

    atype = data[3]
    if atype == AddressType.IPV4:
        return CONNECT_REPLY_HEADER_SIZE + 4 + 2
    if atype == AddressType.IPV6:
        return CONNECT_REPLY_HEADER_SIZE + 16 + 2
    if atype == AddressType.DOMAIN:
        if len(data) < CONNECT_REPLY_HEADER_SIZE + 1:
            return None
        return CONNECT_REPLY_HEADER_SIZE + 1 + data[4] + 2
    raise ValueError(f"未知的地址类型: 0x{atype:02x}")


def parse_connect_reply(frame: bytes) -> ConnectReply:
    """
    解析完整的 CONNECT 响应帧

    Args:
        frame: 长度等于 connect_reply_length() 的完整帧

    Raises:
        ValueError: 版本号错误或帧格式错误
    """
    version, status, _, atype = struct.unpack('>BBBB', frame[:CONNECT_REPLY_HEADER_SIZE])
    if version != SOCKS5.VERSION:
        raise ValueError(f"CONNECT 响应版本号错误: 0x{version:02x}")

    body = frame[CONNECT_REPLY_HEADER_SIZE:-2]
    if atype == AddressType.IPV4:
        host = socket.inet_ntop(socket.AF_INET, body)
    elif atype == AddressType.IPV6:
        host = socket.inet_ntop(socket.AF_INET6, body)
    elif atype == AddressType.DOMAIN:
        host = body[1:].decode('utf-8', errors='replace')
    else:
        raise ValueError(f"未知的地址类型: 0x{atype:02x}")

    port = struct.unpack('>H', frame[-2:])[0]
    return ConnectReply(status=status, atype=AddressType(atype), host=host, port=port)
