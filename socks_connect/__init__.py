"""
SOCKS5 连接器

通过 SOCKS5 代理建立 TCP 连接，并可在隧道上升级到 TLS。

使用示例:
    from socks_connect import SOCKSConnector, ConnectionRequest, Endpoint, TLSOptions

    request = ConnectionRequest(
        target=Endpoint('1.2.3.4', 443),
        proxy=Endpoint('127.0.0.1', 1080),
        tls=TLSOptions(server_hostname='example.com'),
    )
    stream = await SOCKSConnector().establish(request)

    # 关键字参数风格
    from socks_connect import socks_connect
    stream = await socks_connect(SOCKS_host='localhost', host='1.2.3.4', port=80)
"""

from .connection import ConnectionRequest, Endpoint, ProxyAuth, TLSOptions, parse_proxy_url
from .connector import Completion, SOCKSConnector, socks_connect
from .errors import (
    ConnectorError, DialError, FailureReason, SocksError, SslError, Stage,
    TaggedError
)
from .handshake import HandshakeSession, Phase
from .transport import Stream, Transport, dial

__version__ = '0.1.0'

__all__ = [
    'Completion',
    'ConnectionRequest',
    'ConnectorError',
    'DialError',
    'Endpoint',
    'FailureReason',
    'HandshakeSession',
    'Phase',
    'ProxyAuth',
    'SOCKSConnector',
    'SocksError',
    'SslError',
    'Stage',
    'Stream',
    'TLSOptions',
    'TaggedError',
    'Transport',
    'dial',
    'parse_proxy_url',
    'socks_connect',
]
