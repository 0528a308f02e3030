"""
连接请求数据结构

本模块定义了一次 SOCKS5 连接尝试所需的数据结构:
- Endpoint: 主机和端口
- ProxyAuth: 代理用户名/密码
- TLSOptions: TLS 升级选项
- ConnectionRequest: 调用方提交的完整连接请求
"""

import ipaddress
import ssl
import urllib.parse
from dataclasses import dataclass, field, fields
from typing import List, Optional, Tuple

from .protocol import DEFAULT_PORT


@dataclass(frozen=True)
class Endpoint:
    """
    网络端点

    Attributes:
        host: 主机地址
        port: 端口号（1-65535）
    """
    host: str
    port: int

    def __post_init__(self):
        if not self.host:
            raise ValueError("主机地址不能为空")
        if isinstance(self.port, bool) or not isinstance(self.port, int):
            raise ValueError(f"端口号必须是整数: {self.port!r}")
        if not 0 < self.port <= 0xFFFF:
            raise ValueError(f"端口号超出范围: {self.port}")

    @classmethod
    def parse(cls, value: str, default_port: Optional[int] = None) -> 'Endpoint':
        """
        解析 "host"、"host:port" 或 "[v6]:port" 格式的端点

        Args:
            value: 端点字符串
            default_port: 未指定端口时使用的默认端口
        """
        host, port = value, None
        if value.startswith('['):
            host, _, rest = value[1:].partition(']')
            if rest.startswith(':'):
                port = rest[1:]
        elif value.count(':') == 1:
            host, port = value.split(':')

        if port is None:
            if default_port is None:
                raise ValueError(f"缺少端口号: {value!r}")
            return cls(host, default_port)
        if not port.isdigit():
            raise ValueError(f"端口号必须是数字: {port!r}")
        return cls(host, int(port))

    def __str__(self):
        if ':' in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class ProxyAuth:
    """
    代理用户名/密码认证参数（RFC 1929）
    """
    username: str
    password: str = field(repr=False)

    def __post_init__(self):
        for name, value in (('用户名', self.username), ('密码', self.password)):
            if not 1 <= len(value.encode('utf-8')) <= 255:
                raise ValueError(f"{name}长度必须为 1-255 字节")


@dataclass
class TLSOptions:
    """
    TLS 升级选项

    Attributes:
        server_hostname: 用于 SNI 和证书校验的主机名（默认使用目标地址）
        ca_cert: CA 证书路径
        cert_file: 客户端证书路径
        key_file: 客户端私钥路径
        verify: 是否校验服务器证书
        alpn_protocols: ALPN 协议列表
        ssl_context: 现成的 SSL 上下文，设置后忽略其余证书选项
        handshake_timeout: TLS 握手超时（秒）
    """
    server_hostname: Optional[str] = None
    ca_cert: Optional[str] = None
    cert_file: Optional[str] = None
    key_file: Optional[str] = None
    verify: bool = True
    alpn_protocols: List[str] = field(default_factory=list)
    ssl_context: Optional[ssl.SSLContext] = None
    handshake_timeout: Optional[float] = None


@dataclass
class ConnectionRequest:
    """
    一次通过 SOCKS5 代理建立连接的请求

    Attributes:
        target: 目标端点（目前只支持 IPv4 地址）
        proxy: SOCKS5 代理端点
        auth: 代理认证参数，None 表示不认证
        tls: TLS 升级选项，None 表示不升级
    """
    target: Endpoint
    proxy: Endpoint
    auth: Optional[ProxyAuth] = None
    tls: Optional[TLSOptions] = None

    def __post_init__(self):
        try:
            ipaddress.IPv4Address(self.target.host)
        except ValueError:
            raise ValueError(f"目标地址只支持 IPv4: {self.target.host!r}") from None

    @classmethod
    def from_params(cls, **params) -> 'ConnectionRequest':
        """
        从关键字参数构造请求

        参数风格:
            host, port: 目标地址
            SOCKS_host, SOCKS_port: 代理地址（端口默认 1080）
            SOCKS_username, SOCKS_password: 代理认证
            extensions: 包含 'SSL' 时启用 TLS 升级
            SSL_*: TLS 选项，例如 SSL_ca_cert、SSL_verify、SSL_server_hostname
        """
        socks = {key[len('SOCKS_'):]: params.pop(key)
                 for key in list(params) if key.startswith('SOCKS_')}
        ssl_params = {key[len('SSL_'):]: params.pop(key)
                      for key in list(params) if key.startswith('SSL_')}
        extensions = params.pop('extensions', None) or []

        if 'host' not in socks:
            raise ValueError("缺少 SOCKS_host 参数")

        auth = None
        if socks.get('username') is not None:
            auth = ProxyAuth(socks['username'], socks.get('password') or '')

        tls = None
        if 'SSL' in extensions:
            unknown = set(ssl_params) - {f.name for f in fields(TLSOptions)}
            if unknown:
                raise ValueError(f"未知的 SSL 参数: {', '.join(sorted(unknown))}")
            tls = TLSOptions(**ssl_params)
        elif ssl_params:
            raise ValueError("提供了 SSL_* 参数但未启用 SSL 扩展")

        proxy_port = socks.get('port')
        if proxy_port is None:
            proxy_port = DEFAULT_PORT

        target_port = params.pop('port', None)
        if target_port is None:
            target_port = params.pop('service', None)
        if params.get('host') is None or target_port is None:
            raise ValueError("缺少目标 host/port 参数")
        target_host = params.pop('host')
        if params:
            raise ValueError(f"未知参数: {', '.join(sorted(params))}")

        return cls(
            target=Endpoint(target_host, int(target_port)),
            proxy=Endpoint(socks['host'], int(proxy_port)),
            auth=auth,
            tls=tls,
        )


def parse_proxy_url(url: str) -> Tuple[Endpoint, Optional[ProxyAuth]]:
    """
    解析 socks5://[user:pass@]host[:port] 形式的代理地址

    Args:
        url: 代理 URL

    Returns:
        Tuple[Endpoint, Optional[ProxyAuth]]: (代理端点, 认证参数)
    """
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in ('socks5', 'socks5h'):
        raise ValueError(f"不支持的代理协议: {parsed.scheme!r}")
    if not parsed.hostname:
        raise ValueError("代理 URL 缺少主机名")

    auth = None
    if parsed.username:
        auth = ProxyAuth(urllib.parse.unquote(parsed.username),
                         urllib.parse.unquote(parsed.password or ''))
    return Endpoint(parsed.hostname, parsed.port or DEFAULT_PORT), auth
