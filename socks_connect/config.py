"""
SOCKS5 连接器 - 配置管理模块

从 YAML 配置文件和环境变量加载连接器配置。

配置文件格式（config.yaml）:

    socks:
      proxy_host: 127.0.0.1
      proxy_port: 1080
      username: alice
      password: secret
      dial_timeout: 10
      handshake_timeout: 10
      tls_timeout: 15
      ca_cert: ca.crt
      verify: true

    logging:
      level: INFO

环境变量（优先于配置文件）:
    SOCKS_HOST, SOCKS_PORT, SOCKS_USERNAME, SOCKS_PASSWORD,
    SOCKS_DIAL_TIMEOUT, SOCKS_HANDSHAKE_TIMEOUT, SOCKS_TLS_TIMEOUT,
    SOCKS_CA_CERT, SOCKS_VERIFY
"""

import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import yaml

from .connection import ConnectionRequest, Endpoint, ProxyAuth, TLSOptions
from .errors import Stage
from .protocol import DEFAULT_PORT

logger = logging.getLogger('socks-connect-config')

ENV_OVERRIDES = {
    'proxy_host': 'SOCKS_HOST',
    'proxy_port': 'SOCKS_PORT',
    'username': 'SOCKS_USERNAME',
    'password': 'SOCKS_PASSWORD',
    'dial_timeout': 'SOCKS_DIAL_TIMEOUT',
    'handshake_timeout': 'SOCKS_HANDSHAKE_TIMEOUT',
    'tls_timeout': 'SOCKS_TLS_TIMEOUT',
    'ca_cert': 'SOCKS_CA_CERT',
    'verify': 'SOCKS_VERIFY',
}


def _optional_float(value) -> Optional[float]:
    if value is None or value == '':
        return None
    return float(value)


def _as_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).lower() in ('1', 'true', 'yes', 'on')


@dataclass
class ConnectorConfig:
    """
    连接器配置数据类

    所有超时默认为 None，即不设超时，由调用方决定是否需要。

    Attributes:
        proxy_host: SOCKS5 代理地址（默认: "127.0.0.1"）
        proxy_port: SOCKS5 代理端口（默认: 1080）
        username: 代理用户名（可选）
        password: 代理密码（可选）
        dial_timeout: 连接代理超时（秒）
        handshake_timeout: SOCKS5 握手超时（秒）
        tls_timeout: TLS 升级超时（秒）
        ca_cert: TLS 升级使用的 CA 证书路径（可选）
        verify: TLS 升级时是否校验证书（默认: True）
    """
    proxy_host: str = "127.0.0.1"
    proxy_port: int = DEFAULT_PORT
    username: Optional[str] = None
    password: Optional[str] = None
    dial_timeout: Optional[float] = None
    handshake_timeout: Optional[float] = None
    tls_timeout: Optional[float] = None
    ca_cert: Optional[str] = None
    verify: bool = True

    @property
    def proxy(self) -> Endpoint:
        return Endpoint(self.proxy_host, self.proxy_port)

    @property
    def auth(self) -> Optional[ProxyAuth]:
        if not self.username:
            return None
        return ProxyAuth(self.username, self.password or '')

    def deadline(self) -> Callable[[Stage], Optional[float]]:
        """
        返回各阶段的超时钩子
        """
        timeouts = {
            Stage.DIAL: self.dial_timeout,
            Stage.SOCKS: self.handshake_timeout,
            Stage.SSL: self.tls_timeout,
        }
        return timeouts.get

    def tls_options(self, server_hostname: Optional[str] = None) -> TLSOptions:
        return TLSOptions(server_hostname=server_hostname, ca_cert=self.ca_cert,
                          verify=self.verify)

    def request(self, target: Endpoint, tls: bool = False,
                server_hostname: Optional[str] = None) -> ConnectionRequest:
        """
        用当前配置构造连接请求

        Args:
            target: 目标端点
            tls: 是否升级到 TLS
            server_hostname: TLS 主机名
        """
        return ConnectionRequest(
            target=target,
            proxy=self.proxy,
            auth=self.auth,
            tls=self.tls_options(server_hostname) if tls else None,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any], environ: Optional[Dict[str, str]] = None) -> 'ConnectorConfig':
        """
        从配置字典的 socks 段加载配置，环境变量优先

        Args:
            data: load_config() 返回的配置字典
            environ: 环境变量（默认 os.environ）
        """
        environ = os.environ if environ is None else environ
        values = dict(data.get('socks') or {})
        for key, env_name in ENV_OVERRIDES.items():
            if env_name in environ:
                values[key] = environ[env_name]

        unknown = set(values) - set(ENV_OVERRIDES)
        if unknown:
            logger.warning(f"忽略未知配置项: {', '.join(sorted(unknown))}")

        return cls(
            proxy_host=values.get('proxy_host', "127.0.0.1"),
            proxy_port=int(values.get('proxy_port', DEFAULT_PORT)),
            username=values.get('username') or None,
            password=values.get('password') or None,
            dial_timeout=_optional_float(values.get('dial_timeout')),
            handshake_timeout=_optional_float(values.get('handshake_timeout')),
            tls_timeout=_optional_float(values.get('tls_timeout')),
            ca_cert=values.get('ca_cert') or None,
            verify=_as_bool(values.get('verify', True)),
        )

    @classmethod
    def from_file(cls, path: str, environ: Optional[Dict[str, str]] = None) -> 'ConnectorConfig':
        return cls.from_dict(load_config(path), environ)


def load_config(path: str) -> dict:
    """
    从 YAML 文件加载配置

    参数:
        path: 配置文件路径

    返回:
        配置字典，文件不存在时返回空字典
    """
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.warning(f"配置文件 {path} 未找到，使用默认配置")
        return {}
