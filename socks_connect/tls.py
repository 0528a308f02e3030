"""
TLS 升级模块

在已经建立的 SOCKS5 隧道上启动 TLS 握手。升级后的流替换原来的流，
原来的流被标记为 detached，调用方不应再使用它。
"""

import hashlib
import logging
import ssl
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from cryptography import x509

from .connection import TLSOptions
from .errors import SslError
from .transport import Stream

logger = logging.getLogger('socks-connect-tls')


@dataclass
class PeerCertificate:
    """
    TLS 对端证书摘要

    Attributes:
        subject: 证书主体（RFC 4514 格式）
        issuer: 证书颁发者（RFC 4514 格式）
        not_valid_after: 过期时间（UTC）
        fingerprint: SHA-256 指纹（十六进制）
    """
    subject: str
    issuer: str
    not_valid_after: datetime
    fingerprint: str


def build_ssl_context(options: TLSOptions) -> ssl.SSLContext:
    """
    根据 TLS 选项创建客户端 SSL 上下文

    如果提供了 CA 证书，则用它验证服务器证书；verify 为 False 时跳过验证。

    Args:
        options: TLS 选项
    """
    if options.ssl_context is not None:
        return options.ssl_context

    ssl_context = ssl.create_default_context()
    if options.ca_cert:
        ssl_context.load_verify_locations(options.ca_cert)
    if not options.verify:
        ssl_context.check_hostname = False
        ssl_context.verify_mode = ssl.CERT_NONE
    if options.cert_file:
        ssl_context.load_cert_chain(options.cert_file, options.key_file)
    if options.alpn_protocols:
        ssl_context.set_alpn_protocols(options.alpn_protocols)
    return ssl_context


def describe_peer_certificate(ssl_object) -> Optional[PeerCertificate]:
    """
    解析对端证书

    Args:
        ssl_object: 连接的 ssl.SSLObject

    Returns:
        Optional[PeerCertificate]: 证书摘要，对端未提供证书时返回 None
    """
    if ssl_object is None:
        return None
    der = ssl_object.getpeercert(binary_form=True)
    if not der:
        return None

    cert = x509.load_der_x509_certificate(der)
    return PeerCertificate(
        subject=cert.subject.rfc4514_string(),
        issuer=cert.issuer.rfc4514_string(),
        not_valid_after=cert.not_valid_after_utc,
        fingerprint=hashlib.sha256(der).hexdigest(),
    )


async def upgrade(stream: Stream, options: TLSOptions) -> Stream:
    """
    将隧道升级到 TLS

    Args:
        stream: 已建立的隧道流（升级后不可再使用）
        options: TLS 选项

    Returns:
        Stream: TLS 加密的新流

    Raises:
        SslError: 无法升级
    """
    if stream.pending:
        raise SslError(f"隧道中已有 {len(stream.pending)} 字节未读数据，无法启动 TLS")

    server_hostname = options.server_hostname or stream.target.host
    logger.info(f"升级到 TLS 连接（server_hostname={server_hostname}）")

    ssl_context = build_ssl_context(options)
    kwargs = {}
    if options.handshake_timeout is not None:
        kwargs['ssl_handshake_timeout'] = options.handshake_timeout

    try:
        await stream.writer.start_tls(ssl_context, server_hostname=server_hostname, **kwargs)
    except Exception as e:
        logger.error(f"TLS 连接升级失败: {e}")
        raise

    upgraded = Stream(stream.reader, stream.writer, proxy=stream.proxy,
                      target=stream.target, bound=stream.bound)
    upgraded.tls = True
    upgraded.peer_certificate = describe_peer_certificate(
        stream.writer.get_extra_info('ssl_object'))
    stream.detached = True

    if upgraded.peer_certificate:
        logger.info(f"TLS 连接升级成功，对端证书: {upgraded.peer_certificate.subject}")
    else:
        logger.info("TLS 连接升级成功")
    return upgraded
