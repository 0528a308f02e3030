#!/usr/bin/env python3
"""
测试 SOCKS5 连接器

使用本地模拟代理测试完整的连接流程:
1. 无认证 / 用户名密码连接成功
2. 逐字节响应
3. 各阶段失败的标记（dial / socks / ssl）以及传输关闭
4. 取消
5. 回调通道和超时钩子
"""

import asyncio
import sys
import os

# 添加当前目录到路径
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from fake_proxy import FakeSOCKS5Proxy
from socks_connect.connection import ConnectionRequest, Endpoint, ProxyAuth, TLSOptions
from socks_connect.connector import Completion, SOCKSConnector, socks_connect
from socks_connect.errors import DialError, FailureReason, SocksError, SslError, Stage, TaggedError, tag
from socks_connect.transport import Transport, dial

TARGET = Endpoint('93.184.216.34', 80)
CONNECT_REQUEST = b'\x05\x01\x00\x01\x5d\xb8\xd8\x22\x00\x50'


def make_request(proxy: FakeSOCKS5Proxy, auth=None, tls=None) -> ConnectionRequest:
    return ConnectionRequest(target=TARGET, proxy=Endpoint('127.0.0.1', proxy.port),
                             auth=auth, tls=tls)


async def expect_tagged(coro, stage: Stage) -> TaggedError:
    try:
        await coro
    except TaggedError as e:
        assert e.stage is stage, f"阶段应为 {stage.value}，实际为 {e.stage.value}"
        return e
    raise AssertionError(f"应抛出 {stage.value} 阶段的 TaggedError")


async def test_no_auth_connect_and_echo():
    """无认证连接成功并能收发数据"""
    print("\n=== 测试: 无认证连接 ===")
    async with FakeSOCKS5Proxy() as proxy:
        stream = await SOCKSConnector().establish(make_request(proxy))

        assert proxy.received == [b'\x05\x01\x00', CONNECT_REQUEST]
        assert stream.bound == ('10.0.0.1', 4321)
        assert not stream.tls

        stream.write(b'ping')
        await stream.drain()
        assert await stream.readexactly(4) == b'ping'

        stream.close()
        await stream.wait_closed()
    print("✓ 测试通过")


async def test_username_password_connect():
    """用户名/密码认证后连接成功"""
    print("\n=== 测试: 用户名/密码连接 ===")
    async with FakeSOCKS5Proxy(method=0x02) as proxy:
        stream = await SOCKSConnector().establish(make_request(proxy, ProxyAuth('alice', 's3cret')))

        assert proxy.credentials == ('alice', 's3cret')
        assert proxy.received == [b'\x05\x02\x00\x02', b'\x01\x05alice\x06s3cret', CONNECT_REQUEST]
        stream.close()
        await stream.wait_closed()
    print("✓ 测试通过")


async def test_byte_by_byte_replies():
    """代理逐字节发送响应"""
    async with FakeSOCKS5Proxy(method=0x02, chunk_size=1) as proxy:
        stream = await SOCKSConnector().establish(make_request(proxy, ProxyAuth('alice', 's3cret')))
        assert stream.bound == ('10.0.0.1', 4321)
        stream.close()
        await stream.wait_closed()


async def test_tunnel_data_after_reply_is_preserved():
    """与 CONNECT 响应一起到达的隧道数据不会丢失"""
    async with FakeSOCKS5Proxy(tunnel_payload=b'220 ready\r\n') as proxy:
        stream = await SOCKSConnector().establish(make_request(proxy))
        assert await stream.readline() == b'220 ready\r\n'
        stream.close()
        await stream.wait_closed()


async def test_no_acceptable_method_closes_transport():
    """代理返回 0xFF 时标记为 socks 并关闭传输"""
    print("\n=== 测试: 0xFF 方法 ===")
    async with FakeSOCKS5Proxy(method=0xFF) as proxy:
        error = await expect_tagged(SOCKSConnector().establish(make_request(proxy)), Stage.SOCKS)
        assert isinstance(error.cause, SocksError)
        assert error.cause.reason is FailureReason.NO_ACCEPTABLE_METHOD

        await asyncio.wait_for(proxy.client_closed.wait(), timeout=5)
        print(f"  错误: {error}")
    print("✓ 测试通过")


async def test_auth_rejected():
    async with FakeSOCKS5Proxy(method=0x02, auth_status=0x01) as proxy:
        error = await expect_tagged(
            SOCKSConnector().establish(make_request(proxy, ProxyAuth('alice', 'wrong'))), Stage.SOCKS)
        assert error.cause.reason is FailureReason.AUTH_REJECTED
        await asyncio.wait_for(proxy.client_closed.wait(), timeout=5)


async def test_connect_rejected_never_delivers_stream():
    """CONNECT 被拒绝时不交付流"""
    async with FakeSOCKS5Proxy(reply_code=0x02) as proxy:
        error = await expect_tagged(SOCKSConnector().establish(make_request(proxy)), Stage.SOCKS)
        assert error.cause.reason is FailureReason.CONNECT_REJECTED
        assert error.cause.reply_code == 0x02
        await asyncio.wait_for(proxy.client_closed.wait(), timeout=5)


async def test_unexpected_close_is_socks_failure():
    """握手中途代理关闭连接标记为 socks，而不是 dial"""
    print("\n=== 测试: 握手中途关闭 ===")
    for close_after, auth in (('methods', None), ('method_partial', None),
                              ('auth', ProxyAuth('alice', 's3cret')), ('connect', None)):
        method = 0x02 if auth else 0x00
        async with FakeSOCKS5Proxy(method=method, close_after=close_after) as proxy:
            error = await expect_tagged(SOCKSConnector().establish(make_request(proxy, auth)),
                                        Stage.SOCKS)
            assert error.cause.reason is FailureReason.UNEXPECTED_CLOSE
            print(f"  {close_after}: {error}")
    print("✓ 测试通过")


async def test_dial_failure():
    """代理不可达标记为 dial"""
    proxy = await FakeSOCKS5Proxy().start()
    port = proxy.port
    await proxy.stop()

    request = ConnectionRequest(target=TARGET, proxy=Endpoint('127.0.0.1', port))
    await expect_tagged(SOCKSConnector().establish(request), Stage.DIAL)


async def test_tls_failure_is_ssl_and_closes_stream():
    """TLS 升级失败标记为 ssl，升级前的流被关闭"""
    print("\n=== 测试: TLS 升级失败 ===")
    seen = []

    async def failing_upgrader(stream, options):
        seen.append(stream)
        raise SslError("握手失败")

    async with FakeSOCKS5Proxy() as proxy:
        connector = SOCKSConnector(upgrader=failing_upgrader)
        error = await expect_tagged(connector.establish(make_request(proxy, tls=TLSOptions())),
                                    Stage.SSL)
        assert isinstance(error.cause, SslError)
        assert seen and seen[0].is_closing(), "升级前的流应被关闭"
        await asyncio.wait_for(proxy.client_closed.wait(), timeout=5)
    print("✓ 测试通过")


async def test_tls_upgrade_replaces_stream():
    """TLS 升级成功时交付升级后的流"""
    async def fake_upgrader(stream, options):
        stream.detached = True
        stream.tls = True
        return stream

    async with FakeSOCKS5Proxy() as proxy:
        connector = SOCKSConnector(upgrader=fake_upgrader)
        stream = await connector.establish(make_request(proxy, tls=TLSOptions()))
        assert stream.tls
        stream.close()
        await stream.wait_closed()


async def test_cancel_before_dial_completes():
    """dial 完成前取消不会开始握手"""
    print("\n=== 测试: dial 前取消 ===")
    started = asyncio.Event()
    handshakes = []

    async def slow_dialer(endpoint):
        started.set()
        await asyncio.sleep(3600)

    connector = SOCKSConnector(dialer=slow_dialer)
    original = connector._handshake

    async def tracking_handshake(transport, request):
        handshakes.append(transport)
        return await original(transport, request)

    connector._handshake = tracking_handshake
    task = asyncio.ensure_future(connector.establish(
        ConnectionRequest(target=TARGET, proxy=Endpoint('127.0.0.1', 1080))))
    await started.wait()
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    else:
        raise AssertionError("任务应被取消")
    assert handshakes == []
    print("✓ 测试通过")


async def test_cancel_mid_handshake_closes_transport():
    """握手中取消会关闭传输且不调用任何回调"""
    print("\n=== 测试: 握手中取消 ===")
    calls = []
    async with FakeSOCKS5Proxy(hang_after='connect') as proxy:
        task = SOCKSConnector().connect(make_request(proxy), on_stream=calls.append,
                                        on_error=calls.append)
        for _ in range(200):
            if len(proxy.received) == 2:
                break
            await asyncio.sleep(0.01)
        assert len(proxy.received) == 2, "代理应已收到 CONNECT 请求"

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        await asyncio.wait_for(proxy.client_closed.wait(), timeout=5)
        await asyncio.sleep(0.05)
        assert calls == [], "取消后不应调用回调"
    print("✓ 测试通过")


async def test_callback_channel_success_and_error():
    """回调通道只交付一次结果"""
    streams = []
    errors = []
    async with FakeSOCKS5Proxy() as proxy:
        result = await SOCKSConnector().connect(make_request(proxy), on_stream=streams.append,
                                                on_error=errors.append)
        assert streams == [result] and errors == []
        result.close()
        await result.wait_closed()

    async with FakeSOCKS5Proxy(method=0xFF) as proxy:
        result = await SOCKSConnector().connect(make_request(proxy), on_stream=streams.append,
                                                on_error=errors.append)
        assert result is None
        assert len(errors) == 1 and errors[0].stage is Stage.SOCKS
        assert len(streams) == 1


async def test_on_connected_receives_socket():
    sockets = []
    async with FakeSOCKS5Proxy() as proxy:
        stream = await SOCKSConnector().connect(make_request(proxy), on_connected=sockets.append)
        assert sockets and sockets[0] is stream.get_extra_info('socket')
        stream.close()
        await stream.wait_closed()


async def test_connect_rejects_two_success_callbacks():
    request = ConnectionRequest(target=TARGET, proxy=Endpoint('127.0.0.1', 1080))
    try:
        SOCKSConnector().connect(request, on_stream=print, on_connected=print)
    except ValueError:
        pass
    else:
        raise AssertionError("同时提供 on_stream 和 on_connected 应报错")


async def test_handshake_deadline():
    """握手超时标记为 socks"""
    deadlines = {Stage.SOCKS: 0.2}
    async with FakeSOCKS5Proxy(hang_after='methods') as proxy:
        connector = SOCKSConnector(deadline=deadlines.get)
        error = await expect_tagged(connector.establish(make_request(proxy)), Stage.SOCKS)
        assert error.cause.reason is FailureReason.TIMEOUT
        await asyncio.wait_for(proxy.client_closed.wait(), timeout=5)


async def test_dial_deadline():
    """dial 超时标记为 dial"""
    async def slow_dialer(endpoint):
        await asyncio.sleep(3600)

    connector = SOCKSConnector(dialer=slow_dialer, deadline={Stage.DIAL: 0.05}.get)
    await expect_tagged(connector.establish(
        ConnectionRequest(target=TARGET, proxy=Endpoint('127.0.0.1', 1080))), Stage.DIAL)


async def test_socks_connect_keyword_style():
    """关键字参数风格的便捷函数"""
    async with FakeSOCKS5Proxy(method=0x02) as proxy:
        stream = await socks_connect(SOCKS_host='127.0.0.1', SOCKS_port=proxy.port,
                                     SOCKS_username='bob', SOCKS_password='pw',
                                     host='93.184.216.34', port=80)
        assert proxy.credentials == ('bob', 'pw')
        stream.close()
        await stream.wait_closed()


async def test_custom_dialer_receives_proxy_endpoint():
    dialed = []

    async def recording_dialer(endpoint):
        dialed.append(endpoint)
        return await dial(endpoint)

    async with FakeSOCKS5Proxy() as proxy:
        stream = await SOCKSConnector(dialer=recording_dialer).establish(make_request(proxy))
        assert dialed == [Endpoint('127.0.0.1', proxy.port)]
        stream.close()
        await stream.wait_closed()

class ResetWriter:
    """只记录写入的写入器，用于模拟读取时被重置的连接"""

    def __init__(self):
        self.written = []
        self.closed = False

    def write(self, data):
        self.written.append(data)

    def close(self):
        self.closed = True


async def test_read_error_mid_handshake_is_socks_failure():
    """握手中途读取出错标记为 socks，并保留底层错误"""
    print("\n=== 测试: 握手中途连接被重置 ===")
    writer = ResetWriter()

    async def resetting_dialer(endpoint):
        reader = asyncio.StreamReader()
        reader.set_exception(ConnectionResetError("连接被对端重置"))
        return Transport(reader, writer, endpoint)

    request = ConnectionRequest(target=TARGET, proxy=Endpoint('127.0.0.1', 1080))
    error = await expect_tagged(SOCKSConnector(dialer=resetting_dialer).establish(request), Stage.SOCKS)

    assert error.cause.reason is FailureReason.UNEXPECTED_CLOSE
    assert isinstance(error.cause.__cause__, ConnectionResetError)
    assert writer.written == [b'\x05\x01\x00']
    assert writer.closed, "失败后应关闭传输"
    print(f"  {error}")
    print("✓ 测试通过")


def test_tag_keeps_earliest_stage():
    """已经带标记的错误不会被后面的阶段覆盖"""
    reset = ConnectionResetError("重置")
    first = tag(Stage.SOCKS, reset)
    assert first.stage is Stage.SOCKS
    assert first.cause.reason is FailureReason.UNEXPECTED_CLOSE
    assert first.__cause__ is first.cause
    assert first.cause.__cause__ is reset

    assert tag(Stage.SSL, first) is first
    assert tag(Stage.DIAL, first) is first


def test_tag_classifies_by_stage():
    """按阶段包装底层异常"""
    refused = ConnectionRefusedError("拒绝连接")
    dial_error = tag(Stage.DIAL, refused)
    assert isinstance(dial_error.cause, DialError)
    assert dial_error.cause.__cause__ is refused

    timeout = tag(Stage.SOCKS, asyncio.TimeoutError())
    assert timeout.cause.reason is FailureReason.TIMEOUT

    rejected = SocksError(FailureReason.CONNECT_REJECTED, "拒绝", reply_code=0x05)
    assert tag(Stage.SOCKS, rejected).cause is rejected

    ssl_error = tag(Stage.SSL, TimeoutError())
    assert isinstance(ssl_error.cause, SslError)
    assert "超时" in str(ssl_error)



def test_completion_settles_once():
    """完成通道只结算一次"""
    delivered = []
    completion = Completion(on_stream=delivered.append, on_error=delivered.append)
    first = TaggedError(Stage.SOCKS, SocksError(FailureReason.UNEXPECTED_CLOSE, "关闭"))
    assert completion.fail(first)
    assert not completion.fail(TaggedError(Stage.SSL, SslError("晚到的错误")))
    assert not completion.resolve(object())
    assert not completion.cancel()
    assert delivered == [first]
    assert completion.outcome is first

    cancelled = Completion(on_stream=delivered.append)
    assert cancelled.cancel()
    assert not cancelled.resolve(object())
    assert cancelled.cancelled and len(delivered) == 1


async def main():
    """运行所有测试"""
    print("=" * 60)
    print("SOCKS5 连接器测试")
    print("=" * 60)

    tests = [(name, func) for name, func in globals().items()
             if name.startswith('test_') and callable(func)]
    passed = 0
    failed = 0

    for name, test_func in tests:
        try:
            result = test_func()
            if asyncio.iscoroutine(result):
                await result
            passed += 1
        except AssertionError as e:
            print(f"✗ 测试失败: {name} - {e}")
            failed += 1
        except Exception as e:
            print(f"✗ 测试异常: {name} - {e}")
            failed += 1

    print("\n" + "=" * 60)
    print(f"测试结果: 通过={passed}, 失败={failed}")
    print("=" * 60)

    return failed == 0


if __name__ == '__main__':
    success = asyncio.run(main())
    exit(0 if success else 1)
