"""
End-to-end tests for the forwarding server: client → listener → SOCKS5 proxy → upstream.
"""

import asyncio
import errno
import logging
import os
import signal
import socket

import pytest

from mcsocks.config import ForwarderConfig
from mcsocks.resolver import TargetResolver
from mcsocks.robustness import ListenerFatalError, ResolutionFailed
from mcsocks.session import SESSION_STATE_CLOSED, SESSION_STATE_FAILED
from mcsocks.supervisor import ForwardingServer, serve

from mock_servers import FakeDNS, MockSocks5Proxy, MockUpstream, exchange, srv_record

SRV_NAME = "_minecraft._tcp.mc.example"


def make_config(proxy_address: str, **kwargs) -> ForwarderConfig:
    return ForwarderConfig(
        server="mc.example",
        proxy=proxy_address,
        listen_host="127.0.0.1",
        listen_port=0,
        connect_timeout=5.0,
        **kwargs,
    )


class FlakyResolver:
    """Fails the Nth call, resolves every other call to target.example."""

    def __init__(self, fail_on: int):
        self.fail_on = fail_on
        self.calls = 0
        self._inner = TargetResolver(dns_resolver=FakeDNS({(SRV_NAME, "SRV"): [srv_record("target.example.")]}))

    async def resolve(self, domain):
        self.calls += 1
        if self.calls == self.fail_on:
            raise ResolutionFailed(domain, "injected failure")
        return await self._inner.resolve(domain)


class Harness:
    def __init__(self, server: ForwardingServer):
        self.server = server
        self.task = None

    async def __aenter__(self):
        await self.server.start()
        self.task = asyncio.create_task(self.server.serve_forever())
        return self

    async def __aexit__(self, *exc):
        await self.server.stop()
        await asyncio.wait_for(self.task, 5)

    @property
    def port(self) -> int:
        return self.server.sockname[1]


@pytest.mark.asyncio
async def test_ping_pong_through_srv_target(caplog):
    upstream = await MockUpstream(reply=b"pong").start()
    proxy = await MockSocks5Proxy(upstream=("127.0.0.1", upstream.port)).start()
    fake_dns = FakeDNS({(SRV_NAME, "SRV"): [srv_record("target.example.")]})
    server = ForwardingServer(make_config(proxy.address), resolver=TargetResolver(dns_resolver=fake_dns))

    try:
        with caplog.at_level(logging.INFO, logger="mcsocks"):
            async with Harness(server) as h:
                reply = await exchange(h.port, b"ping")
    finally:
        await proxy.stop()
        await upstream.stop()

    assert proxy.connect_requests == [("target.example", 25565)]
    assert bytes(upstream.received) == b"ping"
    assert reply == b"pong"
    assert "to target.example:25565" in caplog.text


@pytest.mark.asyncio
async def test_no_record_found_keeps_accepting(caplog):
    upstream = await MockUpstream(reply=b"pong").start()
    proxy = await MockSocks5Proxy(upstream=("127.0.0.1", upstream.port)).start()
    fake_dns = FakeDNS()
    server = ForwardingServer(make_config(proxy.address), resolver=TargetResolver(dns_resolver=fake_dns))

    try:
        async with Harness(server) as h:
            first = await exchange(h.port, b"ping")
            # the domain appears; the very next connection must work
            fake_dns.answers[(SRV_NAME, "SRV")] = [srv_record("target.example.")]
            second = await exchange(h.port, b"ping")
    finally:
        await proxy.stop()
        await upstream.stop()

    assert first == b""
    assert second == b"pong"
    assert "NoRecordFound" in caplog.text
    assert proxy.connect_requests == [("target.example", 25565)]


@pytest.mark.asyncio
async def test_auth_rejection_closes_client_only(caplog):
    proxy = await MockSocks5Proxy(require_auth=True, valid_credentials=("alice", "right")).start()
    fake_dns = FakeDNS({(SRV_NAME, "SRV"): [srv_record("target.example.")]})
    config = make_config(proxy.address, username="alice", password="wrong")
    server = ForwardingServer(config, resolver=TargetResolver(dns_resolver=fake_dns))

    try:
        async with Harness(server) as h:
            reply = await exchange(h.port, b"ping")
            assert reply == b""
            assert not h.task.done()
            # still serving
            assert await exchange(h.port, b"ping") == b""
            assert not h.task.done()
    finally:
        await proxy.stop()

    assert "ConnectError" in caplog.text
    assert proxy.auth_attempts == [("alice", "wrong"), ("alice", "wrong")]


@pytest.mark.asyncio
async def test_resolution_failure_is_isolated():
    upstream = await MockUpstream(reply=b"pong").start()
    proxy = await MockSocks5Proxy(upstream=("127.0.0.1", upstream.port)).start()
    resolver = FlakyResolver(fail_on=2)
    server = ForwardingServer(make_config(proxy.address), resolver=resolver)

    try:
        async with Harness(server) as h:
            replies = await asyncio.gather(*(exchange(h.port, b"ping") for _ in range(3)))
    finally:
        await proxy.stop()
        await upstream.stop()

    assert sorted(replies) == [b"", b"pong", b"pong"]
    assert resolver.calls == 3


@pytest.mark.asyncio
async def test_handle_connection_states():
    proxy = await MockSocks5Proxy(reply_code=0x02).start()
    fake_dns = FakeDNS({(SRV_NAME, "SRV"): [srv_record("target.example.")]})
    server = ForwardingServer(make_config(proxy.address), resolver=TargetResolver(dns_resolver=fake_dns))

    left, right = socket.socketpair()
    try:
        session = await server.handle_connection(left, ("127.0.0.1", 50000))
    finally:
        right.close()
        await proxy.stop()

    assert session.state == SESSION_STATE_FAILED
    assert session.error.kind == "ConnectError"
    assert str(session.target) == "target.example:25565"


@pytest.mark.asyncio
async def test_relayed_session_ends_closed():
    upstream = await MockUpstream(reply=b"pong").start()
    proxy = await MockSocks5Proxy(upstream=("127.0.0.1", upstream.port)).start()
    fake_dns = FakeDNS({(SRV_NAME, "SRV"): [srv_record("target.example.")]})
    server = ForwardingServer(make_config(proxy.address), resolver=TargetResolver(dns_resolver=fake_dns))

    left, right = socket.socketpair()
    right.sendall(b"ping")
    right.shutdown(socket.SHUT_WR)
    try:
        session = await asyncio.wait_for(server.handle_connection(left, ("127.0.0.1", 50001)), 5)
    finally:
        right.close()
        await proxy.stop()
        await upstream.stop()

    assert session.state == SESSION_STATE_CLOSED
    assert session.bytes_up == 4


@pytest.mark.asyncio
async def test_bind_failure_is_listener_fatal():
    holder = socket.socket()
    holder.bind(("127.0.0.1", 0))
    holder.listen(1)
    port = holder.getsockname()[1]

    config = ForwarderConfig(server="mc.example", proxy="127.0.0.1:1080", listen_host="127.0.0.1", listen_port=port)
    server = ForwardingServer(config)
    try:
        with pytest.raises(ListenerFatalError):
            await server.start()
    finally:
        holder.close()
    assert server.sock is None


@pytest.mark.asyncio
async def test_stop_cancels_inflight_sessions():
    proxy = await MockSocks5Proxy(stall=True).start()
    fake_dns = FakeDNS({(SRV_NAME, "SRV"): [srv_record("target.example.")]})
    server = ForwardingServer(make_config(proxy.address), resolver=TargetResolver(dns_resolver=fake_dns))

    try:
        async with Harness(server) as h:
            reader, writer = await asyncio.open_connection("127.0.0.1", h.port)
            for _ in range(50):
                if server.active_sessions:
                    break
                await asyncio.sleep(0.02)
            assert server.active_sessions == 1
        assert server.active_sessions == 0
        assert await asyncio.wait_for(reader.read(), 5) == b""
        writer.close()
    finally:
        await proxy.stop()


def flaky_accept(loop, monkeypatch, error, gate=None, after=0):
    """Make loop.sock_accept raise ``error`` once ``after`` real accepts have happened."""
    real_accept = loop.sock_accept
    calls = {"n": 0}

    async def sock_accept(sock):
        calls["n"] += 1
        if calls["n"] == after + 1:
            if gate is not None:
                await gate.wait()
            raise error
        return await real_accept(sock)

    monkeypatch.setattr(loop, "sock_accept", sock_accept)
    return calls


@pytest.mark.asyncio
async def test_aborted_accept_keeps_accepting(monkeypatch, caplog):
    upstream = await MockUpstream(reply=b"pong").start()
    proxy = await MockSocks5Proxy(upstream=("127.0.0.1", upstream.port)).start()
    fake_dns = FakeDNS({(SRV_NAME, "SRV"): [srv_record("target.example.")]})
    server = ForwardingServer(make_config(proxy.address), resolver=TargetResolver(dns_resolver=fake_dns))
    calls = flaky_accept(asyncio.get_running_loop(), monkeypatch, ConnectionAbortedError("reset while queued"))

    try:
        async with Harness(server) as h:
            reply = await exchange(h.port, b"ping")
            assert not h.task.done()
    finally:
        await proxy.stop()
        await upstream.stop()

    assert reply == b"pong"
    assert calls["n"] >= 2
    assert "Client went away before accept completed" in caplog.text


@pytest.mark.asyncio
async def test_accept_failure_is_listener_fatal(monkeypatch):
    proxy = await MockSocks5Proxy(stall=True).start()
    fake_dns = FakeDNS({(SRV_NAME, "SRV"): [srv_record("target.example.")]})
    server = ForwardingServer(make_config(proxy.address), resolver=TargetResolver(dns_resolver=fake_dns))
    gate = asyncio.Event()
    flaky_accept(
        asyncio.get_running_loop(),
        monkeypatch,
        OSError(errno.EMFILE, "Too many open files"),
        gate=gate,
        after=1,
    )

    try:
        await server.start()
        task = asyncio.create_task(server.serve_forever())
        reader, writer = await asyncio.open_connection("127.0.0.1", server.sockname[1])
        for _ in range(50):
            if server.active_sessions:
                break
            await asyncio.sleep(0.02)
        assert server.active_sessions == 1

        gate.set()
        with pytest.raises(ListenerFatalError) as exc_info:
            await asyncio.wait_for(task, 5)
        assert exc_info.value.cause.errno == errno.EMFILE
        assert server.active_sessions == 0
        assert server.sock is None
        assert await asyncio.wait_for(reader.read(), 5) == b""
        writer.close()
    finally:
        await proxy.stop()


@pytest.mark.asyncio
async def test_serve_returns_on_sigterm(caplog):
    config = make_config("127.0.0.1:1080", nameservers=("127.0.0.1",))
    default_handler = signal.getsignal(signal.SIGTERM)

    with caplog.at_level(logging.INFO, logger="mcsocks"):
        task = asyncio.create_task(serve(config))
        for _ in range(50):
            if signal.getsignal(signal.SIGTERM) is not default_handler:
                break
            await asyncio.sleep(0.02)
        assert signal.getsignal(signal.SIGTERM) is not default_handler

        os.kill(os.getpid(), signal.SIGTERM)
        await asyncio.wait_for(task, 5)

    assert "Forwarder stopped" in caplog.text
