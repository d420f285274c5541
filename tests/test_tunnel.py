"""End-to-end tests for CONNECT and WebSocket tunnels over loopback sockets."""

import asyncio
import socket
import struct
import time
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from veil.core.exceptions import MalformedRequest
from veil.network.resolver import ResolverChain, StaticTableStrategy
from veil.proxy.protocol import CONNECT_ESTABLISHED, parse_request_head
from veil.proxy.tunnel import parse_ws_target

from .conftest import make_context, open_client, read_head, wait_for_condition


def unused_port() -> int:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


async def connect_through(server, authority: str, early: bytes = b""):
    reader, writer = await open_client(server)
    writer.write(f"CONNECT {authority} HTTP/1.1\r\nHost: {authority}\r\n\r\n".encode() + early)
    await writer.drain()
    return reader, writer


@pytest_asyncio.fixture
async def half_close_server():
    """Reads until EOF, then answers with what it got and closes."""
    writers = set()

    async def handle(reader, writer):
        writers.add(writer)
        try:
            data = await reader.read()
            writer.write(b"got:" + data)
            await writer.drain()
        except ConnectionError:
            pass
        finally:
            writer.close()
            writers.discard(writer)

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    yield server.sockets[0].getsockname()[1]
    for writer in list(writers):
        writer.close()
    server.close()


class TestConnectTunnel:

    @pytest.mark.asyncio
    async def test_echo_round_trip_with_early_data(self, echo_server, start_proxy):
        context = make_context()
        server = await start_proxy(context)
        reader, writer = await connect_through(server, f"127.0.0.1:{echo_server}", early=b"early-bytes|")

        established = await asyncio.wait_for(reader.readexactly(len(CONNECT_ESTABLISHED)), 3)
        assert established == CONNECT_ESTABLISHED

        assert await asyncio.wait_for(reader.readexactly(12), 3) == b"early-bytes|"
        payload = b"x" * 2000
        writer.write(payload)
        await writer.drain()
        assert await asyncio.wait_for(reader.readexactly(len(payload)), 5) == payload

        writer.write_eof()
        assert await asyncio.wait_for(reader.read(), 3) == b""
        writer.close()

        assert await wait_for_condition(lambda: len(context.registry) == 0)
        stats = context.registry.get_stats()
        assert stats["failed"] == 0
        assert stats["bytes_sent"] == 12 + len(payload)
        assert stats["bytes_received"] == 12 + len(payload)
        # Only the leg toward the destination is shaped
        assert context.shaper.get_metrics()["bytes"] == 12 + len(payload)

    @pytest.mark.asyncio
    async def test_connect_by_hostname(self, echo_server, start_proxy):
        server = await start_proxy(make_context())
        reader, writer = await connect_through(server, f"echo.test:{echo_server}")
        assert await asyncio.wait_for(reader.readexactly(len(CONNECT_ESTABLISHED)), 3) == CONNECT_ESTABLISHED
        writer.write(b"ping")
        assert await asyncio.wait_for(reader.readexactly(4), 3) == b"ping"
        writer.close()

    @pytest.mark.asyncio
    async def test_half_close_forwarded_both_ways(self, half_close_server, start_proxy):
        server = await start_proxy(make_context())
        reader, writer = await connect_through(server, f"127.0.0.1:{half_close_server}")
        await asyncio.wait_for(reader.readexactly(len(CONNECT_ESTABLISHED)), 3)
        writer.write(b"request-body")
        writer.write_eof()
        assert await asyncio.wait_for(reader.read(), 3) == b"got:request-body"
        writer.close()

    @pytest.mark.asyncio
    async def test_malformed_target_gets_400_without_outbound(self, start_proxy):
        context = make_context()
        context.resolver.resolve = AsyncMock()
        server = await start_proxy(context)
        reader, writer = await connect_through(server, ":::notvalid")
        response = await asyncio.wait_for(reader.read(), 3)
        assert response.startswith(b"HTTP/1.1 400 Bad Request\r\n")
        context.resolver.resolve.assert_not_called()
        assert await wait_for_condition(lambda: context.registry.get_stats()["failed"] == 1)
        writer.close()

    @pytest.mark.asyncio
    async def test_resolution_failure_gets_502(self, start_proxy):
        context = make_context(resolver=ResolverChain([StaticTableStrategy({}, timeout=0.5)], timeout=0.5))
        server = await start_proxy(context)
        reader, writer = await connect_through(server, "unknown.invalid:443")
        response = await asyncio.wait_for(reader.read(), 3)
        assert response.startswith(b"HTTP/1.1 502 Bad Gateway\r\n")
        assert b"unknown.invalid" not in response
        writer.close()

    @pytest.mark.asyncio
    async def test_refused_connect_gets_502(self, start_proxy):
        server = await start_proxy(make_context())
        reader, writer = await connect_through(server, f"127.0.0.1:{unused_port()}")
        response = await asyncio.wait_for(reader.read(), 3)
        assert response.startswith(b"HTTP/1.1 502 Bad Gateway\r\n")
        writer.close()

    @pytest.mark.asyncio
    async def test_idle_timeout_closes_both_sides(self, silent_server, start_proxy):
        context = make_context(idle_timeout=0.3)
        server = await start_proxy(context)
        reader, writer = await connect_through(server, f"127.0.0.1:{silent_server.port}")
        await asyncio.wait_for(reader.readexactly(len(CONNECT_ESTABLISHED)), 3)

        started = time.monotonic()
        try:
            leftover = await asyncio.wait_for(reader.read(), 3)
        except ConnectionResetError:
            leftover = b""
        elapsed = time.monotonic() - started
        assert leftover == b""
        assert 0.25 <= elapsed < 2.0
        assert await wait_for_condition(lambda: len(silent_server.endings) == 1)
        assert await wait_for_condition(lambda: context.registry.get_stats()["failed"] == 1)
        writer.close()

    @pytest.mark.asyncio
    async def test_client_reset_tears_down_destination(self, silent_server, start_proxy):
        context = make_context()
        server = await start_proxy(context)
        reader, writer = await connect_through(server, f"127.0.0.1:{silent_server.port}")
        await asyncio.wait_for(reader.readexactly(len(CONNECT_ESTABLISHED)), 3)
        writer.write(b"partial")
        await writer.drain()
        assert await wait_for_condition(lambda: context.registry.get_stats()["active"] == 1)

        sock = writer.get_extra_info("socket")
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0))
        writer.transport.abort()

        assert await wait_for_condition(lambda: len(silent_server.endings) == 1)
        assert await wait_for_condition(lambda: context.registry.get_stats()["active"] == 0)
        assert context.registry.get_stats()["failed"] == 1

    @pytest.mark.asyncio
    async def test_rotation_does_not_sever_tunnel(self, echo_server, start_proxy):
        context = make_context()
        server = await start_proxy(context)
        reader, writer = await connect_through(server, f"127.0.0.1:{echo_server}")
        await asyncio.wait_for(reader.readexactly(len(CONNECT_ESTABLISHED)), 3)

        context.registry.rotate_pools()
        writer.write(b"still-here")
        assert await asyncio.wait_for(reader.readexactly(10), 3) == b"still-here"
        writer.close()


class TestWebSocketTunnel:

    @pytest.mark.asyncio
    async def test_upgrade_and_echo(self, echo_server, start_proxy):
        server = await start_proxy(make_context())
        reader, writer = await open_client(server)
        writer.write(
            f"GET /api/stream?target=127.0.0.1:{echo_server} HTTP/1.1\r\n"
            "Host: relay.test\r\n"
            "Upgrade: websocket\r\n"
            "Connection: Upgrade\r\n"
            "Sec-WebSocket-Key: dGhlIHNhbXBsZSBub25jZQ==\r\n"
            "Sec-WebSocket-Version: 13\r\n\r\n".encode()
        )
        head = await read_head(reader)
        assert head.startswith(b"HTTP/1.1 101 Switching Protocols\r\n")
        assert b"Sec-WebSocket-Accept: s3pPLMBiTxaQ9kYGzzhZRbK+xOo=\r\n" in head

        writer.write(b"\x81\x05hello")
        assert await asyncio.wait_for(reader.readexactly(7), 3) == b"\x81\x05hello"
        writer.close()

    @pytest.mark.asyncio
    async def test_missing_target_gets_400(self, start_proxy):
        server = await start_proxy(make_context())
        reader, writer = await open_client(server)
        writer.write(b"GET /api/stream HTTP/1.1\r\nHost: relay.test\r\nUpgrade: websocket\r\nConnection: Upgrade\r\n\r\n")
        response = await asyncio.wait_for(reader.read(), 3)
        assert response.startswith(b"HTTP/1.1 400 Bad Request\r\n")
        writer.close()

    @pytest.mark.asyncio
    async def test_missing_upgrade_header_gets_400(self, echo_server, start_proxy):
        server = await start_proxy(make_context())
        reader, writer = await open_client(server)
        writer.write(f"GET /api/stream?target=127.0.0.1:{echo_server} HTTP/1.1\r\nHost: relay.test\r\n\r\n".encode())
        response = await asyncio.wait_for(reader.read(), 3)
        assert response.startswith(b"HTTP/1.1 400 Bad Request\r\n")
        writer.close()


class TestParseWsTarget:

    def parse(self, target):
        return parse_ws_target(parse_request_head(f"GET /api/stream?target={target} HTTP/1.1\r\n\r\n".encode()))

    def test_host_port(self):
        target = self.parse("example.org:8080")
        assert (target.host, target.port, target.scheme) == ("example.org", 8080, "tcp")

    def test_url_default_ports(self):
        assert self.parse("https://example.org").port == 443
        assert self.parse("wss://example.org/chat").is_tls
        assert self.parse("http://example.org").port == 80

    @pytest.mark.parametrize("target", ["", "ftp://example.org", "https://:443", "bad_host!:80", "http://example.org:99999"])
    def test_rejected(self, target):
        with pytest.raises(MalformedRequest):
            self.parse(target)
