"""Tests for the HTTP/1.1 wire helpers."""

import asyncio

import pytest

from veil.core.exceptions import MalformedRequest
from veil.proxy.protocol import (
    body_framing,
    copy_chunked,
    copy_exact,
    parse_authority,
    parse_request_head,
    parse_response_head,
    read_head,
    simple_response,
    websocket_accept,
)


def feed(data: bytes, eof: bool = True) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    if eof:
        reader.feed_eof()
    return reader


class TestParseAuthority:

    @pytest.mark.parametrize("authority,expected", [
        ("example.org:443", ("example.org", 443)),
        ("example.org", ("example.org", 443)),
        ("127.0.0.1:8080", ("127.0.0.1", 8080)),
        ("[2001:db8::1]:8443", ("2001:db8::1", 8443)),
        ("[2001:db8::1]", ("2001:db8::1", 443)),
        ("2001:db8::1", ("2001:db8::1", 443)),
    ])
    def test_valid(self, authority, expected):
        assert parse_authority(authority, 443) == expected

    @pytest.mark.parametrize("authority", [
        ":::notvalid",
        "",
        "example.org:",
        "example.org:0",
        "example.org:65536",
        "example.org:http",
        "exa mple.org:80",
        "user@example.org:80",
        "[2001:db8::1",
        "[nothex]:80",
        "example.org/path:80",
    ])
    def test_invalid(self, authority):
        with pytest.raises(MalformedRequest):
            parse_authority(authority, 443)


class TestHeads:

    def test_parse_request_head(self):
        head = parse_request_head(
            b"CONNECT example.org:443 HTTP/1.1\r\nHost: example.org:443\r\nProxy-Connection: keep-alive\r\n\r\n"
        )
        assert head.method == "CONNECT"
        assert head.target == "example.org:443"
        assert head.header("host") == "example.org:443"
        assert head.wants_keep_alive()

    def test_http10_defaults_to_close(self):
        head = parse_request_head(b"GET / HTTP/1.0\r\nHost: a.test\r\n\r\n")
        assert not head.wants_keep_alive()

    def test_path_of_absolute_form(self):
        head = parse_request_head(b"GET http://a.test/x/y?q=1 HTTP/1.1\r\n\r\n")
        assert head.path == "/x/y"

    @pytest.mark.parametrize("raw", [
        b"GARBAGE\r\n\r\n",
        b"GET / HTTP/2.0\r\n\r\n",
        b"GET / HTTP/1.1\r\nNo colon here\r\n\r\n",
        b"GET / HTTP/1.1\r\nHost: a\r\n folded\r\n\r\n",
    ])
    def test_malformed_request_head(self, raw):
        with pytest.raises(MalformedRequest):
            parse_request_head(raw)

    def test_parse_response_head(self):
        head = parse_response_head(b"HTTP/1.1 404 Not Found\r\nServer: x\r\n\r\n")
        assert head.status == 404
        assert head.reason == "Not Found"
        assert head.header("server") == "x"

    @pytest.mark.asyncio
    async def test_read_head_leaves_body_buffered(self):
        reader = feed(b"GET / HTTP/1.1\r\nHost: a\r\n\r\nearly-bytes")
        raw = await read_head(reader)
        assert raw.endswith(b"\r\n\r\n")
        assert await reader.read() == b"early-bytes"

    @pytest.mark.asyncio
    async def test_read_head_clean_eof(self):
        assert await read_head(feed(b"")) is None

    @pytest.mark.asyncio
    async def test_read_head_partial(self):
        with pytest.raises(MalformedRequest):
            await read_head(feed(b"GET / HTTP/1.1\r\nHo"))


class TestResponses:

    def test_simple_response(self):
        raw = simple_response(502, "Bad Gateway")
        assert raw.startswith(b"HTTP/1.1 502 Bad Gateway\r\n")
        assert b"Content-Length: 11\r\n" in raw
        assert b"Connection: close\r\n" in raw
        assert raw.endswith(b"\r\n\r\nBad Gateway")

    def test_websocket_accept_known_vector(self):
        assert websocket_accept("dGhlIHNhbXBsZSBub25jZQ==") == "s3pPLMBiTxaQ9kYGzzhZRbK+xOo="


class TestBodyFraming:

    def test_kinds(self):
        assert body_framing([("Content-Length", "12")]) == ("length", 12)
        assert body_framing([("Transfer-Encoding", "gzip, chunked")]) == ("chunked", 0)
        assert body_framing([]) == ("none", 0)

    @pytest.mark.parametrize("headers", [
        [("Content-Length", "abc")],
        [("Content-Length", "1"), ("Content-Length", "2")],
        [("Transfer-Encoding", "gzip")],
    ])
    def test_invalid(self, headers):
        with pytest.raises(ValueError):
            body_framing(headers)

    @pytest.mark.asyncio
    async def test_copy_chunked_verbatim(self):
        body = b"5\r\nhello\r\n6;ext=1\r\n world\r\n0\r\nX-Trailer: 1\r\n\r\n"
        reader = feed(body + b"NEXT", eof=False)
        out = []

        async def send(data):
            out.append(data)

        total = await copy_chunked(reader, send)
        assert total == 11
        assert b"".join(out) == body
        assert await reader.readexactly(4) == b"NEXT"

    @pytest.mark.asyncio
    async def test_idle_timeout_bounds_each_read_not_the_transfer(self):
        reader = asyncio.StreamReader()
        out = []

        async def send(data):
            out.append(data)

        async def trickle():
            for _ in range(6):
                await asyncio.sleep(0.05)
                reader.feed_data(b"x")

        feeder = asyncio.create_task(trickle())
        assert await copy_exact(reader, send, 6, idle_timeout=0.2) == 6
        assert b"".join(out) == b"x" * 6
        await feeder

    @pytest.mark.asyncio
    async def test_idle_timeout_on_stall(self):
        reader = feed(b"abc", eof=False)

        async def send(data):
            pass

        with pytest.raises(asyncio.TimeoutError):
            await copy_exact(reader, send, 10, idle_timeout=0.1)
