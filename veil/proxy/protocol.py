"""
HTTP/1.1 wire helpers for the relay: request and response heads, authorities,
canned responses and body framing.
"""

import asyncio
import base64
import hashlib
import ipaddress
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple
from urllib.parse import urlsplit

from ..core.exceptions import MalformedRequest

MAX_HEAD_BYTES = 64 * 1024

CONNECT_ESTABLISHED = b"HTTP/1.1 200 Connection Established\r\n\r\n"

WS_GUID = "258EAFA5-E914-47DA-95CA-C5AB0DC85B11"

HOP_BY_HOP = frozenset({
    "connection",
    "keep-alive",
    "proxy-connection",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "upgrade",
})

_TOKEN = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")
_HOSTNAME = re.compile(
    r"^(?=.{1,253}$)([A-Za-z0-9_](?:[A-Za-z0-9_-]{0,61}[A-Za-z0-9])?)"
    r"(?:\.[A-Za-z0-9_](?:[A-Za-z0-9_-]{0,61}[A-Za-z0-9])?)*\.?$"
)

REASONS = {
    200: "OK",
    400: "Bad Request",
    404: "Not Found",
    405: "Method Not Allowed",
    502: "Bad Gateway",
    504: "Gateway Timeout",
}


@dataclass
class RequestHead:
    """Parsed request line and headers (names keep their original case)."""
    method: str
    target: str
    version: str
    headers: List[Tuple[str, str]] = field(default_factory=list)

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        name = name.lower()
        for n, v in self.headers:
            if n.lower() == name:
                return v
        return default

    @property
    def path(self) -> str:
        return urlsplit(self.target).path if "://" in self.target else self.target.split("?", 1)[0]

    def wants_keep_alive(self) -> bool:
        tokens = connection_tokens(self.headers)
        if self.version == "HTTP/1.0":
            return "keep-alive" in tokens
        return "close" not in tokens


@dataclass
class ResponseHead:
    version: str
    status: int
    reason: str
    headers: List[Tuple[str, str]] = field(default_factory=list)

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        name = name.lower()
        for n, v in self.headers:
            if n.lower() == name:
                return v
        return default


def connection_tokens(headers: List[Tuple[str, str]]) -> List[str]:
    tokens = []
    for n, v in headers:
        if n.lower() in ("connection", "proxy-connection"):
            tokens.extend(t.strip().lower() for t in v.split(",") if t.strip())
    return tokens


def _parse_header_lines(lines: List[str]) -> List[Tuple[str, str]]:
    headers = []
    for line in lines:
        if not line:
            continue
        if line[0] in " \t":
            raise MalformedRequest("obsolete header line folding")
        name, sep, value = line.partition(":")
        if not sep or not _TOKEN.match(name):
            raise MalformedRequest(f"invalid header line: {line[:80]!r}")
        headers.append((name, value.strip()))
    return headers


def parse_request_head(raw: bytes) -> RequestHead:
    """Parse a request head (everything up to and including the blank line)."""
    try:
        text = raw.decode("latin-1")
    except UnicodeDecodeError as e:
        raise MalformedRequest("undecodable request head", cause=e)
    lines = text.split("\r\n")
    parts = lines[0].split(" ")
    if len(parts) != 3:
        raise MalformedRequest(f"invalid request line: {lines[0][:80]!r}")
    method, target, version = parts
    if not _TOKEN.match(method) or not target or version not in ("HTTP/1.0", "HTTP/1.1"):
        raise MalformedRequest(f"invalid request line: {lines[0][:80]!r}")
    return RequestHead(method.upper(), target, version, _parse_header_lines(lines[1:]))


def parse_response_head(raw: bytes) -> ResponseHead:
    lines = raw.decode("latin-1").split("\r\n")
    parts = lines[0].split(" ", 2)
    if len(parts) < 2 or not parts[0].startswith("HTTP/") or not parts[1].isdigit():
        raise ValueError(f"invalid status line: {lines[0][:80]!r}")
    reason = parts[2] if len(parts) > 2 else ""
    return ResponseHead(parts[0], int(parts[1]), reason, _parse_header_lines(lines[1:]))


async def read_head(reader: asyncio.StreamReader) -> Optional[bytes]:
    """
    Read through the blank line ending a message head.

    Returns None on a clean EOF before any byte arrived. Bytes after the head
    stay buffered in `reader`.
    """
    try:
        return await reader.readuntil(b"\r\n\r\n")
    except asyncio.IncompleteReadError as e:
        if not e.partial:
            return None
        raise MalformedRequest("connection closed mid-head")
    except asyncio.LimitOverrunError as e:
        raise MalformedRequest("message head too large", cause=e)


async def read_request_head(reader: asyncio.StreamReader) -> Optional[RequestHead]:
    raw = await read_head(reader)
    if raw is None:
        return None
    return parse_request_head(raw)


def valid_host(host: str) -> bool:
    if not host:
        return False
    try:
        ipaddress.ip_address(host)
        return True
    except ValueError:
        pass
    return bool(_HOSTNAME.match(host))


def parse_authority(authority: str, default_port: int) -> Tuple[str, int]:
    """Split `host[:port]` or `[v6][:port]`. Raises MalformedRequest when unusable."""
    authority = authority.strip()
    if not authority or "/" in authority or "@" in authority:
        raise MalformedRequest(f"invalid authority {authority!r}")

    if authority.startswith("["):
        end = authority.find("]")
        if end < 0:
            raise MalformedRequest(f"invalid authority {authority!r}")
        host = authority[1:end]
        rest = authority[end + 1:]
        if rest and not rest.startswith(":"):
            raise MalformedRequest(f"invalid authority {authority!r}")
        port_text = rest[1:] if rest else ""
        try:
            ipaddress.IPv6Address(host)
        except ValueError:
            raise MalformedRequest(f"invalid IPv6 literal {host!r}")
    elif authority.count(":") > 1:
        # Bare IPv6 without brackets carries no port
        try:
            ipaddress.IPv6Address(authority)
        except ValueError:
            raise MalformedRequest(f"invalid authority {authority!r}")
        host, port_text = authority, ""
    else:
        host, _, port_text = authority.partition(":")
        if not valid_host(host):
            raise MalformedRequest(f"invalid host {host!r}")

    if port_text == "":
        if authority.endswith(":"):
            raise MalformedRequest(f"empty port in {authority!r}")
        return host, default_port
    if not port_text.isdigit() or not 0 < int(port_text) < 65536:
        raise MalformedRequest(f"invalid port in {authority!r}")
    return host, int(port_text)


def serialize_headers(headers: List[Tuple[str, str]]) -> bytes:
    return "".join(f"{n}: {v}\r\n" for n, v in headers).encode("latin-1")


def simple_response(status: int, body: str = "", keep_alive: bool = False,
                    content_type: str = "text/plain; charset=utf-8",
                    reason: Optional[str] = None) -> bytes:
    """Complete small response with Content-Length framing."""
    payload = body.encode("utf-8")
    reason = reason or REASONS.get(status, "")
    head = (
        f"HTTP/1.1 {status} {reason}\r\n"
        f"Content-Type: {content_type}\r\n"
        f"Content-Length: {len(payload)}\r\n"
        f"Cache-Control: no-store\r\n"
        f"Connection: {'keep-alive' if keep_alive else 'close'}\r\n"
        "\r\n"
    )
    return head.encode("latin-1") + payload


def websocket_accept(key: str) -> str:
    digest = hashlib.sha1((key.strip() + WS_GUID).encode("ascii")).digest()
    return base64.b64encode(digest).decode("ascii")


def switching_protocols(key: Optional[str]) -> bytes:
    lines = [
        "HTTP/1.1 101 Switching Protocols",
        "Upgrade: websocket",
        "Connection: Upgrade",
    ]
    if key:
        lines.append(f"Sec-WebSocket-Accept: {websocket_accept(key)}")
    return ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1")


# ----------------------------------------------------------------------
# Body framing
# ----------------------------------------------------------------------

def body_framing(headers: List[Tuple[str, str]]) -> Tuple[str, int]:
    """
    Return ("chunked", 0), ("length", n) or ("none", 0) from a header list.

    Raises ValueError on a conflicting or unparseable Content-Length.
    """
    te = ""
    lengths = []
    for n, v in headers:
        lname = n.lower()
        if lname == "transfer-encoding":
            te = v.lower()
        elif lname == "content-length":
            lengths.append(v.strip())
    if te:
        if te.split(",")[-1].strip() == "chunked":
            return "chunked", 0
        raise ValueError(f"unsupported transfer-encoding {te!r}")
    if lengths:
        if len(set(lengths)) != 1 or not lengths[0].isdigit():
            raise ValueError(f"invalid content-length {lengths!r}")
        return "length", int(lengths[0])
    return "none", 0


async def _timed(awaitable, timeout: Optional[float]):
    """Await `awaitable`, raising asyncio.TimeoutError after `timeout` seconds (None waits forever)."""
    if timeout is None:
        return await awaitable
    return await asyncio.wait_for(awaitable, timeout)


async def copy_exact(reader: asyncio.StreamReader, send, length: int, chunk_size: int = 65536,
                     idle_timeout: Optional[float] = None) -> int:
    """Copy exactly `length` bytes from `reader` through the `send` coroutine.

    `idle_timeout` bounds each read, not the whole transfer.
    """
    remaining = length
    while remaining > 0:
        data = await _timed(reader.read(min(chunk_size, remaining)), idle_timeout)
        if not data:
            raise asyncio.IncompleteReadError(b"", remaining)
        await send(data)
        remaining -= len(data)
    return length


async def copy_chunked(reader: asyncio.StreamReader, send, chunk_size: int = 65536,
                       idle_timeout: Optional[float] = None) -> int:
    """Copy a chunked body verbatim (size lines, data, trailers)."""
    total = 0
    while True:
        line = await _timed(reader.readuntil(b"\r\n"), idle_timeout)
        await send(line)
        size_text = line.split(b";", 1)[0].strip()
        try:
            size = int(size_text, 16)
        except ValueError:
            raise ValueError(f"invalid chunk size {size_text!r}")
        if size == 0:
            while True:
                trailer = await _timed(reader.readuntil(b"\r\n"), idle_timeout)
                await send(trailer)
                if trailer == b"\r\n":
                    return total
        await copy_exact(reader, send, size + 2, chunk_size, idle_timeout)
        total += size


async def copy_until_eof(reader: asyncio.StreamReader, send, chunk_size: int = 65536,
                         idle_timeout: Optional[float] = None) -> int:
    total = 0
    while True:
        data = await _timed(reader.read(chunk_size), idle_timeout)
        if not data:
            return total
        await send(data)
        total += len(data)
