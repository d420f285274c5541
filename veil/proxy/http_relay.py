"""
Plain HTTP relay.

One request per call: resolve the destination, rewrite the request headers
through the obfuscation layer, send the request over a pooled (or new)
connection and stream the scrubbed response back. HTTPS destinations are
reached over TLS with a fronted SNI and a browser-like TLS profile, while the
real hostname travels only in the Host header.

Content-Encoding is passed through untouched; the relay never decodes bodies.
"""

import asyncio
import logging
from typing import List, Optional, Tuple
from urllib.parse import urlsplit

from ..core.exceptions import (
    ClientAbort,
    MalformedRequest,
    UpstreamConnectFailure,
    UpstreamTimeout,
    VeilError,
)
from ..core.models import Session, SessionMode, SessionState, Target
from ..security.obfuscation import obfuscate_headers, scrub_response_headers, strip_denied
from .pool import PooledConnection
from .protocol import (
    HOP_BY_HOP,
    RequestHead,
    ResponseHead,
    body_framing,
    connection_tokens,
    copy_chunked,
    copy_exact,
    copy_until_eof,
    parse_authority,
    parse_response_head,
    read_head,
    serialize_headers,
    simple_response,
    valid_host,
)

DEFAULT_PORTS = {"http": 80, "https": 443}


def resolve_request_target(head: RequestHead) -> Tuple[Target, str]:
    """(target, origin-form path) from an absolute-form URI or origin-form + Host."""
    if "://" in head.target:
        parsed = urlsplit(head.target)
        scheme = parsed.scheme.lower()
        if scheme not in DEFAULT_PORTS:
            raise MalformedRequest(f"unsupported scheme {scheme!r}")
        try:
            port = parsed.port
        except ValueError as e:
            raise MalformedRequest(f"invalid port in {head.target!r}", cause=e)
        host = parsed.hostname
        if not host or not valid_host(host):
            raise MalformedRequest(f"invalid URL {head.target!r}")
        path = parsed.path or "/"
        if parsed.query:
            path = f"{path}?{parsed.query}"
        return Target(host, port or DEFAULT_PORTS[scheme], scheme), path

    if not head.target.startswith("/"):
        raise MalformedRequest(f"invalid request target {head.target!r}")
    host_header = head.header("Host")
    if not host_header:
        raise MalformedRequest("missing Host header")
    host, port = parse_authority(host_header, 80)
    return Target(host, port, "http"), head.target


def _host_value(target: Target) -> str:
    host = f"[{target.host}]" if ":" in target.host else target.host
    if target.port == DEFAULT_PORTS.get(target.scheme):
        return host
    return f"{host}:{target.port}"


def _strip_hop_by_hop(headers: List[Tuple[str, str]]) -> List[Tuple[str, str]]:
    listed = set(connection_tokens(headers))
    return [(n, v) for n, v in headers if n.lower() not in HOP_BY_HOP and n.lower() not in listed]


class HTTPRelay:
    """Relays origin requests for a ProxyContext."""

    def __init__(self, context):
        self.context = context
        self.logger = logging.getLogger(__name__)

    def build_request_headers(self, head: RequestHead, target: Target) -> List[Tuple[str, str]]:
        """Outbound headers: hop-by-hop removed, obfuscated, Host set to the real target."""
        headers = _strip_hop_by_hop(head.headers)
        obf = self.context.obfuscation
        if obf.enabled:
            headers = obfuscate_headers(
                headers, obf.level, rng=self.context.rng, rotate_user_agent=obf.rotate_user_agent,
            )
        else:
            headers = strip_denied(headers)
        host_value = _host_value(target)
        headers = [(n, v) for n, v in headers if n.lower() != "host"]
        headers.insert(0, ("host", host_value))
        headers.append(("connection", "keep-alive"))
        return headers

    async def handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                     head: RequestHead) -> bool:
        """Relay one request. Returns True when the client connection may carry another."""
        session = Session(mode=SessionMode.HTTP_RELAY, client=writer)
        registry = self.context.registry
        registry.register(session)
        try:
            return await self._handle(session, reader, writer, head)
        finally:
            registry.unregister(session)

    async def _handle(self, session: Session, reader, writer, head: RequestHead) -> bool:
        response_started = False
        conn: Optional[PooledConnection] = None
        try:
            target, path = resolve_request_target(head)
            session.target = target
            try:
                request_framing = body_framing(head.headers)
            except ValueError as e:
                raise MalformedRequest(str(e), cause=e)

            result = await self.context.resolver.resolve(target.host)
            session.resolved_ip = result.ip

            headers = self.build_request_headers(head, target)
            request = f"{head.method} {path} HTTP/1.1\r\n".encode("latin-1") + serialize_headers(headers) + b"\r\n"

            conn = await self._acquire(session)
            try:
                await self._send_upstream(session, conn, request)
                await self._copy_request_body(session, reader, conn, request_framing)
                response = await self._read_response_head(session, conn, writer)
            except UpstreamConnectFailure:
                # An idle pooled connection may have been closed by the destination
                if conn.uses == 0 or request_framing[0] != "none":
                    raise
                self.logger.debug(f"[{session.short_id}] Stale pooled connection, retrying on a new one")
                conn.pool.release(conn, reusable=False)
                conn = None
                conn = await self._acquire(session, fresh=True)
                await self._send_upstream(session, conn, request)
                response = await self._read_response_head(session, conn, writer)
            session.attach_destination(conn.writer)
            kind, length, reusable = self._plan_response(head, response)
            keep_client = kind != "none"
            await self._write_response_head(writer, response, keep_client)
            response_started = True
            await self._stream_response_body(session, conn, writer, kind, length)
            session.set_state(SessionState.CLOSING)
            conn.pool.release(conn, reusable=reusable)
            conn = None
            session.set_state(SessionState.CLOSED)
            self.logger.info(
                f"[{session.short_id}] {head.method} {target.scheme}://{_host_value(target)}{path[:80]} "
                f"-> {response.status} ({session.bytes_received}B)"
            )
            return keep_client and head.wants_keep_alive()
        except ClientAbort as e:
            self.logger.info(f"[{session.short_id}] Client aborted: {e.message}")
            session.fail(e.code)
            return False
        except VeilError as e:
            self.logger.warning(f"[{session.short_id}] Relay of {head.method} {head.target[:80]} failed: {e}")
            session.fail(e.code)
            if not response_started and e.status is not None and not writer.is_closing():
                try:
                    writer.write(simple_response(e.status, e.public_message))
                    await writer.drain()
                except (ConnectionError, OSError):
                    self.logger.debug(f"[{session.short_id}] Client gone before error response")
            return False
        finally:
            if conn is not None:
                conn.pool.release(conn, reusable=False)

    async def _acquire(self, session: Session, fresh: bool = False) -> PooledConnection:
        """Pooled connection for the target, or a new one from the current pool."""
        target = session.target
        protocol = "https" if target.scheme == "https" else "http"
        pool = self.context.registry.pool_for(protocol)
        key = (session.resolved_ip, target.port, target.host)
        conn = None if fresh else pool.acquire(key)
        if conn is not None:
            session.cover_host = conn.sni
            return conn

        ssl_context = None
        sni = None
        profile = None
        if protocol == "https":
            sni = self.context.fronting.sni_for(target.host)
            profile = self.context.tls.select_profile()
            ssl_context = self.context.tls.build_ssl_context(profile)
            session.cover_host = sni
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(session.resolved_ip, target.port, ssl=ssl_context, server_hostname=sni),
                self.context.connect_timeout,
            )
        except asyncio.TimeoutError as e:
            raise UpstreamTimeout(f"connect to {target} timed out", cause=e)
        except (ConnectionError, OSError) as e:
            raise UpstreamConnectFailure(f"connect to {target} failed", cause=e)
        return pool.adopt(reader, writer, key, sni=sni, profile=profile.name if profile else None)

    async def _send_upstream(self, session: Session, conn: PooledConnection, data: bytes):
        try:
            await self.context.shaper.send(conn.writer, data, is_open=lambda: session.accepts_writes)
        except (ConnectionError, OSError) as e:
            raise UpstreamConnectFailure("write to destination failed", cause=e)
        session.bytes_sent += len(data)
        session.touch()

    async def _copy_request_body(self, session: Session, reader, conn: PooledConnection, framing):
        kind, length = framing

        async def send(data: bytes):
            await self._send_upstream(session, conn, data)

        try:
            if kind == "length":
                await copy_exact(reader, send, length, idle_timeout=self.context.http_timeout)
            elif kind == "chunked":
                await copy_chunked(reader, send, idle_timeout=self.context.http_timeout)
        except asyncio.TimeoutError as e:
            raise UpstreamTimeout("client request body stalled", cause=e)
        except (asyncio.IncompleteReadError, ConnectionError) as e:
            raise ClientAbort("client closed during request body", cause=e)
        except (asyncio.LimitOverrunError, ValueError) as e:
            raise MalformedRequest("invalid request body framing", cause=e)

    async def _read_response_head(self, session: Session, conn: PooledConnection, writer) -> ResponseHead:
        """Final response head; interim 1xx responses are forwarded to the client."""
        while True:
            try:
                raw = await asyncio.wait_for(read_head(conn.reader), self.context.http_timeout)
            except asyncio.TimeoutError as e:
                raise UpstreamTimeout("destination response timed out", cause=e)
            except (MalformedRequest, ConnectionError, OSError) as e:
                raise UpstreamConnectFailure("destination sent an unusable response", cause=e)
            if raw is None:
                raise UpstreamConnectFailure("destination closed without responding")
            try:
                response = parse_response_head(raw)
            except (ValueError, MalformedRequest) as e:
                raise UpstreamConnectFailure("destination sent an invalid status line", cause=e)
            session.bytes_received += len(raw)
            session.touch()
            if 100 <= response.status < 200 and response.status != 101:
                await self._write_client(writer, raw)
                continue
            return response

    async def _write_client(self, writer, data: bytes):
        if writer.is_closing():
            raise ClientAbort("client connection closed")
        try:
            writer.write(data)
            await writer.drain()
        except (ConnectionError, OSError) as e:
            raise ClientAbort("client connection lost", cause=e)

    def _plan_response(self, head: RequestHead, response: ResponseHead) -> Tuple[str, int, bool]:
        """(framing kind, length, upstream reusable) for a final response."""
        no_body = (
            head.method == "HEAD"
            or response.status in (204, 304)
            or 100 <= response.status < 200
        )
        if no_body:
            kind, length = "empty", 0
        else:
            try:
                kind, length = body_framing(response.headers)
            except ValueError as e:
                raise UpstreamConnectFailure("destination sent invalid body framing", cause=e)
        upstream_close = "close" in connection_tokens(response.headers) or response.version == "HTTP/1.0"
        return kind, length, kind != "none" and not upstream_close

    async def _write_response_head(self, writer, response: ResponseHead, keep_client: bool):
        headers = scrub_response_headers(_strip_hop_by_hop(response.headers))
        headers.append(("connection", "keep-alive" if keep_client else "close"))
        status_line = f"HTTP/1.1 {response.status} {response.reason}\r\n".encode("latin-1")
        await self._write_client(writer, status_line + serialize_headers(headers) + b"\r\n")

    async def _stream_response_body(self, session: Session, conn: PooledConnection, writer,
                                    kind: str, length: int):
        async def send(data: bytes):
            await self._write_client(writer, data)
            session.bytes_received += len(data)
            session.touch()

        try:
            if kind == "length":
                await copy_exact(conn.reader, send, length, idle_timeout=self.context.http_timeout)
            elif kind == "chunked":
                await copy_chunked(conn.reader, send, idle_timeout=self.context.http_timeout)
            elif kind == "none":
                await copy_until_eof(conn.reader, send, idle_timeout=self.context.http_timeout)
        except asyncio.TimeoutError as e:
            raise UpstreamTimeout("destination body stalled", cause=e)
        except (asyncio.IncompleteReadError, asyncio.LimitOverrunError, ValueError, ConnectionError, OSError) as e:
            raise UpstreamConnectFailure("destination body truncated", cause=e)
