"""
CONNECT and WebSocket tunnels.

Both tunnel kinds run the same state machine:

    RESOLVING -> CONNECTING -> ESTABLISHED -> CLOSING -> CLOSED
                      any non-terminal state -> FAILED

Once established, bytes flow in both directions until each side has sent EOF
(clean close, each EOF is forwarded as a half-close) or until an error or an
idle timeout on either transport (both transports destroyed, session FAILED).
Client bytes that arrived together with the request head are relayed before
anything read later.
"""

import asyncio
import logging
from typing import Dict, Optional
from urllib.parse import parse_qs, urlsplit

from ..core.exceptions import (
    ClientAbort,
    MalformedRequest,
    TransportClosed,
    UpstreamConnectFailure,
    UpstreamTimeout,
    VeilError,
)
from ..core.models import Session, SessionMode, Target, TunnelState
from .protocol import (
    CONNECT_ESTABLISHED,
    RequestHead,
    parse_authority,
    simple_response,
    switching_protocols,
    valid_host,
)

logger = logging.getLogger(__name__)

READ_CHUNK = 65536


def abort_writer(writer: Optional[asyncio.StreamWriter]):
    """Destroy a transport immediately, discarding buffered output."""
    if writer is None:
        return
    transport = writer.transport
    if transport is not None and not transport.is_closing():
        transport.abort()


async def close_writer(writer: Optional[asyncio.StreamWriter], timeout: float = 1.0):
    """Flush and close a transport, bounded by `timeout`."""
    if writer is None:
        return
    if not writer.is_closing():
        writer.close()
    try:
        await asyncio.wait_for(writer.wait_closed(), timeout)
    except (asyncio.TimeoutError, ConnectionError, OSError) as e:
        logger.debug(f"Transport close did not complete cleanly: {e!r}")
        abort_writer(writer)


async def send_error(writer: asyncio.StreamWriter, error: VeilError):
    """Write the generic response for `error` (if it has one) and close the client."""
    if error.status is not None and not writer.is_closing():
        try:
            writer.write(simple_response(error.status, error.public_message))
            await writer.drain()
        except (ConnectionError, OSError) as e:
            logger.debug(f"Client gone before error response: {e!r}")
    await close_writer(writer)


def parse_ws_target(head: RequestHead) -> Target:
    """Destination from the `target` query parameter (URL or host:port)."""
    query = urlsplit(head.target).query
    values = parse_qs(query).get("target")
    if not values or not values[0].strip():
        raise MalformedRequest("missing target parameter")
    raw = values[0].strip()
    if "://" in raw:
        parsed = urlsplit(raw)
        scheme = parsed.scheme.lower()
        if scheme not in ("http", "https", "ws", "wss", "tcp"):
            raise MalformedRequest(f"unsupported target scheme {scheme!r}")
        try:
            port = parsed.port
        except ValueError as e:
            raise MalformedRequest(f"invalid target port in {raw!r}", cause=e)
        host = parsed.hostname
        if not host or not valid_host(host):
            raise MalformedRequest(f"invalid target {raw!r}")
        default_port = 443 if scheme in ("https", "wss") else 80
        return Target(host, port or default_port, scheme)
    host, port = parse_authority(raw, 80)
    return Target(host, port, "tcp")


class TunnelEngine:
    """Runs CONNECT and WebSocket tunnel sessions against a ProxyContext."""

    def __init__(self, context):
        self.context = context
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def handle_connect(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                             head: RequestHead) -> Session:
        session = Session(mode=SessionMode.CONNECT_TUNNEL, client=writer)
        self.context.registry.register(session)
        try:
            try:
                host, port = parse_authority(head.target, 443)
            except MalformedRequest as e:
                self.logger.info(f"[{session.short_id}] Malformed CONNECT target {head.target!r}")
                session.fail(e.code)
                await send_error(writer, e)
                return session
            session.target = Target(host, port, "tcp")
            await self._run(session, reader, writer, CONNECT_ESTABLISHED)
            return session
        finally:
            self.context.registry.unregister(session)

    async def handle_websocket(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                               head: RequestHead) -> Session:
        session = Session(mode=SessionMode.WS_TUNNEL, client=writer)
        self.context.registry.register(session)
        try:
            try:
                if "websocket" not in (head.header("Upgrade") or "").lower():
                    raise MalformedRequest("missing websocket upgrade header")
                session.target = parse_ws_target(head)
            except MalformedRequest as e:
                self.logger.info(f"[{session.short_id}] Rejected upgrade: {e.message}")
                session.fail(e.code)
                await send_error(writer, e)
                return session
            response = switching_protocols(head.header("Sec-WebSocket-Key"))
            await self._run(session, reader, writer, response)
            return session
        finally:
            self.context.registry.unregister(session)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def _run(self, session: Session, reader, writer, established: bytes):
        target = session.target
        dest_writer = None
        try:
            result = await self.context.resolver.resolve(target.host)
            session.resolved_ip = result.ip
            session.advance(TunnelState.CONNECTING)
            dest_reader, dest_writer = await self._connect(session)
            session.attach_destination(dest_writer)
            session.advance(TunnelState.ESTABLISHED)
        except VeilError as e:
            self.logger.warning(f"[{session.short_id}] Tunnel to {target} failed: {e}")
            session.fail(e.code)
            abort_writer(dest_writer)
            await send_error(writer, e)
            return

        self.logger.info(
            f"[{session.short_id}] {session.mode.value} {target} via {session.resolved_ip}"
            + (f" (sni {session.cover_host})" if session.cover_host else "")
        )
        try:
            writer.write(established)
            await writer.drain()
        except (ConnectionError, OSError) as e:
            self.logger.info(f"[{session.short_id}] Client left before tunnel start: {e!r}")
            session.advance(TunnelState.CLOSING)
            abort_writer(dest_writer)
            abort_writer(writer)
            session.fail(ClientAbort.__name__)
            return

        await self._relay(session, reader, writer, dest_reader, dest_writer)

    async def _connect(self, session: Session):
        """Open the destination leg: bare TCP, or fronted TLS for https/wss targets."""
        target = session.target
        ssl_context = None
        server_hostname = None
        if target.is_tls:
            server_hostname = self.context.fronting.sni_for(target.host)
            profile = self.context.tls.select_profile()
            ssl_context = self.context.tls.build_ssl_context(profile)
            session.cover_host = server_hostname
        try:
            return await asyncio.wait_for(
                asyncio.open_connection(
                    session.resolved_ip, target.port,
                    ssl=ssl_context, server_hostname=server_hostname,
                ),
                self.context.connect_timeout,
            )
        except asyncio.TimeoutError as e:
            raise UpstreamConnectFailure(
                f"connect to {target} timed out",
                details={"ip": session.resolved_ip, "timeout": self.context.connect_timeout},
                cause=e,
            )
        except (ConnectionError, OSError) as e:
            raise UpstreamConnectFailure(
                f"connect to {target} failed",
                details={"ip": session.resolved_ip},
                cause=e,
            )

    async def _relay(self, session: Session, client_reader, client_writer, dest_reader, dest_writer):
        loop = asyncio.get_running_loop()
        idle_timeout = self.context.idle_timeout
        activity: Dict[str, float] = {"client": loop.time(), "destination": loop.time()}
        shaper = self.context.shaper

        def mark(side: str):
            activity[side] = loop.time()
            session.touch()

        async def pump(src, dst, src_side: str, dst_side: str, upstream: bool):
            while True:
                try:
                    data = await src.read(READ_CHUNK)
                except (ConnectionError, OSError) as e:
                    if src_side == "client":
                        raise ClientAbort("client connection lost", cause=e)
                    raise UpstreamConnectFailure("destination connection lost", cause=e)
                if not data:
                    break
                mark(src_side)
                if not session.accepts_writes:
                    raise TransportClosed(f"session closing, dropped {len(data)} bytes")
                try:
                    if upstream:
                        await shaper.send(dst, data, is_open=lambda: session.accepts_writes)
                    else:
                        dst.write(data)
                        await dst.drain()
                except (ConnectionError, OSError) as e:
                    if dst_side == "client":
                        raise ClientAbort("client connection lost", cause=e)
                    raise UpstreamConnectFailure("destination write failed", cause=e)
                mark(dst_side)
                if upstream:
                    session.bytes_sent += len(data)
                else:
                    session.bytes_received += len(data)
            # Clean EOF: forward it as a half-close
            if dst.can_write_eof() and not dst.is_closing():
                try:
                    dst.write_eof()
                except (ConnectionError, OSError) as e:
                    self.logger.debug(f"[{session.short_id}] write_eof to {dst_side} failed: {e!r}")
            mark(dst_side)

        async def watchdog():
            interval = max(0.01, min(1.0, idle_timeout / 10))
            while True:
                await asyncio.sleep(interval)
                now = loop.time()
                for side, last in activity.items():
                    if now - last >= idle_timeout:
                        raise UpstreamTimeout(
                            f"{side} idle for {idle_timeout}s",
                            details={"side": side},
                        )

        up = asyncio.create_task(pump(client_reader, dest_writer, "client", "destination", True))
        down = asyncio.create_task(pump(dest_reader, client_writer, "destination", "client", False))
        dog = asyncio.create_task(watchdog())
        pending = {up, down}
        failure: Optional[BaseException] = None
        try:
            while pending and failure is None:
                done, _ = await asyncio.wait(pending | {dog}, return_when=asyncio.FIRST_COMPLETED)
                if dog in done:
                    failure = dog.exception()
                    break
                for task in done:
                    pending.discard(task)
                    if task.exception() is not None:
                        failure = task.exception()
                        break
        except asyncio.CancelledError:
            abort_writer(dest_writer)
            abort_writer(client_writer)
            session.fail("Cancelled")
            raise
        finally:
            # No writes are accepted past this point
            if not session.is_terminal:
                session.advance(TunnelState.CLOSING)
            for task in (up, down, dog):
                task.cancel()
            await asyncio.gather(up, down, dog, return_exceptions=True)

        if failure is None:
            await close_writer(dest_writer)
            await close_writer(client_writer)
            session.advance(TunnelState.CLOSED)
            self.logger.info(
                f"[{session.short_id}] Tunnel to {session.target} closed "
                f"(sent {session.bytes_sent}B, received {session.bytes_received}B)"
            )
            return

        abort_writer(dest_writer)
        abort_writer(client_writer)
        code = failure.code if isinstance(failure, VeilError) else type(failure).__name__
        session.fail(code)
        if isinstance(failure, ClientAbort):
            self.logger.info(f"[{session.short_id}] Client aborted tunnel to {session.target}")
        elif isinstance(failure, UpstreamTimeout):
            self.logger.info(f"[{session.short_id}] Tunnel to {session.target} timed out: {failure.message}")
        else:
            self.logger.warning(f"[{session.short_id}] Tunnel to {session.target} failed: {failure}")
