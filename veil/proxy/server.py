"""
Inbound listener.

Accepts client connections and dispatches each request head:

  CONNECT host:port                  -> CONNECT tunnel
  GET <ws_path>?target=... + Upgrade -> WebSocket tunnel
  GET /health (loopback clients)     -> health document
  anything else                      -> plain HTTP relay (keep-alive loop)
"""

import asyncio
import ipaddress
import json
import logging
from typing import Optional, Set

from ..core.exceptions import MalformedRequest
from ..web.health import build_health_document
from .http_relay import HTTPRelay
from .protocol import RequestHead, read_request_head, simple_response
from .tunnel import TunnelEngine, close_writer, send_error


def _is_loopback(peer) -> bool:
    if not peer:
        return False
    try:
        return ipaddress.ip_address(peer[0]).is_loopback
    except ValueError:
        return False


class VeilServer:
    """asyncio server wiring client connections to the relay engines."""

    def __init__(self, context):
        self.context = context
        self.logger = logging.getLogger(__name__)
        self.tunnels = TunnelEngine(context)
        self.relay = HTTPRelay(context)
        self._server: Optional[asyncio.AbstractServer] = None
        self._clients: Set[asyncio.Task] = set()
        self._stopped = asyncio.Event()

    @property
    def sockets(self):
        return self._server.sockets if self._server else []

    @property
    def port(self) -> int:
        """Bound port (useful when configured with port 0)."""
        for sock in self.sockets:
            return sock.getsockname()[1]
        return self.context.port

    async def start(self) -> "VeilServer":
        self.context.loop = asyncio.get_running_loop()
        self._server = await asyncio.start_server(
            self._on_client, self.context.host, self.context.port
        )
        self.logger.info(f"Relay listening on {self.context.host}:{self.port}")
        return self

    async def serve_forever(self):
        """Serve until cancelled or until stop() is called."""
        if self._server is None:
            await self.start()
        self.context.rotator.start()
        await self._stopped.wait()

    async def stop(self):
        self._stopped.set()
        await self.context.rotator.stop()
        if self._server is not None:
            self._server.close()
        # wait_closed() only returns once every client connection is gone
        for task in list(self._clients):
            task.cancel()
        if self._clients:
            await asyncio.gather(*self._clients, return_exceptions=True)
        if self._server is not None:
            try:
                await asyncio.wait_for(self._server.wait_closed(), 2.0)
            except asyncio.TimeoutError:
                self.logger.debug("Listener did not close within 2s")
            self._server = None
        self.logger.info("Relay stopped")

    async def _on_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        task = asyncio.current_task()
        self._clients.add(task)
        try:
            await self._serve_connection(reader, writer)
        finally:
            self._clients.discard(task)

    async def _serve_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        peer = writer.get_extra_info("peername")
        try:
            while True:
                try:
                    head = await asyncio.wait_for(read_request_head(reader), self.context.idle_timeout)
                except asyncio.TimeoutError:
                    return
                except MalformedRequest as e:
                    self.logger.info(f"Malformed request from {peer}: {e.message}")
                    await send_error(writer, e)
                    return
                except (ConnectionError, OSError):
                    return
                if head is None:
                    return

                if head.method == "CONNECT":
                    await self.tunnels.handle_connect(reader, writer, head)
                    return
                if self._is_upgrade(head):
                    await self.tunnels.handle_websocket(reader, writer, head)
                    return
                if self._is_local_path(head):
                    if not await self._serve_local(writer, head, peer):
                        return
                    continue
                if not await self.relay.handle(reader, writer, head):
                    return
        finally:
            await close_writer(writer)

    def _is_upgrade(self, head: RequestHead) -> bool:
        if not self.context.websocket_enabled or head.target.startswith(("http://", "https://")):
            return False
        return head.path == self.context.ws_path

    def _is_local_path(self, head: RequestHead) -> bool:
        """Origin-form request addressed to this relay rather than relayable."""
        if not head.target.startswith("/"):
            return False
        host = (head.header("Host") or "").rsplit(":", 1)[0].strip("[]").lower()
        return host in ("", "localhost", "127.0.0.1", "::1")

    async def _serve_local(self, writer: asyncio.StreamWriter, head: RequestHead, peer) -> bool:
        """Answer requests for the relay itself. Returns True to keep the connection."""
        keep = head.wants_keep_alive()
        if (
            self.context.health_enabled
            and head.method == "GET"
            and head.path in ("/health", "/health/")
            and _is_loopback(peer)
        ):
            body = json.dumps(build_health_document(self.context), indent=2)
            response = simple_response(200, body, keep_alive=keep, content_type="application/json")
        else:
            response = simple_response(404, "Not Found", keep_alive=keep)
        try:
            writer.write(response)
            await writer.drain()
        except (ConnectionError, OSError):
            return False
        return keep
