"""
Pytest configuration and shared fixtures for the relay tests.

Network tests run real loopback sockets: a small echo server, a silent
server and the relay itself bound to an ephemeral port.
"""

import asyncio
import logging
import random

import pytest
import pytest_asyncio

from veil.context import ProxyContext
from veil.core.models import ObfuscationConfig
from veil.network.resolver import ResolverChain, StaticTableStrategy
from veil.proxy.registry import SessionRegistry
from veil.proxy.server import VeilServer
from veil.security.fronting import FrontingPolicy
from veil.security.tls_profiles import TLSProfileSelector

logging.basicConfig(
    level=logging.DEBUG,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logging.getLogger('asyncio').setLevel(logging.WARNING)


def make_context(**overrides) -> ProxyContext:
    """Loopback-friendly context: static resolver, fast shaping, no fronting."""
    rng = overrides.pop("rng", None) or random.Random(1234)
    fields = dict(
        resolver=ResolverChain(
            [StaticTableStrategy({"echo.test": ["127.0.0.1"]}, timeout=1.0)],
            rng=rng,
            timeout=1.0,
        ),
        fronting=FrontingPolicy(enabled=False, rng=rng),
        tls=TLSProfileSelector(rng=rng, ticket_secret="test-secret"),
        obfuscation=ObfuscationConfig(
            level=2,
            min_fragment=1,
            max_fragment=8,
            min_jitter_ms=0.0,
            max_jitter_ms=1.0,
        ),
        registry=SessionRegistry(),
        rng=rng,
        host="127.0.0.1",
        port=0,
        idle_timeout=5.0,
        connect_timeout=2.0,
        http_timeout=5.0,
    )
    fields.update(overrides)
    return ProxyContext(**fields)


async def _shutdown(server: asyncio.AbstractServer, writers):
    for writer in list(writers):
        writer.close()
    server.close()
    try:
        await asyncio.wait_for(server.wait_closed(), 2.0)
    except asyncio.TimeoutError:
        pass


@pytest.fixture
def rng():
    return random.Random(42)


@pytest.fixture
def context():
    return make_context()


@pytest_asyncio.fixture
async def echo_server():
    """Echoes every byte back; closes its side after the client's EOF."""
    writers = set()

    async def handle(reader, writer):
        writers.add(writer)
        try:
            while True:
                data = await reader.read(65536)
                if not data:
                    break
                writer.write(data)
                await writer.drain()
        except ConnectionError:
            pass
        finally:
            writer.close()
            writers.discard(writer)

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    yield server.sockets[0].getsockname()[1]
    await _shutdown(server, writers)


class SilentServer:
    """Accepts connections and reads, but never writes. Records how each connection ended."""

    def __init__(self):
        self.port = None
        self.endings = []
        self.writers = set()

    async def handle(self, reader, writer):
        self.writers.add(writer)
        ending = "eof"
        try:
            while await reader.read(65536):
                pass
        except ConnectionError:
            ending = "reset"
        finally:
            self.endings.append(ending)
            writer.close()
            self.writers.discard(writer)


@pytest_asyncio.fixture
async def silent_server():
    silent = SilentServer()
    server = await asyncio.start_server(silent.handle, "127.0.0.1", 0)
    silent.port = server.sockets[0].getsockname()[1]
    yield silent
    await _shutdown(server, silent.writers)


@pytest_asyncio.fixture
async def start_proxy():
    """Factory starting a VeilServer for a context; every server is stopped at teardown."""
    servers = []

    async def _start(ctx: ProxyContext) -> VeilServer:
        server = VeilServer(ctx)
        await server.start()
        servers.append(server)
        return server

    yield _start
    for server in servers:
        await server.stop()


async def open_client(server: VeilServer):
    return await asyncio.open_connection("127.0.0.1", server.port)


async def read_head(reader: asyncio.StreamReader, timeout: float = 3.0) -> bytes:
    return await asyncio.wait_for(reader.readuntil(b"\r\n\r\n"), timeout)


async def wait_for_condition(predicate, timeout: float = 2.0, interval: float = 0.01):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            return False
        await asyncio.sleep(interval)
    return True
