"""
Proxy module - the relay engine.

Modules:
- server: inbound listener and request dispatch
- tunnel: CONNECT and WebSocket tunnel state machine
- http_relay: plain HTTP request relay
- registry: live sessions and pool rotation
- pool: outbound keep-alive connection pools
- protocol: HTTP/1.1 wire helpers
"""

from .pool import ConnectionPool, PooledConnection
from .registry import PoolRotator, SessionRegistry
from .tunnel import TunnelEngine
from .http_relay import HTTPRelay
from .server import VeilServer

__all__ = [
    "ConnectionPool",
    "PooledConnection",
    "PoolRotator",
    "SessionRegistry",
    "TunnelEngine",
    "HTTPRelay",
    "VeilServer",
]
