"""
Veil - censorship-resistant forwarding and tunneling proxy

Relays plain HTTP requests, HTTP CONNECT tunnels and WebSocket upgrade tunnels
through a resilient resolver chain, domain fronting, browser-like TLS profiles
and a traffic obfuscation layer.
"""

__version__ = "1.0.0"
__author__ = "Veil Project"

from .core.config import VeilConfig
from .core.models import Session, SessionMode, SessionState, TunnelState
from .context import ProxyContext
from .proxy.server import VeilServer

__all__ = [
    "VeilConfig",
    "Session",
    "SessionMode",
    "SessionState",
    "TunnelState",
    "ProxyContext",
    "VeilServer",
]
