"""
Network module - name resolution and outbound HTTP.

Modules:
- resolver: recursive DNS -> DoH -> DoT -> static table fallback chain
- http_client: pooled requests session used for DoH lookups
"""

from .http_client import HTTPClientManager
from .resolver import (
    ResolverChain,
    ResolutionStrategy,
    RecursiveDNSStrategy,
    DoHStrategy,
    DoTStrategy,
    StaticTableStrategy,
    build_resolver_chain,
)

__all__ = [
    "HTTPClientManager",
    "ResolverChain",
    "ResolutionStrategy",
    "RecursiveDNSStrategy",
    "DoHStrategy",
    "DoTStrategy",
    "StaticTableStrategy",
    "build_resolver_chain",
]
