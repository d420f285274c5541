"""
Proxy context: the single object wired at startup and handed to every session.

Holds the resolver chain, fronting policy, TLS selector, obfuscation settings,
session registry and the shared random source. Nothing in the relay reads
module-level state; tests build a context with a seeded random.Random.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Optional

from . import __version__
from .core.config import VeilConfig
from .core.exceptions import ConfigError
from .core.models import ObfuscationConfig
from .network.http_client import HTTPClientManager
from .network.resolver import ResolverChain, build_resolver_chain
from .proxy.registry import PoolRotator, SessionRegistry
from .security.fragmentation import StreamShaper
from .security.fronting import FrontingPolicy
from .security.tls_profiles import TLSProfileSelector

logger = logging.getLogger(__name__)


@dataclass
class ProxyContext:
    """Everything a relay session needs, built once."""
    resolver: ResolverChain
    fronting: FrontingPolicy
    tls: TLSProfileSelector
    obfuscation: ObfuscationConfig
    registry: SessionRegistry
    rng: random.Random = field(default_factory=random.Random)
    host: str = "0.0.0.0"
    port: int = 3000
    ws_path: str = "/api/stream"
    websocket_enabled: bool = True
    health_enabled: bool = True
    idle_timeout: float = 60.0
    connect_timeout: float = 10.0
    http_timeout: float = 30.0
    version: str = __version__
    started_at: float = field(default_factory=time.time)
    http_client: Optional[HTTPClientManager] = None
    shaper: Optional[StreamShaper] = None
    rotator: Optional[PoolRotator] = None
    loop: Optional[asyncio.AbstractEventLoop] = None

    def __post_init__(self):
        if self.shaper is None:
            self.shaper = StreamShaper(self.obfuscation, self.rng)
        if self.rotator is None:
            self.rotator = PoolRotator(
                self.registry,
                interval=self.obfuscation.rotation_interval,
                jitter=self.obfuscation.rotation_jitter,
                rng=self.rng,
            )

    @property
    def uptime(self) -> float:
        return time.time() - self.started_at

    @classmethod
    def from_config(cls, config: VeilConfig, rng: Optional[random.Random] = None) -> "ProxyContext":
        """Validate `config` and build every component from it."""
        errors = config.validate()
        if errors:
            raise ConfigError("invalid configuration", details={"errors": errors})

        rng = rng or random.Random()
        obfuscation = ObfuscationConfig(
            enabled=config.get("obfuscation_enabled"),
            level=config.get("obfuscation_level"),
            fragment_enabled=config.get("fragment_enabled"),
            min_fragment=config.get("min_fragment"),
            max_fragment=config.get("max_fragment"),
            jitter_enabled=config.get("jitter_enabled"),
            min_jitter_ms=config.get("min_jitter_ms"),
            max_jitter_ms=config.get("max_jitter_ms"),
            rotation_interval=config.get("rotation_interval"),
            rotation_jitter=config.get("rotation_jitter"),
            rotate_user_agent=config.get("rotate_user_agent"),
        )
        http_client = HTTPClientManager(rng)
        resolver = build_resolver_chain(
            order=config.get("dns_strategy_order"),
            dns_servers=config.get("dns_servers"),
            doh_providers=config.get("doh_providers"),
            dot_providers=config.get("dot_providers"),
            static_hosts=config.get("static_hosts"),
            timeout=config.get("dns_timeout"),
            doh_retries=config.get("doh_retries"),
            rng=rng,
            http_client=http_client,
        )
        fronting = FrontingPolicy.from_dicts(
            config.get("fronting_rules"),
            default_pool=config.get("front_pool"),
            enabled=config.get("fronting_enabled"),
            sni_common_names=config.get("sni_common_names"),
            sni_spoofing=config.get("sni_spoofing_enabled"),
            rng=rng,
        )
        tls = TLSProfileSelector(
            profile_names=config.get("tls_profiles"),
            enabled=config.get("tls_fingerprinting_enabled"),
            verify=config.get("tls_verify"),
            ticket_secret=config.get("ticket_secret"),
            rng=rng,
        )
        context = cls(
            resolver=resolver,
            fronting=fronting,
            tls=tls,
            obfuscation=obfuscation,
            registry=SessionRegistry(),
            rng=rng,
            host=config.get("host"),
            port=config.get("port"),
            ws_path=config.get("ws_path"),
            websocket_enabled=config.get("websocket_enabled"),
            health_enabled=config.get("health_enabled"),
            idle_timeout=config.get("idle_timeout"),
            connect_timeout=config.get("connect_timeout"),
            http_timeout=config.get("http_timeout"),
            http_client=http_client,
        )
        logger.debug(
            f"Context ready: level={obfuscation.level} fronting={fronting.enabled} "
            f"dns={[s.name for s in resolver.strategies]}"
        )
        return context

    def close(self):
        if self.http_client is not None:
            self.http_client.close()
