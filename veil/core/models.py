"""
Core data models for the Veil relay.

Sessions, resolution results and the read-only policy records that are
loaded once at startup and shared by every relay session.
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .exceptions import ConfigError, InvalidStateTransition


class SessionMode(Enum):
    """How the client reached us."""
    HTTP_RELAY = "http_relay"
    CONNECT_TUNNEL = "connect_tunnel"
    WS_TUNNEL = "ws_tunnel"


class SessionState(Enum):
    """Coarse session lifecycle."""
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"
    FAILED = "failed"


class TunnelState(Enum):
    """Tunnel state machine (CONNECT and WebSocket tunnels)."""
    RESOLVING = "resolving"
    CONNECTING = "connecting"
    ESTABLISHED = "established"
    CLOSING = "closing"
    CLOSED = "closed"
    FAILED = "failed"


_TERMINAL_SESSION = (SessionState.CLOSED, SessionState.FAILED)
_TERMINAL_TUNNEL = (TunnelState.CLOSED, TunnelState.FAILED)

# Allowed forward moves; FAILED is reachable from any non-terminal state.
_TUNNEL_TRANSITIONS = {
    TunnelState.RESOLVING: (TunnelState.CONNECTING, TunnelState.CLOSING),
    TunnelState.CONNECTING: (TunnelState.ESTABLISHED, TunnelState.CLOSING),
    TunnelState.ESTABLISHED: (TunnelState.CLOSING,),
    TunnelState.CLOSING: (TunnelState.CLOSED,),
}

_TUNNEL_TO_SESSION = {
    TunnelState.RESOLVING: SessionState.OPEN,
    TunnelState.CONNECTING: SessionState.OPEN,
    TunnelState.ESTABLISHED: SessionState.OPEN,
    TunnelState.CLOSING: SessionState.CLOSING,
    TunnelState.CLOSED: SessionState.CLOSED,
    TunnelState.FAILED: SessionState.FAILED,
}


@dataclass(frozen=True)
class Target:
    """Where the client wants to go."""
    host: str
    port: int
    scheme: str = "tcp"

    @property
    def is_tls(self) -> bool:
        return self.scheme in ("https", "wss")

    def __str__(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class ResolutionResult:
    """Outcome of one hostname resolution. Never cached across sessions."""
    hostname: str
    ip: Optional[str]
    strategy: str
    latency_ms: float = 0.0


@dataclass(frozen=True)
class FrontingRule:
    """Glob pattern mapped to a cover hostname."""
    pattern: str
    cover_host: str


@dataclass(frozen=True)
class TLSProfile:
    """TLS parameters imitating one browser family."""
    name: str
    ciphers: Tuple[str, ...]
    tls13_ciphers: Tuple[str, ...]
    curves: Tuple[str, ...]
    min_version: str = "TLSv1.2"
    max_version: str = "TLSv1.3"
    signature_algorithms: Tuple[str, ...] = ()
    alpn: Tuple[str, ...] = ("http/1.1",)

    @property
    def cipher_string(self) -> str:
        return ":".join(self.ciphers)


@dataclass(frozen=True)
class ObfuscationConfig:
    """Traffic shaping knobs shared by every relay path."""
    enabled: bool = True
    level: int = 2
    fragment_enabled: bool = True
    min_fragment: int = 400
    max_fragment: int = 1400
    jitter_enabled: bool = True
    min_jitter_ms: float = 10.0
    max_jitter_ms: float = 100.0
    rotation_interval: float = 3600.0
    rotation_jitter: float = 0.2
    rotate_user_agent: bool = True

    def __post_init__(self):
        if not 0 <= self.level <= 3:
            raise ConfigError(f"obfuscation level must be 0-3, got {self.level}")
        if self.min_fragment < 1 or self.min_fragment > self.max_fragment:
            raise ConfigError(
                f"invalid fragment bounds {self.min_fragment}-{self.max_fragment}"
            )
        if self.min_jitter_ms < 0 or self.min_jitter_ms > self.max_jitter_ms:
            raise ConfigError(
                f"invalid jitter bounds {self.min_jitter_ms}-{self.max_jitter_ms}"
            )
        if self.rotation_interval <= 0:
            raise ConfigError("rotation interval must be positive")
        if not 0 <= self.rotation_jitter < 2:
            raise ConfigError("rotation jitter must be in [0, 2)")


@dataclass
class Session:
    """One client-to-destination relay instance."""
    mode: SessionMode
    client: Any = None
    target: Optional[Target] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    destination: Any = None
    cover_host: Optional[str] = None
    resolved_ip: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)
    bytes_sent: int = 0
    bytes_received: int = 0
    state: SessionState = SessionState.OPEN
    tunnel_state: Optional[TunnelState] = None
    error: Optional[str] = None

    def __post_init__(self):
        if self.mode in (SessionMode.CONNECT_TUNNEL, SessionMode.WS_TUNNEL) and self.tunnel_state is None:
            self.tunnel_state = TunnelState.RESOLVING

    @property
    def short_id(self) -> str:
        return self.id[:8]

    @property
    def is_terminal(self) -> bool:
        return self.state in _TERMINAL_SESSION

    @property
    def accepts_writes(self) -> bool:
        return self.state == SessionState.OPEN

    def touch(self):
        self.last_activity = time.time()

    def attach_destination(self, destination: Any):
        """Bind the outbound transport. A session owns at most one."""
        if self.destination is not None:
            raise InvalidStateTransition(
                "session already has a destination transport",
                details={"session": self.id},
            )
        if self.is_terminal:
            raise InvalidStateTransition(
                f"cannot attach destination in state {self.state.value}",
                details={"session": self.id},
            )
        self.destination = destination

    def set_state(self, new_state: SessionState):
        if self.state == new_state:
            return
        if self.is_terminal:
            raise InvalidStateTransition(
                f"session is {self.state.value}, cannot move to {new_state.value}",
                details={"session": self.id},
            )
        if self.state == SessionState.CLOSING and new_state == SessionState.OPEN:
            raise InvalidStateTransition("closing session cannot reopen", details={"session": self.id})
        self.state = new_state

    def advance(self, new_state: TunnelState):
        """Move the tunnel state machine forward and mirror the coarse state."""
        current = self.tunnel_state
        if current is None:
            raise InvalidStateTransition(f"{self.mode.value} session has no tunnel state")
        if current == new_state:
            return
        if current in _TERMINAL_TUNNEL:
            raise InvalidStateTransition(
                f"tunnel is {current.value}, cannot move to {new_state.value}",
                details={"session": self.id},
            )
        if new_state != TunnelState.FAILED and new_state not in _TUNNEL_TRANSITIONS[current]:
            raise InvalidStateTransition(
                f"illegal tunnel transition {current.value} -> {new_state.value}",
                details={"session": self.id},
            )
        self.tunnel_state = new_state
        self.state = _TUNNEL_TO_SESSION[new_state]

    def fail(self, reason: str):
        """Mark the session FAILED unless it already reached a terminal state."""
        if self.is_terminal:
            return
        self.error = reason
        if self.tunnel_state is not None:
            self.advance(TunnelState.FAILED)
        else:
            self.set_state(SessionState.FAILED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "mode": self.mode.value,
            "target": str(self.target) if self.target else None,
            "cover_host": self.cover_host,
            "resolved_ip": self.resolved_ip,
            "state": self.state.value,
            "tunnel_state": self.tunnel_state.value if self.tunnel_state else None,
            "created_at": self.created_at,
            "last_activity": self.last_activity,
            "bytes_sent": self.bytes_sent,
            "bytes_received": self.bytes_received,
            "error": self.error,
        }


@dataclass
class RegistryStats:
    """Counters kept by the session registry."""
    total_sessions: int = 0
    failed_sessions: int = 0
    bytes_sent: int = 0
    bytes_received: int = 0
    pool_rotations: int = 0
    last_rotation: Optional[float] = None
