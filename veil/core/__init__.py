"""
Core module initialization.

This module provides access to core functionality including
configuration, models and the exception hierarchy.
"""

from .config import VeilConfig
from .exceptions import (
    VeilError, ConfigError, InvalidStateTransition, MalformedRequest,
    DNSResolutionFailure, UpstreamConnectFailure, TransportClosed,
    UpstreamTimeout, ClientAbort
)
from .models import (
    Session, SessionMode, SessionState, TunnelState, Target,
    ResolutionResult, FrontingRule, TLSProfile, ObfuscationConfig, RegistryStats
)

__all__ = [
    "VeilConfig",
    "VeilError",
    "ConfigError",
    "InvalidStateTransition",
    "MalformedRequest",
    "DNSResolutionFailure",
    "UpstreamConnectFailure",
    "TransportClosed",
    "UpstreamTimeout",
    "ClientAbort",
    "Session",
    "SessionMode",
    "SessionState",
    "TunnelState",
    "Target",
    "ResolutionResult",
    "FrontingRule",
    "TLSProfile",
    "ObfuscationConfig",
    "RegistryStats"
]
