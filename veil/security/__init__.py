"""
Security module - outbound disguise

Modules:
- fronting: cover hostname / SNI selection for TLS fronting
- tls_profiles: browser-like TLS parameters and session ticket key rotation
- obfuscation: request header randomization and response header scrubbing
- fragmentation: byte fragmentation with timing jitter
"""

from .fragmentation import StreamShaper, fragment, schedule_send
from .fronting import FrontingPolicy
from .obfuscation import obfuscate_headers, scrub_response_headers, DENY_LIST
from .tls_profiles import (
    PROFILE_CATALOG,
    TLSProfileSelector,
    derive_session_ticket_key,
    ticket_epoch,
)

__all__ = [
    "StreamShaper",
    "fragment",
    "schedule_send",
    "FrontingPolicy",
    "obfuscate_headers",
    "scrub_response_headers",
    "DENY_LIST",
    "PROFILE_CATALOG",
    "TLSProfileSelector",
    "derive_session_ticket_key",
    "ticket_epoch",
]
