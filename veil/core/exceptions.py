"""
Exception hierarchy for the Veil relay.

Every failure a relay session can hit maps onto one of these classes so the
relay engine can decide what the client sees (a generic status line) and what
goes to the log (the full detail, including the original cause).

Hierarchy:
VeilError
├── ConfigError
├── InvalidStateTransition
├── MalformedRequest              -> 400
├── DNSResolutionFailure          -> 502
├── UpstreamConnectFailure        -> 502
│   └── TransportClosed
├── UpstreamTimeout               -> 504
└── ClientAbort                   -> no response
"""

from typing import Any, Dict, Optional


class VeilError(Exception):
    """
    Base exception for the relay.

    Attributes:
        message: human readable description (log only)
        code: error code, defaults to the class name
        details: extra context such as the target host or per-strategy errors
        cause: the underlying exception, chained as __cause__
    """

    status: Optional[int] = None
    public_message: str = "Internal Error"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        parts = [f"[{self.code}] {self.message}"]
        if self.details:
            parts.append(f"Details: {self.details}")
        if self.cause:
            parts.append(f"Caused by: {type(self.cause).__name__}: {self.cause}")
        return " | ".join(parts)

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code!r}, "
            f"details={self.details!r})"
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for logs and the admin API (never sent to relay clients)."""
        result = {
            "error": self.code,
            "message": self.message,
            "details": self.details,
            "type": self.__class__.__name__,
        }
        if self.cause:
            result["cause"] = {
                "type": type(self.cause).__name__,
                "message": str(self.cause),
            }
        return result


class ConfigError(VeilError):
    """Invalid configuration value."""


class InvalidStateTransition(VeilError):
    """A session was asked to leave a terminal state or skip a state."""


class MalformedRequest(VeilError):
    """The client's request line, CONNECT authority or upgrade target is unusable."""

    status = 400
    public_message = "Bad Request"


class DNSResolutionFailure(VeilError):
    """Every resolution strategy failed for a hostname."""

    status = 502
    public_message = "Bad Gateway"


class UpstreamConnectFailure(VeilError):
    """The destination refused, reset or could not be reached."""

    status = 502
    public_message = "Bad Gateway"


class TransportClosed(UpstreamConnectFailure):
    """A transport became unwritable while a shaped write was in progress."""


class UpstreamTimeout(VeilError):
    """Connect, response or idle deadline expired."""

    status = 504
    public_message = "Gateway Timeout"


class ClientAbort(VeilError):
    """The client went away. Nothing is written back."""
