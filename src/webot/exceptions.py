"""
exceptions.py — Webot Unified Error Hierarchy

All Webot-specific exceptions live here. Every layer of the client raises
typed subclasses of WebotError — never bare Exception.

Import from here, not from individual modules:
    from webot.exceptions import RemoteError, TimeoutExceeded

Hierarchy:
    WebotError
    ├── GatewayError
    │   ├── DecodeError
    │   ├── RemoteError
    │   ├── TimeoutExceeded
    │   ├── ConnectionClosed
    │   └── TransportError
    └── ConfigError
"""

from __future__ import annotations

from typing import Optional


# ─────────────────────────────────────────────────────────────────────────────
# Root
# ─────────────────────────────────────────────────────────────────────────────

class WebotError(Exception):
    """Base class for all Webot exceptions."""


# ─────────────────────────────────────────────────────────────────────────────
# Gateway layer
# ─────────────────────────────────────────────────────────────────────────────

class GatewayError(WebotError):
    """Base for gateway protocol and transport errors."""


class DecodeError(GatewayError):
    """An inbound frame could not be decoded. Dropped, never fatal."""

    UNRECOGNIZED_FRAME = "unrecognized_frame"
    MALFORMED = "malformed"

    def __init__(self, reason: str, message: str = "") -> None:
        self.reason = reason
        super().__init__(message or f"Cannot decode frame: {reason}")


class RemoteError(GatewayError):
    """The gateway answered a request with ok=false."""

    def __init__(self, code: int, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(f"[{code}] {message}")


class TimeoutExceeded(GatewayError):
    """No response arrived for a request within its deadline."""

    def __init__(self, request_id: str, timeout: float) -> None:
        self.request_id = request_id
        self.timeout = timeout
        super().__init__(f"Request {request_id} timed out after {timeout:g}s")


class ConnectionClosed(GatewayError):
    """The session was torn down while a request was outstanding."""

    def __init__(self, reason: Optional[str] = None) -> None:
        self.reason = reason or "Connection closed"
        super().__init__(self.reason)


class TransportError(GatewayError):
    """Socket-level failure. Triggers the reconnection policy."""


# ─────────────────────────────────────────────────────────────────────────────
# Configuration
# ─────────────────────────────────────────────────────────────────────────────

class ConfigError(WebotError):
    """Raised by Settings.validate_all() when configuration problems are found."""


__all__ = [
    "WebotError",
    "GatewayError",
    "DecodeError",
    "RemoteError",
    "TimeoutExceeded",
    "ConnectionClosed",
    "TransportError",
    "ConfigError",
]
