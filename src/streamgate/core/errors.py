"""
Error taxonomy for Streamgate.

Every failure the gateway can report to a client is a GatewayError subclass
carrying its HTTP status and a client-safe message. The orchestrator maps
these one-to-one to responses; nothing here is ever retried.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class FailurePolicy(str, Enum):
    """How a component behaves when it cannot reach a decision."""

    OPEN = "open"  # Let the primary operation continue
    CLOSED = "closed"  # Deny


class GatewayError(Exception):
    """Base class for typed gateway errors."""

    status_code: int = 500
    default_message: str = "Internal server error"

    def __init__(self, message: str | None = None, **details: Any) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    @property
    def public_message(self) -> str:
        """Message that is safe to return to the caller."""
        return self.message

    def to_body(self) -> dict[str, Any]:
        """Uniform response body."""
        return {"data": None, "error": {"message": self.public_message}}


class ValidationError(GatewayError):
    """Malformed request shape."""

    status_code = 400
    default_message = "Invalid request"


class AuthenticationError(GatewayError):
    """Missing or invalid token on a protected action."""

    status_code = 401
    default_message = "Authentication required"


class ForbiddenError(GatewayError):
    """Valid identity lacking the required permission."""

    status_code = 403
    default_message = "Forbidden"


class NotAllowedError(GatewayError):
    """Table or operation outside the allow-list."""

    status_code = 400
    default_message = "Table or operation is not allowed"


class RateLimitExceeded(GatewayError):
    """Too many requests for an identifier."""

    status_code = 429
    default_message = "Too many requests"

    def __init__(
        self,
        message: str | None = None,
        *,
        retry_after: float | None = None,
        **details: Any,
    ) -> None:
        super().__init__(message, **details)
        self.retry_after = retry_after


class InspectionBlocked(GatewayError):
    """Request matched a perimeter inspection rule."""

    status_code = 403
    default_message = "Request blocked by security policy"

    def __init__(self, rule: str, reason: str) -> None:
        super().__init__(self.default_message, rule=rule, reason=reason)
        self.rule = rule
        self.reason = reason


class DatabaseError(GatewayError):
    """Database failure. The underlying error text never leaves the process."""

    status_code = 500
    default_message = "Internal server error"

    @property
    def public_message(self) -> str:
        return self.default_message


class ConfigurationError(GatewayError):
    """Fatal startup configuration problem."""

    status_code = 500
    default_message = "Gateway is misconfigured"
