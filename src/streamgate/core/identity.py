"""
Identity model for Streamgate.

A Principal is derived exclusively from a verified bearer token and is
recomputed on every request. It is never persisted.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field


class TrustDomain(str, Enum):
    """Which signing secret vouched for a token."""

    PRIMARY = "primary"  # Tokens minted by this system
    FEDERATED = "federated"  # Tokens from the external identity source


class Role(str, Enum):
    """Roles understood by the access policy."""

    ADMIN = "admin"
    USER = "user"


class Principal(BaseModel):
    """Authenticated identity for the duration of one request."""

    model_config = {"frozen": True}

    user_id: str = Field(..., min_length=1, description="Verified subject id")
    email: str | None = Field(default=None, description="Email claim if present")
    role: str = Field(default=Role.USER.value, description="Effective role")
    trust_domain: TrustDomain = Field(
        default=TrustDomain.PRIMARY,
        description="Secret that verified the token",
    )

    @property
    def is_admin(self) -> bool:
        """Admin rights only ever come from the primary trust domain."""
        return self.role == Role.ADMIN.value and self.trust_domain == TrustDomain.PRIMARY
