"""
Bearer token verification across two trust domains.

The primary secret belongs to this system: tokens it verifies are trusted
in full, including their role claim. The secondary secret belongs to a
federated identity source: tokens it verifies give us a user id and email,
but the role is always forced to "user".

Zero-trust: there is no path that reads claims from a token whose signature
was not verified. Any failure yields None (anonymous).
"""

from __future__ import annotations

import logging
import time
from typing import Any

import jwt

from streamgate.core.errors import FailurePolicy
from streamgate.core.identity import Principal, Role, TrustDomain
from streamgate.core.settings import GatewaySettings

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "


def extract_bearer_token(authorization: str | None) -> str | None:
    """Token from an `Authorization: Bearer <token>` header, else None."""
    if not authorization or not authorization.startswith(BEARER_PREFIX):
        return None
    token = authorization[len(BEARER_PREFIX):].strip()
    return token or None


class TokenVerifier:
    """
    Verifies HS256 bearer tokens against a primary and a federated secret.

    Usage:
        verifier = TokenVerifier(primary_secret="...", federated_secret="...")
        principal = verifier.verify(token)
        if principal is None:
            # treat as anonymous
    """

    failure_policy = FailurePolicy.CLOSED

    ALGORITHM = "HS256"

    def __init__(
        self,
        primary_secret: str,
        federated_secret: str | None = None,
        *,
        token_ttl: int = 7 * 24 * 3600,
        leeway: float = 0,
    ) -> None:
        """
        Initialize verifier.

        Args:
            primary_secret: Secret this system signs tokens with
            federated_secret: Secret of the external identity source (optional)
            token_ttl: Lifetime of tokens minted by issue(), in seconds
            leeway: Clock skew tolerated on exp/iat, in seconds
        """
        if not primary_secret:
            raise ValueError("primary_secret is required")
        self._primary_secret = primary_secret
        self._federated_secret = federated_secret or None
        self._token_ttl = token_ttl
        self._leeway = leeway

    @classmethod
    def from_settings(cls, settings: GatewaySettings) -> TokenVerifier:
        return cls(
            settings.primary_secret,
            settings.federated_secret,
            token_ttl=settings.token_ttl_seconds,
        )

    @property
    def has_federated_domain(self) -> bool:
        return self._federated_secret is not None

    def verify(self, token: str | None) -> Principal | None:
        """
        Verify a token and derive the Principal.

        Tries the primary secret first, then the federated one.

        Returns:
            Principal, or None when neither secret verifies the token
        """
        if not token:
            return None

        principal = self._verify_with(token, self._primary_secret, TrustDomain.PRIMARY)
        if principal is not None:
            return principal

        if self._federated_secret is None:
            return None
        return self._verify_with(token, self._federated_secret, TrustDomain.FEDERATED)

    def principal_from_header(self, authorization: str | None) -> Principal | None:
        """Verify the token carried in an Authorization header, if any."""
        return self.verify(extract_bearer_token(authorization))

    def issue(
        self,
        user_id: str,
        email: str | None = None,
        role: str = Role.USER.value,
        *,
        ttl: int | None = None,
    ) -> str:
        """
        Mint a primary-domain token.

        Args:
            user_id: Subject id
            email: Email claim
            role: Role claim, trusted on verification
            ttl: Lifetime override in seconds

        Returns:
            Encoded JWT
        """
        now = int(time.time())
        claims: dict[str, Any] = {
            "sub": user_id,
            "userId": user_id,
            "email": email,
            "role": role,
            "iat": now,
            "exp": now + (ttl if ttl is not None else self._token_ttl),
        }
        return jwt.encode(claims, self._primary_secret, algorithm=self.ALGORITHM)

    def _verify_with(
        self,
        token: str,
        secret: str,
        domain: TrustDomain,
    ) -> Principal | None:
        try:
            claims = jwt.decode(
                token,
                secret,
                algorithms=[self.ALGORITHM],
                leeway=self._leeway,
                options={"require": ["exp"], "verify_aud": False},
            )
            return self._principal_from_claims(claims, domain)
        except jwt.ExpiredSignatureError:
            logger.debug("Token expired (%s domain)", domain.value)
        except jwt.PyJWTError as e:
            logger.debug("Token rejected by %s domain: %s", domain.value, type(e).__name__)
        except (ValueError, TypeError) as e:
            logger.debug("Unusable claims in %s token: %s", domain.value, e)
        return None

    @staticmethod
    def _principal_from_claims(claims: dict[str, Any], domain: TrustDomain) -> Principal | None:
        user_id = claims.get("userId") or claims.get("sub")
        if not user_id:
            return None

        email = claims.get("email")
        if domain is TrustDomain.PRIMARY:
            role = str(claims.get("role") or Role.USER.value)
        else:
            # Claims from the federated source never grant privileges here
            role = Role.USER.value

        return Principal(
            user_id=str(user_id),
            email=str(email) if email else None,
            role=role,
            trust_domain=domain,
        )
