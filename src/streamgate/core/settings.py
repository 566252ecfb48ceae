"""
Gateway configuration.

Settings are read once from environment variables at startup. Signing
secrets fail closed: a missing or placeholder primary secret in production
is a fatal startup error.
"""

from __future__ import annotations

import logging
import os
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from streamgate.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

PRIMARY_SECRET_ENV = "STREAMGATE_JWT_SECRET"
FEDERATED_SECRET_ENV = "STREAMGATE_FEDERATED_JWT_SECRET"

# Only reachable outside production
DEV_PLACEHOLDER_SECRET = "streamgate-dev-secret-change-in-production"

INSECURE_PATTERNS: tuple[str, ...] = (
    DEV_PLACEHOLDER_SECRET,
    "changeme",
    "secret",
    "password",
    "placeholder",
    "your-secret-key",
)

MIN_SECRET_LENGTH = 32

_PRODUCTION_NAMES = frozenset({"production", "prod"})


def _env_flag(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def secret_problems(secret: str | None, name: str) -> list[str]:
    """
    Describe why a secret is unsafe. Empty list means it looks usable.

    Args:
        secret: Secret value (may be None)
        name: Environment variable name, for messages
    """
    if not secret or not secret.strip():
        return [f"{name} is not set"]

    problems = []
    lowered = secret.lower()
    for pattern in INSECURE_PATTERNS:
        if lowered == pattern or pattern in lowered:
            problems.append(f'{name} contains insecure pattern "{pattern}"')
            break

    if len(secret) < MIN_SECRET_LENGTH:
        problems.append(f"{name} is shorter than {MIN_SECRET_LENGTH} characters")
    return problems


@dataclass
class GatewaySettings:
    """Runtime configuration for the gateway."""

    environment: str = "development"
    primary_secret: str = DEV_PLACEHOLDER_SECRET
    federated_secret: str | None = None
    token_ttl_seconds: int = 7 * 24 * 3600

    database_url: str | None = None
    database_timeout: float = 10.0
    database_min_pool: int = 1
    database_max_pool: int = 10

    redis_url: str | None = None
    rate_limit_sweep_interval: float = 60.0

    inspect_requests: bool = True
    audit_log_path: Path | None = None
    audit_to_database: bool = False

    cors_origins: tuple[str, ...] = ("*",)

    def __post_init__(self) -> None:
        if not self.is_production:
            return
        if not self.primary_secret or not self.primary_secret.strip():
            raise ConfigurationError(f"{PRIMARY_SECRET_ENV} must be set in production")
        if self.primary_secret == DEV_PLACEHOLDER_SECRET:
            raise ConfigurationError(f"{PRIMARY_SECRET_ENV} is the development placeholder")

    @property
    def is_production(self) -> bool:
        return self.environment.lower() in _PRODUCTION_NAMES

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> GatewaySettings:
        """
        Build settings from environment variables.

        Raises:
            ConfigurationError: Primary secret missing or the placeholder in production
        """
        env = os.environ if environ is None else environ
        environment = env.get("STREAMGATE_ENV", "development")
        is_production = environment.lower() in _PRODUCTION_NAMES

        primary = env.get(PRIMARY_SECRET_ENV) or None
        if primary is None:
            if is_production:
                raise ConfigurationError(
                    f"{PRIMARY_SECRET_ENV} must be set in production"
                )
            warnings.warn(
                f"{PRIMARY_SECRET_ENV} is not set; using the development placeholder. "
                "This is NOT safe for production.",
                UserWarning,
                stacklevel=2,
            )
            primary = DEV_PLACEHOLDER_SECRET

        for problem in secret_problems(primary, PRIMARY_SECRET_ENV):
            if primary != DEV_PLACEHOLDER_SECRET:
                logger.warning("Weak signing secret: %s", problem)

        audit_path = env.get("STREAMGATE_AUDIT_LOG")
        origins = tuple(
            o.strip() for o in env.get("STREAMGATE_CORS_ORIGINS", "*").split(",") if o.strip()
        )

        return cls(
            environment=environment,
            primary_secret=primary,
            federated_secret=env.get(FEDERATED_SECRET_ENV) or None,
            database_url=env.get("STREAMGATE_DATABASE_URL") or None,
            database_timeout=float(env.get("STREAMGATE_DB_TIMEOUT", "10")),
            database_min_pool=int(env.get("STREAMGATE_DB_MIN_POOL", "1")),
            database_max_pool=int(env.get("STREAMGATE_DB_MAX_POOL", "10")),
            redis_url=env.get("STREAMGATE_REDIS_URL") or None,
            rate_limit_sweep_interval=float(
                env.get("STREAMGATE_RATE_LIMIT_SWEEP", "60")
            ),
            inspect_requests=_env_flag(env.get("STREAMGATE_INSPECT_REQUESTS"), True),
            audit_log_path=Path(audit_path) if audit_path else None,
            audit_to_database=_env_flag(env.get("STREAMGATE_AUDIT_DB"), False),
            cors_origins=origins or ("*",),
        )
