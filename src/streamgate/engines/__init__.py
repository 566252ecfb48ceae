"""Inspection, rate limiting, token verification, policy and query compilation engines."""

from streamgate.engines.compiler import (
    CompiledQuery,
    CompiledStatement,
    QueryCompiler,
    ResultShape,
)
from streamgate.engines.inspector import (
    MAX_BODY_BYTES,
    SECURITY_HEADERS,
    InspectionRequest,
    InspectionResult,
    RequestInspector,
)
from streamgate.engines.policy import AccessPolicy, PolicyDecision
from streamgate.engines.rate_limiter import (
    DEFAULT_CONFIG,
    RATE_LIMITS,
    InMemoryRateLimiter,
    RateLimitConfig,
    RateLimitDecision,
    RateLimiter,
    RedisRateLimiter,
    client_identifier,
)
from streamgate.engines.token_verifier import TokenVerifier, extract_bearer_token

__all__ = [
    # Inspection
    "RequestInspector",
    "InspectionRequest",
    "InspectionResult",
    "MAX_BODY_BYTES",
    "SECURITY_HEADERS",
    # Rate limiting
    "RateLimiter",
    "RateLimitConfig",
    "RateLimitDecision",
    "InMemoryRateLimiter",
    "RedisRateLimiter",
    "RATE_LIMITS",
    "DEFAULT_CONFIG",
    "client_identifier",
    # Tokens
    "TokenVerifier",
    "extract_bearer_token",
    # Policy
    "AccessPolicy",
    "PolicyDecision",
    # Compilation
    "QueryCompiler",
    "CompiledQuery",
    "CompiledStatement",
    "ResultShape",
]
