"""
Streamgate - Request Security & Data Access Gateway.

Verifies bearer-token identity, rate limits, inspects requests and compiles
table + operation + filters requests into parameterized SQL against an
explicit table allow-list.
"""

__version__ = "0.1.0"

from streamgate.audit import AuditAction, AuditEvent, AuditTrail
from streamgate.core.allowlist import DEFAULT_ALLOW_LIST, AllowListEntry, TableAllowList
from streamgate.core.correlation import (
    CorrelatedLogger,
    correlation_context,
    generate_correlation_id,
    get_correlation_id,
)
from streamgate.core.errors import (
    AuthenticationError,
    ConfigurationError,
    DatabaseError,
    FailurePolicy,
    ForbiddenError,
    GatewayError,
    InspectionBlocked,
    NotAllowedError,
    RateLimitExceeded,
    ValidationError,
)
from streamgate.core.identity import Principal, Role, TrustDomain
from streamgate.core.query import Filter, FilterOp, Operation, OrderSpec, QueryRequest
from streamgate.core.settings import GatewaySettings
from streamgate.database import AsyncpgDatabase, Database
from streamgate.engines.compiler import CompiledQuery, CompiledStatement, QueryCompiler, ResultShape
from streamgate.engines.inspector import InspectionRequest, InspectionResult, RequestInspector
from streamgate.engines.policy import AccessPolicy
from streamgate.engines.rate_limiter import (
    RATE_LIMITS,
    InMemoryRateLimiter,
    RateLimitConfig,
    RateLimitDecision,
    RateLimiter,
    RedisRateLimiter,
)
from streamgate.engines.token_verifier import TokenVerifier
from streamgate.gateway import GatewayResponse, InboundRequest, QueryGateway

__all__ = [
    "__version__",
    # Identity
    "Principal",
    "Role",
    "TrustDomain",
    # Requests
    "QueryRequest",
    "Filter",
    "FilterOp",
    "Operation",
    "OrderSpec",
    # Allow-list
    "AllowListEntry",
    "TableAllowList",
    "DEFAULT_ALLOW_LIST",
    # Engines
    "TokenVerifier",
    "RateLimiter",
    "RateLimitConfig",
    "RateLimitDecision",
    "InMemoryRateLimiter",
    "RedisRateLimiter",
    "RATE_LIMITS",
    "RequestInspector",
    "InspectionRequest",
    "InspectionResult",
    "AccessPolicy",
    "QueryCompiler",
    "CompiledQuery",
    "CompiledStatement",
    "ResultShape",
    # Orchestration
    "QueryGateway",
    "InboundRequest",
    "GatewayResponse",
    "Database",
    "AsyncpgDatabase",
    # Audit
    "AuditAction",
    "AuditEvent",
    "AuditTrail",
    # Correlation
    "CorrelatedLogger",
    "correlation_context",
    "generate_correlation_id",
    "get_correlation_id",
    # Configuration & errors
    "GatewaySettings",
    "FailurePolicy",
    "GatewayError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotAllowedError",
    "RateLimitExceeded",
    "InspectionBlocked",
    "DatabaseError",
    "ConfigurationError",
]
