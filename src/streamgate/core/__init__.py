"""Core identity, configuration, allow-list and request models."""

from streamgate.core.allowlist import (
    DEFAULT_ALLOW_LIST,
    AllowListEntry,
    TableAllowList,
    sanitize_identifier,
)
from streamgate.core.correlation import (
    CorrelatedLogger,
    correlation_context,
    extract_correlation_id,
    generate_correlation_id,
    get_correlation_id,
    get_trace_context,
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
from streamgate.core.query import Filter, FilterOp, Operation, OrderSpec, QueryRequest, parse_query_request
from streamgate.core.settings import GatewaySettings

__all__ = [
    # Allow-list
    "AllowListEntry",
    "TableAllowList",
    "DEFAULT_ALLOW_LIST",
    "sanitize_identifier",
    # Correlation
    "CorrelatedLogger",
    "correlation_context",
    "extract_correlation_id",
    "generate_correlation_id",
    "get_correlation_id",
    "get_trace_context",
    # Errors
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
    # Identity
    "Principal",
    "Role",
    "TrustDomain",
    # Requests
    "Filter",
    "FilterOp",
    "Operation",
    "OrderSpec",
    "QueryRequest",
    "parse_query_request",
    "GatewaySettings",
]
