"""
Gateway orchestrator.

Sequences every request through:
    RequestInspector -> RateLimiter -> TokenVerifier -> QueryCompiler -> Database

and always answers with a structured {data, error} body and an HTTP status.
No raw exception text or stack trace reaches the caller.

Rate-limit denial is a 429 on the query and view routes. On the
impression route it is a silent 200 with {logged: false} so automated
clients cannot probe the limiting policy.
"""

from __future__ import annotations

import hashlib
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Mapping

from streamgate.audit import AuditTrail
from streamgate.core.correlation import CorrelatedLogger, correlation_context, get_correlation_id
from streamgate.core.errors import (
    DatabaseError,
    GatewayError,
    InspectionBlocked,
    RateLimitExceeded,
    ValidationError,
)
from streamgate.core.identity import Principal
from streamgate.core.query import Operation
from streamgate.database import Database
from streamgate.engines.compiler import CompiledQuery, QueryCompiler, ResultShape
from streamgate.engines.inspector import InspectionRequest, RequestInspector
from streamgate.engines.rate_limiter import (
    RATE_LIMITS,
    RateLimitConfig,
    RateLimitDecision,
    RateLimiter,
    client_identifier,
)
from streamgate.engines.token_verifier import TokenVerifier, extract_bearer_token

logger = CorrelatedLogger(logging.getLogger(__name__))

PUBLIC_CACHE_CONTROL = "public, s-maxage=60, stale-while-revalidate=30"

IMPRESSION_EVENT_TYPES = frozenset({"impression", "click", "complete"})
_BOT_USER_AGENT = re.compile(r"bot|crawl|spider|scrape|headless", re.IGNORECASE)

IMPRESSION_INSERT_SQL = (
    "INSERT INTO ad_impressions (event_type, slot_id, film_id, placement, "
    "user_id, ip_hash, user_agent_hash, is_suspicious, duration_ms, created_at) "
    "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, NOW())"
)
VIEW_INCREMENT_SQL = "UPDATE films SET views = COALESCE(views, 0) + 1 WHERE id = $1"

_WRITE_OPERATIONS = frozenset(op.value for op in Operation if op.is_write)


def _hash16(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:16]


def _client_values(body: Any) -> Any:
    """
    The caller-supplied values of a query body: columns, data and filter values.

    Table, operation and the other structural keys are checked against the
    allow-list by the compiler, so the body patterns skip them. Non-object
    bodies are returned unchanged.
    """
    if not isinstance(body, Mapping):
        return body

    values: dict[str, Any] = {}
    for key in ("columns", "data"):
        if body.get(key) is not None:
            values[key] = body[key]
    filters = body.get("filters")
    if isinstance(filters, list):
        values["filters"] = [f.get("value") if isinstance(f, Mapping) else f for f in filters]
    return values


@dataclass
class InboundRequest:
    """Transport-neutral view of an HTTP request."""

    path: str = "/"
    method: str = "POST"
    headers: Mapping[str, str] = field(default_factory=dict)
    query: Mapping[str, Any] = field(default_factory=dict)
    body: Any = None
    peer: str | None = None

    def header(self, name: str) -> str | None:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None

    @property
    def client_ip(self) -> str:
        return client_identifier(self.headers, self.peer)

    @property
    def user_agent(self) -> str | None:
        return self.header("user-agent")


@dataclass
class GatewayResponse:
    """Status, {data, error} body and extra headers."""

    status: int
    body: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def ok(cls, data: Any, headers: dict[str, str] | None = None, **extra: Any) -> GatewayResponse:
        return cls(200, {"data": data, **extra, "error": None}, dict(headers or {}))

    @classmethod
    def from_error(cls, error: GatewayError, headers: dict[str, str] | None = None) -> GatewayResponse:
        return cls(error.status_code, error.to_body(), dict(headers or {}))


class QueryGateway:
    """
    Request orchestrator.

    Usage:
        gateway = QueryGateway(
            verifier=TokenVerifier(secret),
            limiter=InMemoryRateLimiter(),
            database=AsyncpgDatabase(dsn),
        )
        response = await gateway.handle_query(InboundRequest(body=payload, headers=headers))
    """

    def __init__(
        self,
        *,
        verifier: TokenVerifier,
        limiter: RateLimiter,
        database: Database,
        compiler: QueryCompiler | None = None,
        inspector: RequestInspector | None = None,
        audit: AuditTrail | None = None,
        rate_limits: Mapping[str, RateLimitConfig] | None = None,
    ) -> None:
        """
        Initialize gateway.

        Args:
            verifier: Bearer token verifier
            limiter: Rate limiter (fails open)
            database: Relational store
            compiler: Query compiler (default allow-list when omitted)
            inspector: Perimeter inspector; None disables inspection
            audit: Audit trail; None disables auditing
            rate_limits: Presets keyed by endpoint class
        """
        self.verifier = verifier
        self.limiter = limiter
        self.database = database
        self.compiler = compiler or QueryCompiler()
        self.inspector = inspector
        self.audit = audit
        self.rate_limits = dict(rate_limits or RATE_LIMITS)

    # ------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------

    async def handle_query(self, request: InboundRequest) -> GatewayResponse:
        """POST /api/query: compile and execute a table + operation request."""
        with correlation_context(get_correlation_id(), path=request.path, method=request.method):
            headers: dict[str, str] = {}
            try:
                self._inspect(request, scan_body=_client_values(request.body))

                decision = self._limit(request, "query", f"query:{request.client_ip}")
                if decision is not None:
                    headers.update(decision.headers())
                if self._is_write(request.body):
                    self._limit(request, "write", f"write:{request.client_ip}")

                principal = self._authenticate(request)
                compiled = self.compiler.compile(request.body, principal)
                response = await self._execute(compiled)
                response.headers.update(headers)

                if compiled.operation is Operation.SELECT and self._is_public(compiled.table):
                    response.headers["Cache-Control"] = PUBLIC_CACHE_CONTROL
                elif principal is not None and compiled.operation.is_write:
                    self._audit_mutation(request, principal, compiled, response)
                return response

            except RateLimitExceeded as e:
                headers["Retry-After"] = str(max(1, math.ceil(e.retry_after or 0)))
                return GatewayResponse.from_error(e, headers)
            except GatewayError as e:
                return self._error_response(e, headers)
            except Exception:
                logger.exception("Unhandled error in query route")
                return GatewayResponse.from_error(DatabaseError(), headers)

    async def handle_impression(self, request: InboundRequest) -> GatewayResponse:
        """
        POST /api/ads/impression: log an ad impression, click or completion.

        Rate limiting and storage failures answer 200 {logged: false}.
        """
        not_logged = GatewayResponse.ok({"logged": False})

        with correlation_context(get_correlation_id(), path=request.path, method=request.method):
            try:
                self._inspect(request)
                self._limit(request, "impression", f"ad-impression:{request.client_ip}")
            except RateLimitExceeded:
                return not_logged
            except GatewayError as e:
                return self._error_response(e)

            body = request.body if isinstance(request.body, Mapping) else {}
            event_type = body.get("type")
            if event_type not in IMPRESSION_EVENT_TYPES:
                return GatewayResponse.from_error(ValidationError("Invalid event type"))

            principal = self._authenticate(request)
            user_agent = request.user_agent or ""
            is_suspicious = not request.header("referer") or bool(_BOT_USER_AGENT.search(user_agent))

            params = (
                event_type,
                body.get("slotId"),
                body.get("filmId"),
                body.get("placement") or "unknown",
                principal.user_id if principal else None,
                _hash16(request.client_ip),
                _hash16(user_agent),
                is_suspicious,
                body.get("duration"),
            )
            try:
                await self.database.fetch(IMPRESSION_INSERT_SQL, params)
            except Exception as e:
                logger.warning("Impression logging failed: %s", type(e).__name__)
                return not_logged

            return GatewayResponse.ok({"logged": True})

    async def handle_view(self, request: InboundRequest) -> GatewayResponse:
        """POST /api/films/view: increment a film's view counter."""
        with correlation_context(get_correlation_id(), path=request.path, method=request.method):
            try:
                self._inspect(request)
                self._limit(request, "query", f"view:{request.client_ip}")

                body = request.body if isinstance(request.body, Mapping) else {}
                film_id = body.get("filmId")
                if not film_id:
                    raise ValidationError("Film ID is required")

                await self.database.fetch(VIEW_INCREMENT_SQL, (str(film_id),))
                return GatewayResponse.ok({"success": True})

            except RateLimitExceeded as e:
                return GatewayResponse.from_error(
                    e, {"Retry-After": str(max(1, math.ceil(e.retry_after or 0)))}
                )
            except GatewayError as e:
                return self._error_response(e)
            except Exception:
                logger.exception("Unhandled error in view route")
                return GatewayResponse.from_error(DatabaseError())

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _inspect(self, request: InboundRequest, scan_body: Any = None) -> None:
        if self.inspector is None:
            return

        result = self.inspector.inspect(
            InspectionRequest(
                url=request.path,
                query=request.query,
                headers=request.headers,
                body=request.body,
                scan_body=scan_body,
            )
        )
        if not result.blocked:
            return

        rule = result.rule or "unknown"
        reason = result.reason or ""
        logger.warning("Request blocked by rule %s: %s", rule, reason)
        if self.audit is not None:
            self.audit.log_request_blocked(
                rule=rule,
                reason=reason,
                path=request.path,
                ip_address=request.client_ip,
                user_agent=request.user_agent,
            )
        raise InspectionBlocked(rule, reason)

    def _limit(self, request: InboundRequest, scope: str, identifier: str) -> RateLimitDecision | None:
        """
        Consume one slot for the identifier.

        Returns None when the limiter itself failed (the request goes through).

        Raises:
            RateLimitExceeded: Identifier is over its limit
        """
        config = self.rate_limits[scope]
        try:
            decision = self.limiter.check(identifier, config)
        except Exception:
            logger.exception("Rate limiter failed for scope %s; allowing request", scope)
            return None

        if decision.allowed:
            return decision

        logger.info("Rate limit hit for %s (%d/%d)", identifier, decision.count, decision.limit)
        if self.audit is not None:
            self.audit.log_rate_limit_hit(
                identifier,
                scope=scope,
                ip_address=request.client_ip,
                user_agent=request.user_agent,
            )
        raise RateLimitExceeded(retry_after=decision.retry_after, scope=scope)

    def _authenticate(self, request: InboundRequest) -> Principal | None:
        token = extract_bearer_token(request.header("authorization"))
        if token is None:
            return None

        principal = self.verifier.verify(token)
        if principal is None:
            logger.info("Bearer token did not verify; continuing anonymously")
            if self.audit is not None:
                self.audit.log_invalid_token(
                    path=request.path,
                    ip_address=request.client_ip,
                    user_agent=request.user_agent,
                )
        return principal

    async def _execute(self, compiled: CompiledQuery) -> GatewayResponse:
        if not compiled.statements:
            return GatewayResponse.ok([])

        if compiled.transactional:
            batches = await self.database.fetch_in_transaction(
                [(statement.sql, statement.params) for statement in compiled.statements]
            )
            rows = [row for batch in batches for row in batch]
        else:
            rows = await self.database.fetch(compiled.sql, compiled.params)

        if compiled.shape is ResultShape.COUNT:
            count = int(rows[0].get("count") or 0) if rows else 0
            return GatewayResponse.ok(None, count=count)
        if compiled.shape is ResultShape.FIRST:
            return GatewayResponse.ok(rows[0] if rows else None)
        return GatewayResponse.ok(rows)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _is_write(body: Any) -> bool:
        if not isinstance(body, Mapping):
            return False
        return body.get("operation") in _WRITE_OPERATIONS

    def _is_public(self, table: str) -> bool:
        entry = self.compiler.allow_list.lookup(table)
        return entry is not None and entry.public_read

    def _audit_mutation(
        self,
        request: InboundRequest,
        principal: Principal,
        compiled: CompiledQuery,
        response: GatewayResponse,
    ) -> None:
        if self.audit is None:
            return

        data = response.body.get("data")
        rows = data if isinstance(data, list) else ([data] if data else [])
        target_id = None
        if len(rows) == 1 and isinstance(rows[0], Mapping) and rows[0].get("id") is not None:
            target_id = str(rows[0]["id"])

        self.audit.log_mutation(
            principal,
            operation=compiled.operation.value,
            table=compiled.table,
            rows=len(rows),
            ip_address=request.client_ip,
            user_agent=request.user_agent,
            target_id=target_id,
        )

    @staticmethod
    def _error_response(error: GatewayError, headers: dict[str, str] | None = None) -> GatewayResponse:
        if isinstance(error, DatabaseError):
            logger.error("Database error: %s", error.message)
        elif error.status_code >= 500:
            logger.error("%s: %s", type(error).__name__, error.message)
        else:
            logger.info("Request rejected (%d): %s", error.status_code, error.message)
        return GatewayResponse.from_error(error, headers)
