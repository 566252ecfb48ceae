"""
HTTP surface for Streamgate.

Routes:
    POST /api/query           table + operation + filters requests
    POST /api/ads/impression  ad impression / click logging
    POST /api/films/view      film view counter
    GET  /api/health          liveness

Every response body is {data, error}; error is null or {message}.
"""

from __future__ import annotations

import json
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from streamgate import __version__
from streamgate.audit import AuditTrail
from streamgate.core.correlation import CorrelatedLogger
from streamgate.core.errors import GatewayError
from streamgate.core.settings import GatewaySettings
from streamgate.database import AsyncpgDatabase, Database, UnconfiguredDatabase
from streamgate.engines.compiler import QueryCompiler
from streamgate.engines.inspector import RequestInspector
from streamgate.engines.rate_limiter import InMemoryRateLimiter, RateLimiter, RedisRateLimiter
from streamgate.engines.token_verifier import TokenVerifier
from streamgate.gateway import GatewayResponse, InboundRequest, QueryGateway
from streamgate.middleware.fastapi import CorrelationMiddleware, SecurityHeadersMiddleware

logger = CorrelatedLogger(logging.getLogger(__name__))


def _error_body(message: str) -> dict[str, Any]:
    return {"data": None, "error": {"message": message}}


def build_limiter(settings: GatewaySettings) -> RateLimiter:
    """Redis-backed limiter when a Redis URL is configured, else in-memory."""
    if settings.redis_url:
        import redis

        return RedisRateLimiter(redis.Redis.from_url(settings.redis_url))
    return InMemoryRateLimiter(sweep_interval=settings.rate_limit_sweep_interval)


def build_gateway(
    settings: GatewaySettings,
    *,
    database: Database | None = None,
    limiter: RateLimiter | None = None,
    audit: AuditTrail | None = None,
) -> QueryGateway:
    """Wire the gateway's collaborators from settings."""
    if database is None:
        if settings.database_url:
            database = AsyncpgDatabase.from_settings(settings)
        else:
            logger.warning("STREAMGATE_DATABASE_URL is not set; data routes will fail")
            database = UnconfiguredDatabase()

    if audit is None:
        audit = AuditTrail(
            log_path=settings.audit_log_path,
            database=database if settings.audit_to_database else None,
        )

    return QueryGateway(
        verifier=TokenVerifier.from_settings(settings),
        limiter=limiter or build_limiter(settings),
        database=database,
        compiler=QueryCompiler(),
        inspector=RequestInspector() if settings.inspect_requests else None,
        audit=audit,
    )


async def _read_body(request: Request) -> Any:
    """Decoded JSON body; undecodable text is passed through as a string."""
    raw = await request.body()
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw.decode("utf-8", errors="replace")


async def _inbound(request: Request) -> InboundRequest:
    return InboundRequest(
        path=str(request.url.path),
        method=request.method,
        headers=dict(request.headers),
        query=dict(request.query_params),
        body=await _read_body(request),
        peer=request.client.host if request.client else None,
    )


def _to_json(response: GatewayResponse) -> JSONResponse:
    return JSONResponse(status_code=response.status, content=response.body, headers=response.headers)


def create_app(
    settings: GatewaySettings | None = None,
    *,
    database: Database | None = None,
    limiter: RateLimiter | None = None,
    audit: AuditTrail | None = None,
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        settings: Gateway settings (read from the environment when omitted)
        database: Relational store override
        limiter: Rate limiter override
        audit: Audit trail override

    Raises:
        ConfigurationError: Signing secret unusable in production
    """
    settings = settings or GatewaySettings.from_env()
    gateway = build_gateway(settings, database=database, limiter=limiter, audit=audit)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        app.state.start_time = time.monotonic()
        if isinstance(gateway.limiter, InMemoryRateLimiter):
            gateway.limiter.start_sweeper()
        if isinstance(gateway.database, AsyncpgDatabase):
            await gateway.database.connect()
        logger.info("Streamgate started (environment=%s)", settings.environment)
        try:
            yield
        finally:
            if isinstance(gateway.limiter, InMemoryRateLimiter):
                gateway.limiter.stop_sweeper()
            if gateway.audit is not None:
                await gateway.audit.drain()
                gateway.audit.close()
            if isinstance(gateway.database, AsyncpgDatabase):
                await gateway.database.close()
            logger.info("Streamgate stopped")

    app = FastAPI(
        title="Streamgate",
        version=__version__,
        lifespan=lifespan,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None,
    )
    app.state.gateway = gateway
    app.state.settings = settings

    # Innermost, so preflight answers still carry the security and correlation headers
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )
    # Added last so it runs first
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(CorrelationMiddleware)

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_body())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content=_error_body("Invalid request"))

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(str(exc.detail)),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s", request.url.path)
        return JSONResponse(status_code=500, content=_error_body("Internal server error"))

    @app.post("/api/query")
    async def query_route(request: Request) -> JSONResponse:
        return _to_json(await gateway.handle_query(await _inbound(request)))

    @app.post("/api/ads/impression")
    async def impression_route(request: Request) -> JSONResponse:
        return _to_json(await gateway.handle_impression(await _inbound(request)))

    @app.post("/api/films/view")
    async def view_route(request: Request) -> JSONResponse:
        return _to_json(await gateway.handle_view(await _inbound(request)))

    @app.get("/api/health")
    async def health() -> dict[str, Any]:
        return {
            "data": {
                "status": "ok",
                "version": __version__,
                "time": datetime.now(timezone.utc).isoformat(),
                "database": not isinstance(gateway.database, UnconfiguredDatabase),
            },
            "error": None,
        }

    return app
