"""
FastAPI integration for Streamgate.

Provides the correlation and security-header middleware.

Usage:
    from streamgate.middleware.fastapi import CorrelationMiddleware, SecurityHeadersMiddleware

    app = FastAPI()
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(CorrelationMiddleware)
"""

from __future__ import annotations

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from streamgate.core.correlation import (
    CORRELATION_HEADER,
    correlation_context,
    extract_correlation_id,
)
from streamgate.engines.inspector import SECURITY_HEADERS


class CorrelationMiddleware(BaseHTTPMiddleware):
    """
    Propagates correlation IDs through requests.

    Takes the ID from X-Correlation-ID, X-Request-ID or X-Trace-ID, or
    generates one, and echoes it in the X-Correlation-ID response header.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        correlation_id = extract_correlation_id(request.headers)

        with correlation_context(
            correlation_id=correlation_id,
            method=request.method,
            path=str(request.url.path),
            client_ip=request.client.host if request.client else None,
        ) as cid:
            request.state.correlation_id = cid
            response = await call_next(request)
            response.headers[CORRELATION_HEADER] = cid
            return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds the standard security headers to every response."""

    def __init__(self, app, headers: dict[str, str] | None = None) -> None:  # type: ignore[no-untyped-def]
        super().__init__(app)
        self._headers = dict(headers or SECURITY_HEADERS)

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        response = await call_next(request)
        for name, value in self._headers.items():
            response.headers.setdefault(name, value)
        return response
