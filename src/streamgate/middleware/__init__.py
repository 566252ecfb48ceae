"""FastAPI middleware integration."""

from streamgate.middleware.fastapi import CorrelationMiddleware, SecurityHeadersMiddleware

__all__ = [
    "CorrelationMiddleware",
    "SecurityHeadersMiddleware",
]
