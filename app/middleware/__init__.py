"""
Middleware components for request processing.

- Request context (request ID, client IP, per-request logging)
"""

from app.middleware.request_context import RequestContextMiddleware

__all__ = [
    "RequestContextMiddleware",
]
