"""
Middleware components for request processing.

- Request context (request ID, client IP, public URL for webhook signatures)
"""

from app.middleware.request_context import RequestContextMiddleware

__all__ = ["RequestContextMiddleware"]
