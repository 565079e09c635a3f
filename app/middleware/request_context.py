"""
RequestContext Middleware - Adds request tracking to all requests.

Adds to every request:
- request_id: taken from an incoming X-Request-ID or generated
- ip_address: client IP, honoring X-Forwarded-For only from trusted proxies
- public_url: the URL the caller actually used, needed to verify webhook
  signatures behind a load balancer

The request_id is also bound into structlog's context variables so every
log line written while handling the request carries it.

Usage:
    request.state.request_id
    request.state.ip_address
    request.state.public_url
"""

import uuid

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

MAX_REQUEST_ID_LENGTH = 128


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Add request context to all incoming requests.

    Also adds the X-Request-ID header to responses for client-side tracing.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = self._resolve_request_id(request)
        request.state.request_id = request_id

        ip_address = self._extract_client_ip(request)
        request.state.ip_address = ip_address
        request.state.public_url = self._public_url(request)

        structlog.contextvars.bind_contextvars(request_id=request_id)
        try:
            logger.debug(
                "Request started",
                method=request.method,
                path=request.url.path,
                ip_address=ip_address,
            )
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        response.headers["X-Request-ID"] = request_id
        return response

    def _resolve_request_id(self, request: Request) -> str:
        incoming = (request.headers.get("x-request-id") or "").strip()
        if incoming and len(incoming) <= MAX_REQUEST_ID_LENGTH:
            return incoming
        return str(uuid.uuid4())

    def _from_trusted_proxy(self, request: Request) -> bool:
        return bool(
            settings.TRUST_X_FORWARDED_FOR
            and request.client
            and request.client.host in settings.TRUSTED_PROXY_IPS
        )

    def _extract_client_ip(self, request: Request) -> str | None:
        """
        Extract client IP address with proxy spoofing protection.

        X-Forwarded-For is only trusted when TRUST_X_FORWARDED_FOR is on and
        the connection comes from one of TRUSTED_PROXY_IPS.
        """
        if self._from_trusted_proxy(request):
            forwarded_for = request.headers.get("x-forwarded-for")
            if forwarded_for:
                # "client, proxy1, proxy2": first entry is the original client
                ip_address = forwarded_for.split(",")[0].strip()
                logger.debug(
                    "Using X-Forwarded-For from trusted proxy",
                    proxy_ip=request.client.host,
                    client_ip=ip_address,
                )
                return ip_address

        return request.client.host if request.client else None

    def _public_url(self, request: Request) -> str:
        """Rebuild the externally visible URL, query string included."""
        if settings.WEBHOOK_PUBLIC_BASE_URL:
            url = settings.WEBHOOK_PUBLIC_BASE_URL.rstrip("/") + request.url.path
            if request.url.query:
                url = f"{url}?{request.url.query}"
            return url

        if self._from_trusted_proxy(request):
            proto = request.headers.get("x-forwarded-proto")
            host = request.headers.get("x-forwarded-host")
            url = request.url
            if proto:
                url = url.replace(scheme=proto.split(",")[0].strip())
            if host:
                url = url.replace(netloc=host.split(",")[0].strip())
            return str(url)

        return str(request.url)
