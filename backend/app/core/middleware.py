"""
Request middleware — correlation IDs, timing and alert-scoped log context.

Provides:
    • X-Request-ID header injection (correlation ID)
    • X-Process-Time header
    • One log entry per API request (health probes are logged at DEBUG)
    • community_id / observer_id lifted from the URL into the log context,
      so dispatcher and registry log lines carry them
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from typing import Dict

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from backend.app.core.logging_config import set_request_context

logger = logging.getLogger(__name__)

_QUIET_PREFIXES = ("/docs", "/redoc", "/openapi", "/favicon")
_PROBE_PREFIXES = ("/health",)

# Routing has not happened yet inside middleware, so path params are
# recovered from the URL directly.
_PATH_CONTEXT = (
    re.compile(r"^/api/v1/alerts/observers/(?P<observer_id>[^/]+)/pending$"),
    re.compile(r"^/api/v1/alerts/(?P<community_id>[^/]+)/broadcast$"),
    re.compile(r"^/api/v1/communities/(?P<community_id>[^/]+)/join$"),
)


def path_context(path: str) -> Dict[str, str]:
    """Alert-pipeline identifiers embedded in a request path."""
    for pattern in _PATH_CONTEXT:
        match = pattern.match(path)
        if match:
            return {k: v for k, v in match.groupdict().items() if v}
    return {}


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every request with timing and inject a correlation ID."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex[:16])
        client_ip = request.client.host if request.client else "unknown"
        path = request.url.path
        scoped = path_context(path)

        set_request_context(
            request_id=request_id,
            client_ip=client_ip,
            endpoint=path,
            method=request.method,
            **scoped,
        )

        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.error(
                "%s %s → 500 (%.1fms) [%s]",
                request.method, path, duration_ms, client_ip,
                extra={"duration_ms": duration_ms, "status_code": 500, **scoped},
            )
            set_request_context()
            raise

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{duration_ms:.1f}ms"

        if not path.startswith(_QUIET_PREFIXES):
            if response.status_code >= 400:
                level = logging.WARNING
            elif path.startswith(_PROBE_PREFIXES):
                level = logging.DEBUG
            else:
                level = logging.INFO
            logger.log(
                level,
                "%s %s → %d (%.1fms) [%s]",
                request.method, path, response.status_code, duration_ms, client_ip,
                extra={
                    "duration_ms": duration_ms,
                    "status_code": response.status_code,
                    "endpoint": path,
                    **scoped,
                },
            )

        set_request_context()
        return response
