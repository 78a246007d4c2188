"""
Error types for setup, identity and store failures, and their HTTP rendering.

Every error carries an HTTP status, a stable code and a details dict, and
renders as

    {"error": {"code": "CONFLICT", "message": "...", "status": 409,
               "details": {...}, "request_id": "...", "path": "...", "method": "..."}}

``path`` and ``method`` are only included outside production.

The freshness filter never raises: bad records are rejected. A store
failure during a tail reaches observers as a StoreError passed to their
error callback rather than being raised into the caller.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend.app.core.config import settings
from backend.app.core.logging_config import get_request_context

logger = logging.getLogger(__name__)


class FindMeError(Exception):
    """Base class; subclasses set ``status_code`` and ``code``."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = {k: v for k, v in details.items() if v is not None}


class NotFoundError(FindMeError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, resource: str, message: str = "", **identifiers: Any):
        super().__init__(message or f"{resource} not found", resource=resource, **identifiers)


class ConflictError(FindMeError):
    status_code = 409
    code = "CONFLICT"

    def __init__(self, resource: str, message: str = "", **identifiers: Any):
        super().__init__(message or f"{resource} already exists", resource=resource, **identifiers)


class ValidationError(FindMeError):
    """Setup input rejected before anything is written."""

    status_code = 422
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        super().__init__(message, field=field, **details)


class StoreError(FindMeError):
    """A store call failed or a tail subscription was cancelled."""

    status_code = 502
    code = "STORE_ERROR"

    def __init__(self, operation: str, message: str = "", **details: Any):
        super().__init__(
            f"Alert store '{operation}' failed: {message}", operation=operation, **details,
        )
        self.operation = operation


class BroadcastError(FindMeError):
    status_code = 502
    code = "BROADCAST_ERROR"

    def __init__(self, community_id: str, message: str = ""):
        super().__init__(f"Broadcast to '{community_id}' failed: {message}", community_id=community_id)


class IdentityError(FindMeError):
    """No unique handle could be reserved."""

    status_code = 503
    code = "IDENTITY_ERROR"


def error_body(
    status_code: int,
    code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> Dict[str, Any]:
    error: Dict[str, Any] = {"code": code, "message": message, "status": status_code}
    if details:
        error["details"] = details
    request_id = get_request_context().get("request_id")
    if request_id:
        error["request_id"] = request_id
    if request is not None and not settings.is_production:
        error["path"] = request.url.path
        error["method"] = request.method
    return {"error": error}


def register_error_handlers(app: FastAPI) -> None:
    """Render FindMeError subclasses, stray ValueErrors and crashes."""

    @app.exception_handler(FindMeError)
    async def handle_findme_error(request: Request, exc: FindMeError):
        level = logging.WARNING if exc.status_code < 500 else logging.ERROR
        logger.log(
            level, "%s: %s", exc.code, exc.message,
            extra={"status_code": exc.status_code, **_alert_extras(exc.details)},
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(exc.status_code, exc.code, exc.message, exc.details, request),
        )

    @app.exception_handler(ValueError)
    async def handle_value_error(request: Request, exc: ValueError):
        logger.warning("Rejected request: %s", exc)
        return JSONResponse(
            status_code=422,
            content=error_body(422, "VALIDATION_ERROR", str(exc), request=request),
        )

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.critical("Unhandled %s on %s", type(exc).__name__, request.url.path, exc_info=exc)
        message = str(exc) if settings.DEBUG else "Internal server error"
        return JSONResponse(
            status_code=500,
            content=error_body(500, "INTERNAL_ERROR", message, request=request),
        )


def _alert_extras(details: Dict[str, Any]) -> Dict[str, Any]:
    # Only keys the log formatters know, so LogRecord attributes are never clobbered
    return {k: details[k] for k in ("community_id", "observer_id") if k in details}
