"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Domain-specific exception classes
    • Consistent JSON error response format
    • Automatic logging of unhandled errors
    • Request context in error responses (non-production)

Error taxonomy:

    Exception                 HTTP   Surfaced to            Retry?
    ─────────────────────     ────   ────────────────────   ──────
    StoreUnavailable          503    citizen / dispatcher   yes (user)
    PermissionDenied          403    operator               no
    NotFoundError             404    logged, non-fatal      no
    InvalidTransitionError    422    dispatcher             no
    AdvisoryServiceFailure    —      never (fallback text)  no
    BroadcastFailure          —      never (logged only)    no

Usage:
    from sos_relay.app.core.errors import StoreUnavailable, NotFoundError

    raise NotFoundError("Alert", alert_id="-Nx1")
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from sos_relay.app.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class RelayError(Exception):
    """Base exception for all application errors."""

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}


class NotFoundError(RelayError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class ValidationError(RelayError):
    """Input validation failed (422)."""

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        d = {**details}
        if field:
            d["field"] = field
        super().__init__(
            message=message,
            status_code=422,
            error_code="VALIDATION_ERROR",
            details=d,
        )


class InvalidTransitionError(RelayError):
    """Alert status change not allowed by the lifecycle (422)."""

    def __init__(self, alert_id: str, current: str, target: str):
        super().__init__(
            message=f"Alert {alert_id} cannot move from '{current}' to '{target}'",
            status_code=422,
            error_code="INVALID_TRANSITION",
            details={"alert_id": alert_id, "current": current, "target": target},
        )


class ConflictError(RelayError):
    """Resource already exists (409)."""

    def __init__(self, resource: str, **identifiers: Any):
        super().__init__(
            message=f"{resource} already exists",
            status_code=409,
            error_code="CONFLICT",
            details={"resource": resource, **identifiers},
        )


class StoreUnavailable(RelayError):
    """The realtime store could not be reached (503, retryable)."""

    def __init__(self, message: str = "", **details: Any):
        super().__init__(
            message=(
                "Could not reach the alert service. Check your connection "
                "and try again, or send the report by SMS."
                + (f" ({message})" if message else "")
            ),
            status_code=503,
            error_code="STORE_UNAVAILABLE",
            details={"retryable": True, **details},
        )


class PermissionDenied(RelayError):
    """The realtime store rejected the write under its access rules (403)."""

    def __init__(self, path: str = "", message: str = ""):
        super().__init__(
            message=(
                "The server refused the report because of its access rules. "
                "Contact the operator to fix the store permissions."
                + (f" ({message})" if message else "")
            ),
            status_code=403,
            error_code="PERMISSION_DENIED",
            details={"path": path, "retryable": False},
        )


class AuthenticationError(RelayError):
    """Dispatcher credentials rejected (401)."""

    def __init__(self, message: str = "Invalid dispatcher credentials"):
        super().__init__(
            message=message,
            status_code=401,
            error_code="AUTHENTICATION_FAILED",
        )


class ExternalServiceError(RelayError):
    """External API call failed (502)."""

    def __init__(self, service: str, message: str = "", **details: Any):
        super().__init__(
            message=f"External service '{service}' failed: {message}",
            status_code=502,
            error_code="EXTERNAL_SERVICE_ERROR",
            details={"service": service, **details},
        )


class AdvisoryServiceFailure(ExternalServiceError):
    """Generative advisory call failed. Always converted to fallback text."""

    def __init__(self, message: str = "", **details: Any):
        super().__init__("advisory", message, **details)


class BroadcastFailure(ExternalServiceError):
    """Push broadcast failed for one or more recipients. Logged only."""

    def __init__(self, message: str = "", **details: Any):
        super().__init__("push", message, **details)


# ═══════════════════════════════════════════════════════════════════════════
# Error Response Builder
# ═══════════════════════════════════════════════════════════════════════════

def _build_error_response(
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> JSONResponse:
    """Build a consistent JSON error response."""
    body: Dict[str, Any] = {
        "error": {
            "code": error_code,
            "message": message,
            "status": status_code,
        }
    }

    if details:
        body["error"]["details"] = details

    # Include request path in non-production
    if request and not settings.is_production:
        body["error"]["path"] = str(request.url.path)
        body["error"]["method"] = request.method

    return JSONResponse(status_code=status_code, content=body)


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the FastAPI app."""

    @app.exception_handler(RelayError)
    async def handle_relay_error(request: Request, exc: RelayError):
        log = logger.warning if exc.status_code < 500 else logger.error
        log(
            "API Error [%s]: %s | details=%s",
            exc.error_code, exc.message, exc.details,
        )
        return _build_error_response(
            exc.status_code, exc.error_code, exc.message,
            exc.details, request,
        )

    @app.exception_handler(ValueError)
    async def handle_value_error(request: Request, exc: ValueError):
        logger.warning("ValueError: %s", exc)
        return _build_error_response(
            422, "VALIDATION_ERROR", str(exc), request=request,
        )

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.critical(
            "Unhandled exception: %s\n%s",
            exc, traceback.format_exc(),
        )
        message = str(exc) if settings.DEBUG else "Internal server error"
        details = (
            {"traceback": traceback.format_exc().split("\n")}
            if settings.DEBUG else None
        )
        return _build_error_response(
            500, "INTERNAL_ERROR", message, details, request,
        )
