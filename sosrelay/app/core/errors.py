"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Domain-specific exception classes for the backend of record and the
      device-side propagation subsystem
    • Consistent JSON error response format
    • Automatic logging of unhandled errors

Device-side errors (StorageError, MalformedPayloadError, PeerLinkError,
CapabilityUnavailableError, BackendUnavailableError) are never fatal: each
is caught at the boundary of the component that can degrade around it.

Usage:
    from sosrelay.app.core.errors import NotFoundError, register_error_handlers

    raise NotFoundError("Emergency", id="E1718000000000")
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from sosrelay.app.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class SosRelayError(Exception):
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


class NotFoundError(SosRelayError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class ValidationError(SosRelayError):
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


class DuplicateEmergencyError(SosRelayError):
    """An emergency with this id already exists at the backend of record (409)."""

    def __init__(self, emergency_id: str):
        super().__init__(
            message=f"Emergency {emergency_id} already exists",
            status_code=409,
            error_code="DUPLICATE_EMERGENCY",
            details={"id": emergency_id},
        )


class BackendUnavailableError(SosRelayError):
    """Backend of record unreachable or answered with an error (502)."""

    def __init__(self, message: str = "", *, upstream_status: Optional[int] = None):
        details: Dict[str, Any] = {}
        if upstream_status is not None:
            details["upstream_status"] = upstream_status
        super().__init__(
            message=f"Backend of record unavailable: {message}",
            status_code=502,
            error_code="BACKEND_UNAVAILABLE",
            details=details,
        )
        self.upstream_status = upstream_status


class StorageError(SosRelayError):
    """Device-local durable store read/write failed."""

    def __init__(self, operation: str, key: str, message: str = ""):
        super().__init__(
            message=f"Store {operation} failed for '{key}': {message}",
            error_code="STORAGE_ERROR",
            details={"operation": operation, "key": key},
        )


class MalformedPayloadError(SosRelayError):
    """Peer relay payload could not be decoded or validated."""

    def __init__(self, message: str, **details: Any):
        super().__init__(
            message=f"Malformed relay payload: {message}",
            status_code=400,
            error_code="MALFORMED_PAYLOAD",
            details=details,
        )


class PeerLinkError(SosRelayError):
    """A step of a peer connection (connect, discover, read, write) failed."""

    def __init__(self, peer_id: str, step: str, message: str = ""):
        super().__init__(
            message=f"Peer {peer_id} failed at {step}: {message}",
            error_code="PEER_LINK_ERROR",
            details={"peer_id": peer_id, "step": step},
        )
        self.peer_id = peer_id
        self.step = step


class CapabilityUnavailableError(SosRelayError):
    """Relay radio or peer service/characteristic not present."""

    def __init__(self, capability: str, message: str = ""):
        super().__init__(
            message=f"Capability '{capability}' unavailable: {message}",
            error_code="CAPABILITY_UNAVAILABLE",
            details={"capability": capability},
        )


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
        "success": False,
        "error": {
            "code": error_code,
            "message": message,
            "status": status_code,
        },
    }

    if details:
        body["error"]["details"] = details

    if request and not settings.is_production:
        body["error"]["path"] = str(request.url.path)
        body["error"]["method"] = request.method

    return JSONResponse(status_code=status_code, content=body)


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the FastAPI app."""

    @app.exception_handler(SosRelayError)
    async def handle_relay_error(request: Request, exc: SosRelayError):
        level = logging.WARNING if exc.status_code < 500 else logging.ERROR
        logger.log(
            level,
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
