"""
Access logging for the backend of record.

Every device polls the emergencies collection every few seconds, so a
healthy deployment is dominated by identical GETs. Those log at DEBUG;
alert creation and status changes log at INFO, client errors at WARNING
and server errors at ERROR.

Each request is tagged with a request id (taken from X-Request-ID or
generated) and, when the caller sends X-Device-ID, with the device id.
Both are bound into the log context for the duration of the request and
echoed back in the response headers.
"""

from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from sosrelay.app.core.config import settings
from sosrelay.app.core.logging_config import bind_log_context, reset_log_context

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
DEVICE_ID_HEADER = "X-Device-ID"

_UNLOGGED_PREFIXES = ("/docs", "/redoc", "/openapi", "/favicon", "/health/live")


def access_log_level(method: str, path: str, status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    if method == "GET" and path.rstrip("/") == f"{settings.BACKEND_API_PREFIX}/emergencies":
        return logging.DEBUG
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):

    async def dispatch(self, request: Request, call_next) -> Response:
        path = request.url.path
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:16]
        fields = {"request_id": request_id, "method": request.method, "endpoint": path}
        device_id = request.headers.get(DEVICE_ID_HEADER)
        if device_id:
            fields["device_id"] = device_id

        token = bind_log_context(**fields)
        start = time.perf_counter()
        try:
            try:
                response = await call_next(request)
            except Exception:
                self._log(request.method, path, 500, start, device_id)
                raise
            response.headers[REQUEST_ID_HEADER] = request_id
            response.headers["X-Process-Time"] = f"{(time.perf_counter() - start) * 1000:.1f}ms"
            self._log(request.method, path, response.status_code, start, device_id)
            return response
        finally:
            reset_log_context(token)

    @staticmethod
    def _log(method: str, path: str, status_code: int, start: float, device_id) -> None:
        if path.startswith(_UNLOGGED_PREFIXES):
            return
        duration_ms = (time.perf_counter() - start) * 1000
        logger.log(
            access_log_level(method, path, status_code),
            "%s %s → %d (%.1fms)%s",
            method, path, status_code, duration_ms,
            f" from {device_id}" if device_id else "",
            extra={"duration_ms": round(duration_ms, 1), "status_code": status_code, "endpoint": path},
        )
