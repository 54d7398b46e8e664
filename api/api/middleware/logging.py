"""Per-request access logging for the metering API."""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("api.access")

REQUEST_ID_HEADER: str = "X-Request-ID"


def _organization_of(request: Request) -> str | None:
    # Populated by the router once the route has matched.
    path_params = request.scope.get("path_params") or {}
    return path_params.get("org")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every request with method, path, status code and duration.

    Each request carries a ``request_id`` taken from the incoming
    ``X-Request-ID`` header or generated, which is echoed back on the
    response.  The record is emitted with ``extra={"request": {...}}`` so
    :class:`~api.middleware.json_formatter.JSONFormatter` can index the
    fields individually.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id

        start = time.monotonic()
        response: Response | None = None
        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            duration_ms = round((time.monotonic() - start) * 1000, 2)
            status_code = response.status_code if response is not None else 500

            log_payload: dict[str, Any] = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "query": str(request.url.query) if request.url.query else None,
                "status_code": status_code,
                "duration_ms": duration_ms,
                "organization_id": _organization_of(request),
                "client": request.client.host if request.client else None,
            }
            message = "%s %s -> %d (%.2f ms)"
            args = (request.method, request.url.path, status_code, duration_ms)
            if status_code >= 500:
                logger.error(message, *args, extra={"request": log_payload})
            elif status_code >= 400:
                logger.warning(message, *args, extra={"request": log_payload})
            else:
                logger.info(message, *args, extra={"request": log_payload})
