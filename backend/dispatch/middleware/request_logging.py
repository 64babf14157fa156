"""Request logging middleware with per-request ids."""

import logging
import time
import uuid
from typing import Callable
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

SLOW_REQUEST_MS = 2000
MAX_CLIENT_REQUEST_ID = 64


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs every HTTP request with an id, status code and duration.
    4xx responses are logged as warnings, 5xx as errors. The id is taken from
    an incoming X-Request-ID header when present and echoed back.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        incoming = (request.headers.get("x-request-id") or "").strip()
        request_id = incoming[:MAX_CLIENT_REQUEST_ID] or f"req_{uuid.uuid4().hex[:12]}"
        request.state.request_id = request_id
        start_time = time.monotonic()

        logger.info(
            f"[{request_id}] {request.method} {request.url.path} - "
            f"Client: {request.client.host if request.client else 'unknown'}"
        )

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(f"[{request_id}] Error processing request: {e}", exc_info=True)
            raise

        duration_ms = (time.monotonic() - start_time) * 1000
        status_code = response.status_code
        if status_code >= 500:
            log_level = logging.ERROR
        elif status_code >= 400:
            log_level = logging.WARNING
        else:
            log_level = logging.INFO
        logger.log(
            log_level,
            f"[{request_id}] {request.method} {request.url.path} - "
            f"Status: {status_code} - Duration: {duration_ms:.2f}ms"
        )
        if duration_ms > SLOW_REQUEST_MS:
            logger.warning(f"[{request_id}] SLOW REQUEST: {duration_ms:.2f}ms - {request.method} {request.url.path}")

        response.headers["X-Request-ID"] = request_id
        return response
