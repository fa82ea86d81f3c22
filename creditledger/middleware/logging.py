"""
Logging middleware for request/response logging.

Logs all HTTP requests with timing and a request id that is bound to every
log line emitted while the request is handled.
"""
import time
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from creditledger.logging_config import bind_request_context, clear_request_context, get_logger

logger = get_logger(component="http")

REQUEST_ID_HEADER = "X-Request-ID"


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to log all HTTP requests with timing and context.

    Adds: request_id, route, method, duration_ms, status to every log.
    Query strings are not logged; the download route carries its token there.
    """

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex

        clear_request_context()
        bind_request_context(request_id=request_id)

        request_logger = logger.bind(
            route=request.url.path,
            method=request.method,
        )

        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            request_logger.error(
                "request_failed",
                status_code=500,
                duration_ms=round(duration_ms, 2),
                error=str(e)
            )
            raise
        finally:
            clear_request_context()

        duration_ms = (time.time() - start_time) * 1000

        request_logger.info(
            "request_completed",
            request_id=request_id,
            status_code=response.status_code,
            duration_ms=round(duration_ms, 2)
        )

        response.headers[REQUEST_ID_HEADER] = request_id
        return response
