"""Structured logging setup and request middleware with correlation IDs."""
import logging
import re
import time
import uuid
from typing import Callable, Optional

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

# Operator routes carry the restaurant id as the second path segment
_RESTAURANT_PATH = re.compile(r"^/(?:optimizer|experiments|analytics)/([^/]+)")


def configure_logging(debug: bool = False) -> None:
    """JSON logs with ISO timestamps and contextvars (trace_id, restaurant_id)."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG if debug else logging.INFO),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False
    )


configure_logging()

logger = structlog.get_logger()


def restaurant_from_path(path: str) -> Optional[str]:
    match = _RESTAURANT_PATH.match(path)
    return match.group(1) if match else None


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Adds a trace_id to each request and logs start, completion and failure.

    Operator requests also get the restaurant id bound to the log context.
    """

    async def dispatch(self, request: Request, call_next: Callable):
        trace_id = request.headers.get("x-trace-id") or str(uuid.uuid4())
        request.state.trace_id = trace_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(trace_id=trace_id)
        restaurant_id = restaurant_from_path(request.url.path)
        if restaurant_id:
            structlog.contextvars.bind_contextvars(restaurant_id=restaurant_id)

        logger.info(
            "request_started",
            method=request.method,
            path=request.url.path,
            client_ip=request.client.host if request.client else None
        )

        start_time = time.time()
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "request_failed",
                error=str(e),
                error_type=type(e).__name__,
                latency_ms=int((time.time() - start_time) * 1000)
            )
            raise

        logger.info(
            "request_completed",
            status_code=response.status_code,
            latency_ms=int((time.time() - start_time) * 1000)
        )
        response.headers["X-Trace-ID"] = trace_id
        return response


def get_logger():
    """Get configured structured logger."""
    return logger
