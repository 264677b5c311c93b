from contextvars import ContextVar
from typing import Optional
from uuid import uuid4

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from studygraph.infrastructure.observability.logger_config import bind_context, unbind_context

correlation_id_ctx: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

CORRELATION_ID_HEADER = "X-Correlation-ID"

logger = structlog.get_logger(__name__)


def get_correlation_id() -> str:
    """Returns the current correlation ID. Defaults to 'unknown' if not set."""
    return correlation_id_ctx.get() or "unknown"


class CorrelationMiddleware(BaseHTTPMiddleware):
    """
    Reads the request's correlation id from the usual trace headers (or
    generates one) and keeps it in a ContextVar for the request's lifetime.
    """

    async def dispatch(self, request: Request, call_next):
        incoming_id = (
            request.headers.get("x-correlation-id")
            or request.headers.get("x-request-id")
            or request.headers.get("x-trace-id")
        )
        if not incoming_id:
            incoming_id = str(uuid4())
            logger.debug("correlation_id_generated", correlation_id=incoming_id, path=request.url.path)

        token = correlation_id_ctx.set(incoming_id)
        bind_context(correlation_id=incoming_id)
        try:
            response = await call_next(request)
            response.headers[CORRELATION_ID_HEADER] = incoming_id
            return response
        finally:
            unbind_context("correlation_id")
            correlation_id_ctx.reset(token)
