"""
Request Context Middleware

Adds trace_id, correlation_id and operator_id to every request so that
logs, error bodies and audit records can be tied back to it.
"""

import contextvars
from uuid import uuid4
from typing import Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from ....core.observability import get_trace_id as get_otel_trace_id


TRACE_HEADER = "X-Trace-ID"
CORRELATION_HEADER = "X-Correlation-ID"
OPERATOR_HEADER = "X-Operator-ID"

# Context variables for request-scoped values
trace_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("trace_id", default="")
correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("correlation_id", default="")
operator_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("operator_id", default="")


def get_trace_id() -> str:
    """
    Get the current trace ID.

    Returns the trace ID from the current request context,
    or generates a new one if not set.
    """
    return trace_id_var.get() or str(uuid4())


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID, or None if not set."""
    return correlation_id_var.get() or None


def get_operator_id() -> Optional[str]:
    """Get the operator acting in the current request, or None if anonymous."""
    return operator_id_var.get() or None


def set_trace_id(trace_id: str) -> None:
    trace_id_var.set(trace_id)


def set_correlation_id(correlation_id: str) -> None:
    correlation_id_var.set(correlation_id)


class TraceMiddleware(BaseHTTPMiddleware):
    """
    Middleware that extracts or generates request context.

    Headers:
    - X-Trace-ID: Unique ID for this request. When absent, the active
      OpenTelemetry trace ID is used, else a new UUID.
    - X-Correlation-ID: ID linking related requests
    - X-Operator-ID: Who is acting; recorded in admin audit logs

    The trace ID and correlation ID are echoed on the response.
    """

    async def dispatch(self, request: Request, call_next):
        trace_id = (
            request.headers.get(TRACE_HEADER)
            or get_otel_trace_id()
            or str(uuid4())
        )
        correlation_id = request.headers.get(CORRELATION_HEADER) or ""
        operator_id = request.headers.get(OPERATOR_HEADER) or ""

        set_trace_id(trace_id)
        set_correlation_id(correlation_id)
        operator_id_var.set(operator_id)

        # Add to request state for easy access in route handlers
        request.state.trace_id = trace_id
        request.state.correlation_id = correlation_id
        request.state.operator_id = operator_id or None

        response = await call_next(request)

        response.headers[TRACE_HEADER] = trace_id
        if correlation_id:
            response.headers[CORRELATION_HEADER] = correlation_id

        return response
