from __future__ import annotations

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from crm_api.core.context import (
    CORRELATION_HEADER,
    REQUEST_ID_HEADER,
    RequestContext,
    correlation_scope,
    new_correlation_id,
)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Bind the caller's correlation id (or a fresh one) for the whole request.

    The id is echoed on the response and stored on ``request.state.context``,
    where authentication later records the acting user.
    """

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = request.headers.get(CORRELATION_HEADER) or new_correlation_id()
        request.state.correlation_id = correlation_id
        request.state.context = RequestContext(correlation_id=correlation_id)

        span = trace.get_current_span()
        if span.is_recording():
            span.set_attribute("correlation_id", correlation_id)

        with correlation_scope(correlation_id):
            response = await call_next(request)

        response.headers[CORRELATION_HEADER] = correlation_id
        response.headers[REQUEST_ID_HEADER] = correlation_id
        return response
