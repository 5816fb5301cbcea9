from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from crm_api.metrics import http_path_label, observe_http_request

logger = logging.getLogger("crm_api.request")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Emit one ``http.request`` record and one metrics sample per request.

    The record carries the authenticated user when the route resolved one.
    """

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            self._record(request, status_code, time.perf_counter() - started)

    @staticmethod
    def _record(request: Request, status_code: int, elapsed: float) -> None:
        path = http_path_label(request)
        observe_http_request(method=request.method, path=path, status=status_code, duration=elapsed)

        context = getattr(request.state, "context", None)
        logger.log(
            logging.ERROR if status_code >= 500 else logging.INFO,
            "http.request",
            extra={
                "method": request.method,
                "path": path,
                "status_code": status_code,
                "duration_ms": round(elapsed * 1000, 2),
                "user_id": getattr(context, "user_id", None),
            },
        )
