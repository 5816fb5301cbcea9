from __future__ import annotations

import logging
import traceback
from dataclasses import asdict, dataclass
from typing import Any

from fastapi import Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from crm_api.core.context import get_correlation_id
from crm_api.core.config import get_settings


logger = logging.getLogger("crm_api.errors")


class CRMError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error = "Internal Server Error"
    default_code = "internal_error"

    def __init__(self, message: str, *, code: str | None = None, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details


class ValidationError(CRMError):
    status_code = status.HTTP_400_BAD_REQUEST
    error = "Bad Request"
    default_code = "validation_error"


class AuthenticationError(CRMError):
    status_code = status.HTTP_401_UNAUTHORIZED
    error = "Unauthorized"
    default_code = "unauthorized"


class AuthorizationError(CRMError):
    status_code = status.HTTP_403_FORBIDDEN
    error = "Forbidden"
    default_code = "forbidden"


class NotFoundError(CRMError):
    status_code = status.HTTP_404_NOT_FOUND
    error = "Not Found"
    default_code = "not_found"


class ConflictError(CRMError):
    status_code = status.HTTP_409_CONFLICT
    error = "Conflict"
    default_code = "conflict"


class InternalError(CRMError):
    pass


@dataclass
class ErrorEnvelope:
    success: bool
    code: str
    error: str
    message: str
    details: Any
    correlation_id: str | None
    stack: str | None = None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    error: str,
    message: str,
    details: Any = None,
    exc: BaseException | None = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    stack = None
    if exc is not None and get_settings().expose_stack_traces:
        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    payload = ErrorEnvelope(
        success=False,
        code=code,
        error=error,
        message=message,
        details=details,
        correlation_id=correlation_id,
        stack=stack,
    )
    content = asdict(payload)
    if content["stack"] is None:
        content.pop("stack")
    return JSONResponse(status_code=status_code, content=jsonable_encoder(content))


async def crm_error_handler(request: Request, exc: CRMError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request.failed", exc_info=exc, extra={"error": exc.message, "path": request.url.path})
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        error=exc.error,
        message=exc.message,
        details=exc.details,
        exc=exc if exc.status_code >= 500 else None,
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        request,
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        code="request_validation_failed",
        error="Unprocessable Entity",
        message="Request validation failed",
        details=exc.errors(),
    )


async def database_unavailable_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("db.unavailable", exc_info=exc, extra={"error": str(exc), "path": request.url.path})
    return error_response(
        request,
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        code="database_unavailable",
        error=InternalError.error,
        message="Database connection unavailable",
        exc=exc,
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("request.unhandled", exc_info=exc, extra={"error": str(exc), "path": request.url.path})
    return error_response(
        request,
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        code=InternalError.default_code,
        error=InternalError.error,
        message="An unexpected error occurred",
        exc=exc,
    )


def register_exception_handlers(app: Any) -> None:
    app.add_exception_handler(CRMError, crm_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(PoolTimeoutError, database_unavailable_handler)
    app.add_exception_handler(OperationalError, database_unavailable_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
