"""
Closed error taxonomy shared by every service, plus the HTTP mapping.

Services raise ``AppError`` subclasses; ``register_exception_handlers`` turns
them into the ``{success: false, error: {kind, message, details}}`` envelope.
"""

import logging
from enum import Enum
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    ACCESS_DENIED = "access_denied"
    NOT_FOUND = "not_found"
    STATE_CONFLICT = "state_conflict"
    DUPLICATE = "duplicate"
    DEPENDENCY = "dependency"
    TRANSIENT = "transient"
    INTERNAL = "internal"


class AppError(Exception):
    kind: ErrorKind = ErrorKind.INTERNAL
    status_code: int = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None, details: Any = None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)


class ValidationFailed(AppError):
    kind = ErrorKind.VALIDATION
    status_code = 400
    default_message = "Invalid input"


class AccessDenied(AppError):
    """Caller lacks permission.

    A concealed denial is rendered exactly like ``NotFound``, so an out-of-scope
    entity is indistinguishable from a missing one.
    """

    kind = ErrorKind.ACCESS_DENIED
    status_code = 403
    default_message = "You do not have permission to perform this action"

    def __init__(self, message: str | None = None, details: Any = None, *,
                 conceal: bool = False, entity: str = "Resource"):
        super().__init__(message, details)
        self.conceal = conceal
        self.entity = entity


class NotFound(AppError):
    kind = ErrorKind.NOT_FOUND
    status_code = 404
    default_message = "Resource not found"


class StateConflict(AppError):
    kind = ErrorKind.STATE_CONFLICT
    status_code = 409
    default_message = "Operation not allowed in the current state"


class DuplicateRecord(AppError):
    kind = ErrorKind.DUPLICATE
    status_code = 409
    default_message = "Record already exists"


class DependencyBlocked(AppError):
    kind = ErrorKind.DEPENDENCY
    status_code = 409
    default_message = "Operation blocked by dependent records"


class TransientFailure(AppError):
    kind = ErrorKind.TRANSIENT
    status_code = 503
    default_message = "Temporary failure, please retry"


class InternalFailure(AppError):
    pass


# ─── HTTP mapping ──────────────────────────────────────────────────────────────

def error_body(kind: ErrorKind, message: str, details: Any = None) -> dict:
    error: dict[str, Any] = {"kind": kind.value, "message": message}
    if details is not None:
        error["details"] = details
    return {"success": False, "error": error}


_HTTP_KINDS = {
    400: ErrorKind.VALIDATION,
    401: ErrorKind.ACCESS_DENIED,
    403: ErrorKind.ACCESS_DENIED,
    404: ErrorKind.NOT_FOUND,
    409: ErrorKind.STATE_CONFLICT,
    422: ErrorKind.VALIDATION,
    503: ErrorKind.TRANSIENT,
}


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if isinstance(exc, AccessDenied) and exc.conceal:
        return JSONResponse(
            status_code=404,
            content=error_body(ErrorKind.NOT_FOUND, f"{exc.entity} not found"),
        )
    if isinstance(exc, InternalFailure):
        logger.error("Internal failure on %s %s: %s", request.method, request.url.path, exc.message)
        return JSONResponse(
            status_code=500,
            content=error_body(ErrorKind.INTERNAL, InternalFailure.default_message),
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.kind, exc.message, exc.details),
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {
            "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
            "message": err.get("msg"),
        }
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content=error_body(ErrorKind.VALIDATION, "Invalid input", details),
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    kind = _HTTP_KINDS.get(exc.status_code, ErrorKind.INTERNAL)
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(kind, str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content=error_body(ErrorKind.TRANSIENT, f"Rate limit exceeded: {exc.detail}"),
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=error_body(ErrorKind.INTERNAL, InternalFailure.default_message),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
