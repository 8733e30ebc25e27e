"""Error taxonomy and normalized error handlers.

Every domain failure is an AppError with a stable machine-readable code, an
HTTP status and a retryable flag so clients can choose retry vs. block.
"""

import builtins
import logging
from typing import Optional
from uuid import uuid4

from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.requests import Request

from agrilease.core.logging import get_request_id

logger = logging.getLogger("agrilease")


class AppError(Exception):
    code = "app_error"
    status_code = 500
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        retryable: Optional[bool] = None,
        request_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        if retryable is not None:
            self.retryable = retryable
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class UnauthorizedError(AppError):
    code = "unauthorized"
    status_code = 401


class PermissionError(AppError, builtins.PermissionError):
    code = "forbidden"
    status_code = 403


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class InvalidStateTransitionError(ConflictError):
    """Entity is not in a state that permits the requested operation."""
    code = "invalid_state_transition"

    def __init__(self, message: str, *, current_status: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.current_status = current_status


class TermsLockedError(ConflictError):
    code = "terms_locked"


class RegionNotFoundError(NotFoundError):
    """Region missing from the reference pricing store (a data problem)."""
    code = "region_not_found"


class PlanNotFoundError(NotFoundError):
    """Region known, but no plan exists for the requested tier."""
    code = "plan_not_found"


class DivisionUndefinedError(AppError, ArithmeticError):
    code = "division_undefined"
    status_code = 422


class PaymentMethodMissingError(AppError):
    code = "payment_method_missing"
    status_code = 400


class ProviderUnavailableError(AppError):
    code = "provider_unavailable"
    status_code = 503
    retryable = True


class ProviderOperationFailedError(AppError):
    code = "provider_operation_failed"
    status_code = 502
    retryable = True


class InvalidSignatureError(AppError):
    code = "invalid_signature"
    status_code = 400


class SubscriptionAlreadyActiveError(ConflictError):
    code = "subscription_already_active"


def _request_id_for(request: Request, exc: Optional[AppError] = None) -> str:
    return (
        (exc.request_id if exc is not None else None)
        or getattr(request.state, "request_id", None)
        or get_request_id()
        or str(uuid4())
    )


def error_response(
    request_id: str,
    status_code: int,
    code: str,
    message: str,
    *,
    retryable: bool = False,
    **fields,
) -> JSONResponse:
    """Build the error envelope every failure leaves the API in.

    ``fields`` are added to the ``error`` object when not None (for example
    ``current_status`` on a state conflict).
    """
    error = {"code": code, "message": message, "request_id": request_id, "retryable": retryable}
    error.update({key: value for key, value in fields.items() if value is not None})
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "detail": message},
        headers={"x-request-id": request_id},
    )


def _first_validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "invalid input"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "invalid input")
    return f"{location}: {message}" if location else message


async def app_error_handler(request: Request, exc: AppError):
    rid = _request_id_for(request, exc)
    logger.log(
        logging.ERROR if exc.status_code >= 500 else logging.WARNING,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    return error_response(
        rid,
        exc.status_code,
        exc.code,
        exc.message,
        retryable=exc.retryable,
        current_status=getattr(exc, "current_status", None),
    )


async def request_validation_handler(request: Request, exc: RequestValidationError):
    rid = _request_id_for(request)
    logger.warning("request.invalid", extra={"request_id": rid, "error_code": "validation_error"})
    return error_response(rid, 400, "validation_error", _first_validation_message(exc))


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    rid = _request_id_for(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    return error_response(rid, exc.status_code, code, exc.detail or "HTTP error")


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _request_id_for(request)
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    return error_response(rid, 500, "internal_error", "Unexpected error")


def install_error_handlers(app) -> None:
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
