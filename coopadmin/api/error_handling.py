from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from coopadmin.api.schemas import Envelope
from coopadmin.config import Settings, get_settings
from coopadmin.logging import get_logger, sanitize_error_message
from coopadmin.service.errors import ServiceError
from coopadmin.storage.errors import ConstraintViolation, StoreUnavailable

logger = get_logger(__name__)

GENERIC_ERROR_MESSAGE = "There has been an error with your request. Try again later."

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: Optional[Any] = None,
    code: Optional[str] = None,
) -> JSONResponse:
    """Render an error in the same ``{statusCode, message, data}`` envelope as successes."""
    data: dict[str, Any] = {"code": code or _error_code_for_status(status_code)}
    if details:
        data["details"] = details
    envelope = Envelope(statusCode=status_code, message=message, data=data)
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    first = errors[0]
    location = [str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path")]
    field = ".".join(location)
    message = first.get("msg", "Invalid request")
    return f"{field}: {message}" if field else message


def register_exception_handlers(app: FastAPI, settings: Optional[Settings] = None) -> None:
    """Install handlers mapping domain and storage errors to the response envelope."""

    def _is_production() -> bool:
        return (settings or get_settings()).is_production

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
        )
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(StoreUnavailable)
    async def handle_store_unavailable(request: Request, exc: StoreUnavailable):
        logger.error(
            "store_unavailable",
            path=request.url.path,
            method=request.method,
            backend=exc.backend,
            operation=exc.operation,
            error=sanitize_error_message(str(exc.cause or exc)),
        )
        return _error_response(500, GENERIC_ERROR_MESSAGE, code="server_error")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        return _error_response(exc.status_code, exc.message, exc.detail, code=exc.error_code)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        message = _validation_message(exc)
        logger.warning(
            "request_validation_error",
            path=request.url.path,
            method=request.method,
            message=message,
        )
        return _error_response(400, message, code="validation_error")

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        # Structured event consumed by the external error tracker
        logger.exception(
            "error_tracking",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        if _is_production():
            message = GENERIC_ERROR_MESSAGE
        else:
            message = sanitize_error_message(str(exc)) or GENERIC_ERROR_MESSAGE
        return _error_response(500, message, code="server_error")
