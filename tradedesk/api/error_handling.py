from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from tradedesk.api.schemas import ErrorBody, ErrorEnvelope
from tradedesk.logging import get_correlation_id, get_logger
from tradedesk.service.errors import ServiceError
from tradedesk.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def error_response(
    status_code: int,
    message: str,
    *,
    field: Optional[str] = None,
    details: Any = None,
    code: Optional[str] = None,
) -> JSONResponse:
    """Build the structured error body shared by every failing endpoint."""
    body = ErrorBody(
        code=code or _error_code_for_status(status_code),
        message=message,
        field=field,
        details=details or None,
    )
    envelope = ErrorEnvelope(
        message=message, field=field, error=body, request_id=get_correlation_id()
    )
    return JSONResponse(
        status_code=status_code,
        content=envelope.model_dump(mode="json", by_alias=True),
    )


def unhandled_error_response(request: Request, exc: Exception) -> JSONResponse:
    """Log an exception nothing else handled and answer with a 500 envelope."""
    logger.exception(
        "unhandled_exception",
        exc_info=exc,
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
        error=str(exc),
    )
    return error_response(500, "Internal server error", code="server_error")


def _field_from_loc(loc: tuple) -> Optional[str]:
    parts = [str(p) for p in loc if p not in ("body", "query", "path", "header")]
    return parts[0] if parts else None


def register_exception_handlers(app: FastAPI) -> None:
    """Convert every error raised below the routes into the structured error body."""

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
            field=exc.field,
        )
        return error_response(
            exc.status_code,
            exc.message,
            field=exc.field,
            details=exc.detail,
            code=exc.error_code,
        )

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            collection=exc.collection,
            detail=exc.detail,
        )
        return error_response(
            409,
            exc.message,
            field=exc.field,
            details=exc.detail,
            code="conflict",
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = _field_from_loc(tuple(first.get("loc", ())))
        message = first.get("msg", "Invalid request")
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            field=field,
            message=message,
        )
        details = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
            for err in errors
        ]
        return error_response(400, message, field=field, details=details)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return error_response(exc.status_code, message)
