from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from novachat.api.schemas import Envelope, ErrorBody
from novachat.logging import get_logger
from novachat.service.errors import RateLimitedError, ServiceError
from novachat.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    429: "rate_limited",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def error_envelope(
    message: str,
    *,
    code: str,
    details: dict | list | None = None,
) -> Envelope:
    return Envelope(
        status="error", error=ErrorBody(code=code, message=message, details=details)
    )


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    envelope = error_envelope(
        message, code=code or _error_code_for_status(status_code), details=details
    )
    return JSONResponse(
        status_code=status_code,
        content=envelope.model_dump(mode="json"),
        headers=headers,
    )


def _log(request: Request, event: str, status_code: int, **fields) -> None:
    emit = logger.error if status_code >= 500 else logger.warning
    emit(event, path=request.url.path, method=request.method, status_code=status_code, **fields)


def register_exception_handlers(app: FastAPI) -> None:
    """Every failure leaves the API as ``{"status": "error", "error": {...}}``."""

    @app.exception_handler(ServiceError)
    async def on_service_error(request: Request, exc: ServiceError):
        _log(
            request,
            "service_error",
            exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        headers = None
        retry_after = exc.detail.get("retry_after") if isinstance(exc, RateLimitedError) else None
        if retry_after is not None:
            headers = {"Retry-After": str(retry_after)}
        return _error_response(
            exc.status_code,
            exc.message,
            exc.detail or None,
            code=exc.error_code,
            headers=headers,
        )

    @app.exception_handler(ConstraintViolation)
    async def on_constraint_violation(request: Request, exc: ConstraintViolation):
        _log(request, "constraint_violation", 409, field=exc.field)
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(RequestValidationError)
    async def on_invalid_request(request: Request, exc: RequestValidationError):
        problems = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
            for err in exc.errors()
        ]
        _log(request, "request_validation_failed", 400, errors=problems)
        summary = problems[0]["msg"] if problems else "invalid request"
        return _error_response(400, summary, problems, code="validation_error")

    @app.exception_handler(HTTPException)
    async def on_http_exception(request: Request, exc: HTTPException):
        # routing level failures such as unknown paths or methods
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            _log(request, "http_error", exc.status_code, message=message)
        return _error_response(exc.status_code, message, headers=exc.headers)

    @app.exception_handler(Exception)
    async def on_unexpected(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
        )
        return _error_response(500, "internal server error", code="server_error")
