from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from trackerauth.api.schemas import Envelope, ErrorBody, error_list
from trackerauth.logging import get_correlation_id, get_logger
from trackerauth.service.errors import ServiceError
from trackerauth.storage.errors import ConstraintViolation, StoreError

logger = get_logger(__name__)

GENERIC_SERVER_ERROR = "internal server error"

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


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    envelope = Envelope(
        status="error",
        error=ErrorBody(
            code=code or _error_code_for_status(status_code),
            message=message,
            details=details,
        ),
    )
    cid = get_correlation_id()
    if cid:
        envelope.request_id = cid
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def _log(request: Request, event: str, status_code: int, **fields: Any) -> None:
    log_fn = logger.error if status_code >= 500 else logger.warning
    log_fn(event, path=request.url.path, method=request.method, status_code=status_code, **fields)


def _describe_validation_error(err: dict) -> str:
    location = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
    message = err.get("msg", "invalid value")
    return f"{location}: {message}" if location else message


def _unpack_route_error(detail: Any) -> Optional[dict]:
    """Return the ``error`` object of an envelope built by ``routes._http_error``."""
    if isinstance(detail, dict) and isinstance(detail.get("error"), dict):
        return detail["error"]
    return None


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure as an error envelope.

    Server-side failures (status >= 500) never echo their message: store
    errors may carry hostnames or SQL, so clients get a fixed text.
    """

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        messages = [_describe_validation_error(err) for err in exc.errors()]
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            error_count=len(messages),
        )
        return _error_response(400, "invalid request", error_list(messages))

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        _log(request, "constraint_violation", 409, message=exc.message, detail=exc.detail)
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(StoreError)
    async def handle_store_error(request: Request, exc: StoreError):
        _log(request, "store_error", 500, operation=exc.operation, error=exc.message)
        return _error_response(500, GENERIC_SERVER_ERROR)

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        _log(
            request,
            "service_error",
            exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
        )
        if exc.status_code >= 500:
            return _error_response(exc.status_code, GENERIC_SERVER_ERROR, code=exc.error_code)
        return _error_response(exc.status_code, exc.message, exc.detail, code=exc.error_code)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        error_obj = _unpack_route_error(exc.detail)
        if error_obj is None:
            return _error_response(exc.status_code, str(exc.detail or "http error"))
        code = error_obj.get("code")
        message = error_obj.get("message", "http error")
        if exc.status_code >= 400:
            _log(request, "http_error", exc.status_code, error_code=code, message=message)
        return _error_response(exc.status_code, message, error_obj.get("details"), code=code)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, GENERIC_SERVER_ERROR)
