from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from quoteai.api.schemas import ErrorBody
from quoteai.config import CORS_HEADERS
from quoteai.logging import get_correlation_id, get_logger
from quoteai.service.errors import ServiceError

logger = get_logger(__name__)

# Codes for errors raised by routing itself rather than by a handler
_STATUS_TO_CODE = {
    400: "invalid_request",
    401: "auth_required",
    402: "subscription_required",
    404: "not_found",
    405: "method_not_allowed",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    code: str,
    detail: dict | None = None,
    headers: dict | None = None,
) -> JSONResponse:
    body = ErrorBody(error=code, **(detail or {}))
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(exclude_none=True),
        headers=headers,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure as ``{"error": "<code>", ...}`` with its HTTP status."""

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
        return _error_response(exc.status_code, exc.error_code, exc.detail)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        code = _error_code_for_status(exc.status_code)
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=str(exc.detail),
            )
        else:
            logger.warning(
                "http_client_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                error_code=code,
            )
        response = _error_response(exc.status_code, code)
        if exc.headers:
            response.headers.update(exc.headers)
        return response

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        # Rendered outside the app middlewares, so headers they add are set here
        headers = dict(CORS_HEADERS)
        correlation_id = get_correlation_id() or request.headers.get("X-Request-ID")
        if correlation_id:
            headers["X-Request-ID"] = correlation_id
        return _error_response(500, "server_error", headers=headers)
