"""
HTTP middleware and exception handlers.

Every response carries ``X-Correlation-ID`` (taken from the request or
generated), and every error, expected or not, leaves in the same envelope:
``{"error": {"code", "message", "details"}}``.
"""
import time
from typing import Any, Callable, Optional

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from orderpay.core.logging import get_logger, set_correlation_id, get_correlation_id
from orderpay.core.exceptions import AppException, ErrorCode

logger = get_logger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"


def _error_response(
    status_code: int,
    code: ErrorCode,
    message: str,
    details: Optional[dict[str, Any]] = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": code.value, "message": message, "details": details or {}}},
        headers={CORRELATION_HEADER: get_correlation_id()},
    )


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Binds the correlation id for the request and logs one line per request"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = set_correlation_id(request.headers.get(CORRELATION_HEADER))
        request.state.correlation_id = correlation_id

        started = time.perf_counter()
        request_data = {"method": request.method, "path": request.url.path}
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"{request.method} {request.url.path} raised {type(e).__name__}",
                extra_data={
                    **request_data,
                    "duration_seconds": round(time.perf_counter() - started, 4),
                },
                exc_info=True,
            )
            raise

        log = logger.info if response.status_code < 400 else logger.warning
        log(
            f"{request.method} {request.url.path} -> {response.status_code}",
            extra_data={
                **request_data,
                "status_code": response.status_code,
                "duration_seconds": round(time.perf_counter() - started, 4),
            },
        )
        response.headers[CORRELATION_HEADER] = correlation_id
        return response


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    log_data = {
        "error_code": exc.error_code.value,
        "details": exc.details,
        "path": request.url.path,
    }
    # store errors keep the driver text out of the body but in the log
    driver_message = getattr(exc, "driver_message", None)
    if driver_message:
        log_data["driver_message"] = driver_message
    logger.warning(exc.message, extra_data=log_data)

    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers={CORRELATION_HEADER: get_correlation_id()},
    )


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Schema errors as 400 with one entry per offending field"""
    errors = [
        {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
        for err in exc.errors()
    ]
    logger.info(
        "Request validation failed",
        extra_data={"path": request.url.path, "errors": errors},
    )
    return _error_response(
        400, ErrorCode.VALIDATION_ERROR, "Request validation failed", {"errors": errors}
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        f"Unhandled exception: {type(exc).__name__}",
        extra_data={"path": request.url.path, "error": str(exc)},
        exc_info=True,
    )
    return _error_response(500, ErrorCode.INTERNAL_ERROR, "An unexpected error occurred")


def setup_middleware(app: FastAPI) -> None:
    app.add_middleware(RequestContextMiddleware)


def setup_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
