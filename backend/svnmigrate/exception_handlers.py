"""
HTTP mapping for engine and service errors.

Every AppException becomes {"detail", "error_code"} with its own status
code. Anything else is logged with its stack trace and reported as a
generic 500 so subprocess output and credentials never reach clients.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from svnmigrate.exceptions import AppException

logger = logging.getLogger(__name__)


def _request_extra(request: Request) -> dict:
    extra = {"path": request.url.path, "method": request.method}
    migration_id = request.path_params.get("migration_id")
    if migration_id:
        extra["migration_id"] = migration_id
    return extra


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    # 4xx are caller mistakes or state conflicts; only 5xx are ours
    log_level = logging.WARNING if exc.status_code < 500 else logging.ERROR
    logger.log(
        log_level,
        f"{exc.error_code}: {exc.message}",
        extra={**_request_extra(request), "status_code": exc.status_code},
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error_code": exc.error_code},
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        f"Unhandled {type(exc).__name__}: {exc}",
        extra=_request_extra(request),
    )
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "error_code": "INTERNAL_ERROR"},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
