from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from tenantcore.apps.api.response import error_response, get_request_id
from tenantcore.core.errors import TenancyError


logger = logging.getLogger(__name__)


async def tenancy_error_handler(request: Request, exc: TenancyError) -> JSONResponse:
    # Only the public message leaves the process; the detailed text stays in logs.
    request_id = get_request_id(request)
    log = logger.error if exc.http_status >= 500 else logger.info
    log("tenancy_error code=%s status=%s request_id=%s detail=%s", exc.code, exc.http_status, request_id, exc)
    details = {"retryable": True} if exc.retryable else None
    payload = error_response(request=request, code=exc.code, message=exc.public_message, details=details)
    headers = {"Retry-After": "1"} if exc.retryable else None
    return JSONResponse(content=payload, status_code=exc.http_status, headers=headers)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.error("unhandled_exception request_id=%s", get_request_id(request), exc_info=exc)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(TenancyError, tenancy_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
