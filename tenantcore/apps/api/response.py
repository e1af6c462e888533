from __future__ import annotations

from typing import Any
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel


API_VERSION = "v1"
REQUEST_ID_HEADER = "X-Request-Id"


class EnvelopeMeta(BaseModel):
    request_id: str
    api_version: str = API_VERSION


class ErrorBody(BaseModel):
    # `details` only ever carries client-actionable hints such as retryability.
    code: str
    message: str
    details: dict[str, Any] | None = None


class ErrorEnvelope(BaseModel):
    error: ErrorBody
    meta: EnvelopeMeta


def get_request_id(request: Request) -> str:
    # One id per request, reused as the correlation id on claims and audit rows.
    cached = getattr(request.state, "request_id", None)
    if cached:
        return cached
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
    request.state.request_id = request_id
    return request_id


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    envelope = ErrorEnvelope(
        error=ErrorBody(code=code, message=message, details=details),
        meta=EnvelopeMeta(request_id=get_request_id(request)),
    )
    return envelope.model_dump(exclude_none=True)
