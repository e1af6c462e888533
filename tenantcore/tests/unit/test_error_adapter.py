from __future__ import annotations

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from tenantcore.apps.api.errors import register_error_handlers
from tenantcore.core.errors import (
    AuthorizationDeniedError,
    EntityNotFoundError,
    InvalidRequestError,
    IsolationPublishError,
    OptimisticLockError,
)


def _app() -> FastAPI:
    app = FastAPI()
    register_error_handlers(app)

    @app.get("/conflict")
    async def conflict() -> None:
        raise OptimisticLockError("Project", "p-1", 4)

    @app.get("/forbidden")
    async def forbidden() -> None:
        raise AuthorizationDeniedError(permission="Project.purge", message="denied by role VIEWER grant r-9")

    @app.get("/missing")
    async def missing() -> None:
        raise EntityNotFoundError("Project", "p-404")

    @app.get("/invalid")
    async def invalid() -> None:
        raise InvalidRequestError("limit must be positive")

    @app.get("/isolation")
    async def isolation() -> None:
        raise IsolationPublishError("set_config failed on connection 7")

    @app.get("/crash")
    async def crash() -> None:
        raise RuntimeError("password=hunter2")

    return app


@pytest.mark.asyncio
async def test_version_conflict_is_retryable_409() -> None:
    transport = ASGITransport(app=_app())
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/conflict", headers={"X-Request-Id": "req-123"})

    assert response.status_code == 409
    assert response.headers["Retry-After"] == "1"
    body = response.json()
    assert body["error"]["code"] == "VERSION_CONFLICT"
    assert body["error"]["details"] == {"retryable": True}
    assert body["meta"] == {"request_id": "req-123", "api_version": "v1"}


@pytest.mark.asyncio
async def test_denial_does_not_reveal_rule() -> None:
    transport = ASGITransport(app=_app())
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/forbidden")

    assert response.status_code == 403
    body = response.json()
    assert body["error"] == {"code": "AUTH_FORBIDDEN", "message": "Insufficient permissions"}
    assert "r-9" not in response.text
    assert "Retry-After" not in response.headers


@pytest.mark.asyncio
async def test_status_mapping() -> None:
    transport = ASGITransport(app=_app())
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        missing = await client.get("/missing")
        invalid = await client.get("/invalid")
        isolation = await client.get("/isolation")

    assert missing.status_code == 404
    assert "p-404" not in missing.text
    assert invalid.status_code == 422
    assert invalid.json()["error"]["message"] == "limit must be positive"
    assert isolation.status_code == 503
    assert isolation.json()["error"]["code"] == "ISOLATION_UNAVAILABLE"
    assert "connection 7" not in isolation.text


@pytest.mark.asyncio
async def test_unhandled_errors_are_opaque() -> None:
    # Starlette re-raises after the 500 handler runs; keep the response instead.
    transport = ASGITransport(app=_app(), raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/crash")

    assert response.status_code == 500
    assert response.json()["error"] == {"code": "INTERNAL_ERROR", "message": "Internal server error"}
    assert "hunter2" not in response.text
