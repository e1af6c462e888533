from __future__ import annotations

from fastapi import Request

from tenantcore.apps.api.response import get_request_id
from tenantcore.domain.context import IdentityClaims, RequestMeta


def get_request_meta(request: Request) -> RequestMeta:
    # Request facts recorded on audit events; the query string is dropped.
    return RequestMeta(method=request.method, url=str(request.url.replace(query="")))


def identity_from_state(request: Request) -> IdentityClaims:
    # The authentication middleware stores verified claims on request.state.
    claims = getattr(request.state, "identity", None)
    if isinstance(claims, IdentityClaims):
        return claims
    return IdentityClaims(user_id=None, tenant_id=None, correlation_id=get_request_id(request))
