from __future__ import annotations

from typing import Any
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel


API_VERSION = "v1"
# Tenant-addressed mount for hosts that carry no tenant subdomain: /t/<subdomain>/v1/...
TENANT_PATH_PREFIX = "/t/"

# Versioned paths served raw rather than wrapped.
_UNWRAPPED_PATHS = (f"/{API_VERSION}/openapi.json", f"/{API_VERSION}/docs")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = API_VERSION


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id
    return request_id


def api_path(path: str) -> str:
    # /t/egdc/v1/auth/me and /v1/auth/me name the same endpoint.
    if not path.startswith(TENANT_PATH_PREFIX):
        return path
    _, _, rest = path[len(TENANT_PATH_PREFIX):].partition("/")
    return f"/{rest}"


def wants_envelope(request: Request) -> bool:
    path = api_path(request.url.path)
    return path.startswith(f"/{API_VERSION}/") and not path.startswith(_UNWRAPPED_PATHS)


def is_envelope(payload: Any) -> bool:
    return isinstance(payload, dict) and {"data", "meta"} <= payload.keys()


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    if is_envelope(data):
        return data
    meta = ResponseMeta(request_id=get_request_id(request))
    return {"data": data, "meta": meta.model_dump()}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    # Codes are stable identifiers; messages never carry identity or credential data.
    meta = ResponseMeta(request_id=get_request_id(request))
    error = ErrorDetail(code=code, message=message, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": meta.model_dump()}
