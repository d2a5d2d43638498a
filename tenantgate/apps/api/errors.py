from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantgate.apps.api.response import error_response
from tenantgate.core.errors import (
    AuthenticationError,
    ConflictError,
    ImmutableRoleError,
    InfrastructureUnavailable,
    NotFoundError,
    ValidationFailure,
)
from tenantgate.persistence.guards import TenantPredicateError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "AUTH_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Accept {"code", "message", ...} dicts or bare strings from HTTPException.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def _envelope(request: Request, status_code: int, code: str, message: str, details: dict[str, Any] | None = None, headers=None) -> JSONResponse:
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return _envelope(request, exc.status_code, code, message, details, exc.headers)


async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return _envelope(request, exc.status_code, code, message, details, exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _envelope(
        request,
        422,
        "REQUEST_VALIDATION_ERROR",
        "Validation error",
        {"errors": exc.errors()},
    )


async def validation_failure_handler(request: Request, exc: ValidationFailure) -> JSONResponse:
    # Field-level reasons carry no identity information and are safe to echo.
    return _envelope(request, 400, "VALIDATION_FAILED", exc.reason, {"field": exc.field})


async def conflict_handler(request: Request, exc: ConflictError) -> JSONResponse:
    return _envelope(request, 409, "CONFLICT", str(exc) or "Already in the requested state")


async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return _envelope(request, 404, "NOT_FOUND", str(exc) or "Not found")


async def immutable_role_handler(request: Request, exc: ImmutableRoleError) -> JSONResponse:
    return _envelope(request, 403, "ROLE_IMMUTABLE", "Built-in roles cannot be modified")


async def authentication_error_handler(request: Request, exc: AuthenticationError) -> JSONResponse:
    # Internal reason stays in the audit trail.
    return _envelope(request, 401, "AUTH_UNAUTHORIZED", "Authentication failed")


async def infrastructure_handler(request: Request, exc: InfrastructureUnavailable) -> JSONResponse:
    logger.error("infrastructure_unavailable path=%s", request.url.path, exc_info=exc)
    return _envelope(request, 503, "AUTH_UNAVAILABLE", "Service temporarily unavailable")


async def tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError) -> JSONResponse:
    logger.error("tenant_predicate_missing path=%s", request.url.path, exc_info=exc)
    return _envelope(request, 500, "TENANT_PREDICATE_REQUIRED", "Tenant scope missing from query")


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    return _envelope(request, 500, "INTERNAL_ERROR", "Internal server error")
