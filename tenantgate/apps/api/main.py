from __future__ import annotations

from contextlib import asynccontextmanager
import json
import logging
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantgate.apps.api.errors import (
    authentication_error_handler,
    conflict_handler,
    http_exception_handler,
    immutable_role_handler,
    infrastructure_handler,
    not_found_handler,
    starlette_http_exception_handler,
    tenant_predicate_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
    validation_failure_handler,
)
from tenantgate.apps.api.response import API_VERSION, TENANT_PATH_PREFIX, success_response, wants_envelope
from tenantgate.apps.api.routes.audit import router as audit_router
from tenantgate.apps.api.routes.auth import router as auth_router
from tenantgate.apps.api.routes.health import router as health_router
from tenantgate.apps.api.routes.mfa import router as mfa_router
from tenantgate.apps.api.routes.rbac import router as rbac_router
from tenantgate.core.config import get_settings
from tenantgate.core.errors import (
    AuthenticationError,
    ConflictError,
    ImmutableRoleError,
    InfrastructureUnavailable,
    NotFoundError,
    ValidationFailure,
)
from tenantgate.core.logging import configure_logging
from tenantgate.persistence.db import SessionLocal
from tenantgate.persistence.guards import TenantPredicateError
from tenantgate.services.audit.logger import new_correlation_id
from tenantgate.services.container import CoreServices


logger = logging.getLogger(__name__)


def _security_headers(production: bool) -> dict[str, str]:
    headers = {
        "X-Frame-Options": "DENY",
        "X-Content-Type-Options": "nosniff",
        "Referrer-Policy": "strict-origin-when-cross-origin",
    }
    if production:
        headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    return headers


def create_app(services: CoreServices | None = None) -> FastAPI:
    configure_logging()
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Background flush and sweep tasks live exactly as long as the process serves requests.
        await app.state.services.start()
        try:
            yield
        finally:
            await app.state.services.stop()

    app = FastAPI(title="TenantGate API", lifespan=lifespan, docs_url="/v1/docs", openapi_url="/v1/openapi.json")
    if services is None:
        services = CoreServices.build(SessionLocal, settings=settings)
    app.state.services = services
    security_headers = _security_headers(settings.is_production())

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        request.state.correlation_id = new_correlation_id()
        response = await call_next(request)
        # Wrap successful versioned JSON responses in the {"data", "meta"} envelope.
        if (
            wants_envelope(request)
            and response.status_code < 400
            and response.headers.get("content-type", "").startswith("application/json")
        ):
            body = b""
            async for chunk in response.body_iterator:
                body += chunk
            try:
                payload = json.loads(body) if body else None
            except ValueError:
                payload = None
            if payload is not None:
                payload = success_response(request=request, data=payload)
            wrapped = JSONResponse(content=payload, status_code=response.status_code)
            for key, value in response.headers.items():
                if key.lower() in {"content-length", "content-type"}:
                    continue
                wrapped.headers.append(key, value)
            response = wrapped
        response.headers.setdefault("X-Request-Id", request_id)
        for key, value in security_headers.items():
            response.headers.setdefault(key, value)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(ValidationFailure)
    async def _validation_failure_handler(request: Request, exc: ValidationFailure):
        return await validation_failure_handler(request, exc)

    @app.exception_handler(ConflictError)
    async def _conflict_handler(request: Request, exc: ConflictError):
        return await conflict_handler(request, exc)

    @app.exception_handler(NotFoundError)
    async def _not_found_handler(request: Request, exc: NotFoundError):
        return await not_found_handler(request, exc)

    @app.exception_handler(ImmutableRoleError)
    async def _immutable_role_handler(request: Request, exc: ImmutableRoleError):
        return await immutable_role_handler(request, exc)

    @app.exception_handler(AuthenticationError)
    async def _authentication_error_handler(request: Request, exc: AuthenticationError):
        return await authentication_error_handler(request, exc)

    @app.exception_handler(InfrastructureUnavailable)
    async def _infrastructure_handler(request: Request, exc: InfrastructureUnavailable):
        return await infrastructure_handler(request, exc)

    @app.exception_handler(TenantPredicateError)
    async def _tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError):
        return await tenant_predicate_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    # Every route is versioned; the tenant mount repeats them for hosts without a tenant subdomain.
    tenant_prefix = f"{TENANT_PATH_PREFIX}{{tenant_subdomain}}/{API_VERSION}"
    for router in (health_router, auth_router, mfa_router, rbac_router, audit_router):
        app.include_router(router, prefix=f"/{API_VERSION}")
        app.include_router(router, prefix=tenant_prefix, include_in_schema=False)

    return app


app = create_app()
