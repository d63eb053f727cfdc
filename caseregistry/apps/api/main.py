from __future__ import annotations

import time
from uuid import uuid4
import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.openapi.utils import get_openapi
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from caseregistry.apps.api.errors import (
    beneficiary_not_found_exception_handler,
    http_exception_handler,
    mapping_validation_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from caseregistry.apps.api.response import API_VERSION
from caseregistry.apps.api.routes.audit import router as audit_router
from caseregistry.apps.api.routes.beneficiaries import router as beneficiaries_router
from caseregistry.apps.api.routes.forms import router as forms_router
from caseregistry.apps.api.routes.health import router as health_router
from caseregistry.apps.api.routes.mappings import router as mappings_router
from caseregistry.core.config import get_settings
from caseregistry.core.errors import BeneficiaryNotFoundError, MappingValidationError
from caseregistry.core.logging import configure_logging


logger = logging.getLogger(__name__)

_ROUTERS = (
    health_router,
    beneficiaries_router,
    mappings_router,
    forms_router,
    audit_router,
)


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title="Case Registry API", docs_url=None, redoc_url=None, openapi_url=None)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.debug(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(MappingValidationError)
    async def _mapping_validation_exception_handler(request: Request, exc: MappingValidationError):
        return await mapping_validation_exception_handler(request, exc)

    @app.exception_handler(BeneficiaryNotFoundError)
    async def _beneficiary_not_found_exception_handler(request: Request, exc: BeneficiaryNotFoundError):
        return await beneficiary_not_found_exception_handler(request, exc)

    # All routes live under the versioned prefix.
    for router in _ROUTERS:
        app.include_router(router, prefix=f"/{API_VERSION}")

    @app.get("/v1/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get("/v1/docs", include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url="/v1/openapi.json", title="Case Registry API v1")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url="/v1/docs")

    def custom_openapi() -> dict:
        # Inject bearer auth and version metadata into the OpenAPI schema.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title="Case Registry API", version=API_VERSION, routes=app.routes)
        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        for path, operations in schema.get("paths", {}).items():
            if path == "/v1/health":
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"BearerAuth": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi  # type: ignore[method-assign]
    logger.info("app_created name=%s auth_enabled=%s", settings.app_name, settings.auth_enabled)

    return app


app = create_app()
