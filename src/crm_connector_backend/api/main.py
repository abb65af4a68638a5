from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from crm_connector_backend.connectors.bitrix.connector import BitrixConnector
from crm_connector_backend.connectors.bitrix.router import get_router as bitrix_router
from crm_connector_backend.core.api_models import HealthData, SuccessResponse
from crm_connector_backend.core.db import close_mongo_client
from crm_connector_backend.core.errors import ConnectorError
from crm_connector_backend.core.logging import get_logger
from crm_connector_backend.core.observability import RequestContextMiddleware, metrics_snapshot
from crm_connector_backend.core.response import ok, validation_error
from crm_connector_backend.core.settings import Settings, get_settings

logger = get_logger(__name__)

openapi_tags = [
    {"name": "Service", "description": "Health and metrics"},
    {"name": "Bitrix24", "description": "Install callbacks and REST passthrough for Bitrix24 portals"},
]


async def connector_error_handler(request: Request, exc: ConnectorError) -> JSONResponse:
    """Render typed errors as the unified error envelope."""
    log = logger.error if exc.http_status >= 500 else logger.warning
    log(
        "Request failed",
        extra={"error_code": exc.code, "status_code": exc.http_status, "error": exc.message},
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_payload())


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # only location and reason; raw input may contain tokens
    errors = [{"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")} for err in exc.errors()]
    return JSONResponse(status_code=400, content=validation_error("Request validation failed", details={"errors": errors}))


# PUBLIC_INTERFACE
def create_app(settings: Optional[Settings] = None, connector: Optional[BitrixConnector] = None) -> FastAPI:
    """Build the FastAPI application.

    A prebuilt ``connector`` (tests pass one with a mocked transport and an in-memory
    store) is used as is; otherwise one is created from settings at startup and closed
    on shutdown.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = getattr(app.state, "bitrix", None) is None
        if owned:
            app.state.bitrix = BitrixConnector.from_settings(settings)
            logger.info("Bitrix24 connector started", extra={"store": settings.store.CREDENTIAL_STORE})
        try:
            yield
        finally:
            if owned:
                await app.state.bitrix.aclose()
                app.state.bitrix = None
                close_mongo_client()

    app = FastAPI(
        title=settings.api.API_TITLE,
        description=settings.api.API_DESCRIPTION,
        version=settings.api.API_VERSION,
        openapi_tags=openapi_tags,
        contact={"name": "CRM Integration Team"},
        license_info={"name": "Apache-2.0"},
        lifespan=lifespan,
    )
    app.state.bitrix = connector

    # CORS: allow configured origins/methods/headers; defaults can be tightened via env
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api.CORS_ALLOW_ORIGINS,
        allow_credentials=True,
        allow_methods=settings.api.CORS_ALLOW_METHODS,
        allow_headers=settings.api.CORS_ALLOW_HEADERS,
    )
    # Correlation ID / request context middleware
    app.add_middleware(RequestContextMiddleware, tenant_query_param="memberId", logger=logger)

    app.add_exception_handler(ConnectorError, connector_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    # PUBLIC_INTERFACE
    @app.get(
        "/",
        summary="Health Check",
        description="Health check endpoint that returns service status and environment.",
        tags=["Service"],
        response_model=SuccessResponse[HealthData],  # type: ignore[type-arg]
        responses={
            200: {
                "description": "Service is healthy",
                "content": {
                    "application/json": {
                        "example": {"status": "ok", "data": {"message": "Healthy", "env": "development"}, "meta": {}}
                    }
                },
            }
        },
    )
    def health_check():
        """Health check endpoint that returns service status and environment."""
        return ok({"message": "Healthy", "env": settings.api.ENV})

    # PUBLIC_INTERFACE
    @app.get(
        "/_metrics",
        summary="Metrics (basic)",
        description="Process-local counters for requests, installs, token refreshes and remote calls.",
        tags=["Service"],
        response_model=SuccessResponse[dict],  # type: ignore[type-arg]
        responses={
            200: {
                "description": "Metrics snapshot",
                "content": {"application/json": {"example": {"status": "ok", "data": {"token_refresh_total": 3.0}, "meta": {}}}},
            }
        },
    )
    def metrics():
        """Return basic service metrics (process-local) for quick visibility."""
        return ok(metrics_snapshot())

    app.include_router(bitrix_router())
    return app


app = create_app()
