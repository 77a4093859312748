"""
FastAPI Application
===================
HTTP surface for the external sources synchronization engine.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional
from uuid import uuid4

import httpx
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..config import SyncSettings
from ..connectors.registry import ConnectorRegistry
from ..database import create_engine, create_schema, create_session_factory
from ..exceptions import SyncError
from ..security.secret_box import SecretBox
from ..services.authorization import AuthorizationStore, InMemoryAuthorizationStore
from ..services.import_pipeline import HttpImportPipeline, ImportPipeline
from ..services.orchestrator import SyncOrchestrator
from ..services.source_admin import SourceAdminService
from ..services.source_connection import SourceConnectionService
from .config import APIConfig
from .middleware.auth import SessionAuthMiddleware
from .middleware.request_context import RequestContextMiddleware
from .models import ErrorResponse, HealthResponse
from .routes import cron_router, oauth_router, run_router, sources_router

logger = logging.getLogger(__name__)


# =============================================================================
# Application Factory
# =============================================================================

def create_app(
    config: Optional[APIConfig] = None,
    settings: Optional[SyncSettings] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    authorization: Optional[AuthorizationStore] = None,
    import_pipeline: Optional[ImportPipeline] = None,
    connectors: Optional[ConnectorRegistry] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """
    Create the FastAPI application with its services wired in.

    Args:
        config: HTTP surface settings; defaults when omitted.
        settings: Engine settings. Read from the environment if not provided.
        session_factory: Session factory. Built from ``settings.database`` if
            not provided; the engine is then disposed on shutdown.
        authorization: Membership/entitlement store of the host platform.
        import_pipeline: Downstream import. Defaults to the HTTP pipeline.
        connectors: Connector registry override.
        http_client: Shared client for OAuth and cloud drive calls.

    Returns:
        Configured FastAPI application.
    """
    config = config or APIConfig()
    settings = settings or SyncSettings()

    engine: Optional[AsyncEngine] = None
    if session_factory is None:
        engine = create_engine(settings.database)
        session_factory = create_session_factory(engine)

    if authorization is None:
        logger.warning("No authorization store supplied - using an empty in-memory store")
        authorization = InMemoryAuthorizationStore()

    owned_pipeline: Optional[HttpImportPipeline] = None
    if import_pipeline is None:
        owned_pipeline = HttpImportPipeline(settings.import_pipeline)
        import_pipeline = owned_pipeline

    secret_box = SecretBox(settings.encryption)
    connectors = connectors or ConnectorRegistry(settings, http_client=http_client)

    orchestrator = SyncOrchestrator(
        settings=settings,
        session_factory=session_factory,
        connectors=connectors,
        import_pipeline=import_pipeline,
        authorization=authorization,
        secret_box=secret_box,
    )
    admin_service = SourceAdminService(
        settings, session_factory, authorization, connectors, secret_box, import_pipeline=import_pipeline
    )
    connection_service = SourceConnectionService(
        settings, session_factory, authorization, secret_box, http_client=http_client
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting external sources API...")
        if config.create_schema and engine is not None:
            await create_schema(engine)

        yield

        logger.info("Shutting down external sources API...")
        await connection_service.close()
        if owned_pipeline is not None:
            await owned_pipeline.close()
        if engine is not None:
            await engine.dispose()

    app = FastAPI(
        title=config.title,
        description=config.description,
        version=config.version,
        docs_url=config.docs_url if config.debug else None,
        lifespan=lifespan,
    )

    app.state.config = config
    app.state.settings = settings
    app.state.orchestrator = orchestrator
    app.state.admin_service = admin_service
    app.state.connection_service = connection_service

    _setup_middleware(app, config, settings)
    _setup_exception_handlers(app)
    _setup_routes(app, config)

    return app


def _setup_middleware(app: FastAPI, config: APIConfig, settings: SyncSettings) -> None:
    """Middleware runs outermost first: request context, session, CORS."""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors.allow_origins,
        allow_credentials=config.cors.allow_credentials,
        allow_methods=config.cors.allow_methods,
        allow_headers=config.cors.allow_headers,
        max_age=config.cors.max_age,
    )

    app.add_middleware(SessionAuthMiddleware, config=settings.session)
    app.add_middleware(RequestContextMiddleware)


def _error_response(
    request: Request,
    status_code: int,
    error: str,
    message: str,
    details: Optional[dict] = None,
) -> JSONResponse:
    """Render an ``ErrorResponse`` tagged with the request ID."""
    request_id = getattr(request.state, "request_id", None) or str(uuid4())
    body = ErrorResponse(error=error, message=message, details=details or None, request_id=request_id)
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


def _setup_exception_handlers(app: FastAPI) -> None:
    """Every error leaves the API as an ``ErrorResponse``."""

    @app.exception_handler(SyncError)
    async def sync_error_handler(request: Request, exc: SyncError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(f"{exc.error_code}: {exc.message}")
        return _error_response(request, exc.status_code, exc.error_code, exc.message, exc.details)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        error = HTTP_ERROR_CODES.get(exc.status_code, "error")
        return _error_response(request, exc.status_code, error, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = [
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in exc.errors()
        ]
        return _error_response(
            request,
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            "validation_error",
            "Request validation failed",
            {"errors": errors},
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        response = _error_response(
            request,
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "internal_error",
            "An unexpected error occurred",
        )
        logger.exception(f"Unhandled {type(exc).__name__} on {request.method} {request.url.path}")
        return response


def _setup_routes(app: FastAPI, config: APIConfig) -> None:
    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health() -> HealthResponse:
        return HealthResponse(status="healthy", version=config.version)

    for router in (run_router, cron_router, oauth_router, sources_router):
        app.include_router(router, prefix=config.route_prefix)


HTTP_ERROR_CODES = {
    400: "bad_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
    422: "validation_error",
    500: "internal_error",
    502: "bad_gateway",
    503: "service_unavailable",
}


# =============================================================================
# Entry Point
# =============================================================================

def main() -> None:
    """Serve the API with uvicorn (``external-sources-api``)."""
    import argparse

    import uvicorn

    parser = argparse.ArgumentParser(description="External sources sync API")
    parser.add_argument("--host", help="Bind address (default: EXTERNAL_SOURCES_HOST)")
    parser.add_argument("--port", type=int, help="Bind port (default: EXTERNAL_SOURCES_PORT)")
    parser.add_argument("--debug", action="store_true", help="Verbose logging and /docs")
    parser.add_argument("--create-schema", action="store_true", help="Create missing tables on startup")
    args = parser.parse_args()

    config = APIConfig(debug=args.debug, create_schema=args.create_schema)
    config.host = args.host or config.host
    config.port = args.port or config.port

    log_level = "debug" if config.debug else "info"
    logging.basicConfig(level=log_level.upper())
    uvicorn.run(create_app(config), host=config.host, port=config.port, log_level=log_level)


if __name__ == "__main__":
    main()
