"""
FastAPI application factory for the Entity Storage REST surface.

This module creates the FastAPI app with:
- CORS configuration
- The entity routes mounted at the configured base route
- Error envelopes ``{name, message, properties?, inner?, stack?}`` mapped
  to HTTP status codes
- Optional node lifecycle management through the lifespan
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .._version import __version__
from ..errors import (
    BackendUnavailableError,
    EntityStorageError,
    GuardError,
    NotFoundError,
    SignatureInvalidError,
    SortNotIndexedError,
    UndefinedPropertyError,
    UnsupportedComparisonError,
)
from ..service import EntityStorageService
from .routes import router
from .settings import ApiSettings

if TYPE_CHECKING:
    from ..main import Node

logger = logging.getLogger(__name__)

# First match wins, so subclasses come before their bases
_STATUS_CODES: tuple[tuple[type[EntityStorageError], int], ...] = (
    (NotFoundError, 404),
    (GuardError, 400),
    (UndefinedPropertyError, 400),
    (SignatureInvalidError, 401),
    (UnsupportedComparisonError, 422),
    (SortNotIndexedError, 422),
    (BackendUnavailableError, 503),
)


def status_for(error: EntityStorageError) -> int:
    for error_type, status in _STATUS_CODES:
        if isinstance(error, error_type):
            return status
    return 500


def create_app(
    service: EntityStorageService,
    trusted_sync: Any = None,
    settings: ApiSettings | None = None,
    node: Node | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        service: The entity storage service behind the routes
        trusted_sync: TrustedSynchronisedStorageService on an authoritative node
        settings: API settings (loaded from the environment when omitted)
        node: Node whose start()/stop() follow the app lifespan
    """
    settings = settings or ApiSettings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        if node is not None:
            await node.start()
        yield
        if node is not None:
            await node.stop()

    app = FastAPI(
        title="Entity Storage",
        description="Schema-driven entity storage with decentralised synchronisation.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.service = service
    app.state.trusted_sync = trusted_sync
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.exception_handler(EntityStorageError)
    async def entity_storage_error_handler(request: Request, exc: EntityStorageError) -> JSONResponse:
        status = status_for(exc)
        if status >= 500:
            logger.error(f"Request failed: {exc}", exc_info=exc)
        else:
            logger.debug(
                "Request rejected",
                extra={"path": request.url.path, "error": exc.name, "status": status},
            )
        return JSONResponse(
            status_code=status, content=exc.to_envelope(settings.include_error_stack)
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(f"HTTP handler error: {exc}", exc_info=exc)
        return JSONResponse(
            status_code=500, content={"name": type(exc).__name__, "message": str(exc)}
        )

    app.include_router(router, prefix=settings.base_route.rstrip("/"))

    @app.get("/health")
    async def health() -> dict[str, Any]:
        schema = service.connector.get_schema()
        return {"status": "healthy", "service": "entity-storage", "schema": schema.name}

    return app


async def run_api(node: Node, settings: ApiSettings | None = None) -> None:
    """Serve the node's REST API with uvicorn until the server exits."""
    import uvicorn

    settings = settings or ApiSettings()
    app = create_app(node.service, trusted_sync=node.trusted_sync, settings=settings)
    server = uvicorn.Server(
        uvicorn.Config(app, host=settings.host, port=settings.port, log_config=None)
    )
    logger.info("Starting REST API", extra={"host": settings.host, "port": settings.port})
    await server.serve()
