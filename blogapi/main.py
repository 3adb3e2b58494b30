"""
Blog API

FastAPI backend for the blog: public reading and newsletter endpoints, an
admin area, and pluggable storage that falls back to memory when the
configured database is unavailable.
"""

import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from blogapi.config import get_settings
from blogapi.middleware import (
    RequestIDMiddleware,
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
    StorageHealthMiddleware,
    request_id_var,
)
from blogapi.models.system import HealthStatus
from blogapi.routers import admin, auth, posts
from blogapi.services.storage.errors import ConflictError, StorageUnavailable
from blogapi.services.storage.supervisor import HealthSupervisor, StorageState

logger = logging.getLogger(__name__)

SERVICE_NAME = "blog-api"
VERSION = "0.1.0"


def create_app(supervisor: HealthSupervisor | None = None) -> FastAPI:
    """Build the application.

    With no ``supervisor`` the lifespan creates one from settings and runs
    the startup probe. Passing one (tests) skips both; the caller starts it.
    """
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan: select storage on startup, release it on shutdown."""
        owned = supervisor is None
        if owned:
            app.state.supervisor = HealthSupervisor(get_settings())
            await app.state.supervisor.start()
        yield
        if owned:
            await app.state.supervisor.stop()

    app = FastAPI(
        title="Blog API",
        description="Blog content, newsletter and admin API with storage fallback",
        version=VERSION,
        lifespan=lifespan,
    )
    if supervisor is not None:
        app.state.supervisor = supervisor

    # Added first = innermost; request ID is added last so it wraps everything
    app.add_middleware(StorageHealthMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "X-Request-ID"],
    )
    app.add_middleware(RequestIDMiddleware)

    register_exception_handlers(app)

    # Routers
    app.include_router(posts.router, prefix="/api")
    app.include_router(auth.router, prefix="/api")
    app.include_router(admin.router, prefix="/api")

    @app.get("/api/health", response_model=HealthStatus)
    async def health_check(request: Request) -> JSONResponse:
        """Report the active storage; in-memory fallback counts as degraded."""
        health_supervisor = getattr(request.app.state, "supervisor", None)
        if health_supervisor is None:
            state = StorageState.UNCONFIGURED
        else:
            state = health_supervisor.check_health()
        checks = {"storage": state.value}
        if state is StorageState.PRIMARY:
            overall = "ok"
        elif state is StorageState.MEMORY:
            overall = "degraded"
        else:
            overall = "starting"
        result = HealthStatus(
            status=overall, service=SERVICE_NAME, version=VERSION, checks=checks
        )
        status_code = 200 if overall in ("ok", "degraded") else 503
        return JSONResponse(content=result.model_dump(by_alias=True), status_code=status_code)

    return app


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"detail": "Invalid request", "errors": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(ConflictError)
    async def conflict_error(request: Request, exc: ConflictError) -> JSONResponse:
        return JSONResponse(
            status_code=400, content={"detail": str(exc), "field": exc.field}
        )

    @app.exception_handler(StorageUnavailable)
    async def storage_unavailable(request: Request, exc: StorageUnavailable) -> JSONResponse:
        supervisor = getattr(request.app.state, "supervisor", None)
        if supervisor is not None:
            supervisor.report_failure(str(exc))
        logger.error("Storage unavailable [%s]: %s", request_id_var.get(), exc)
        return JSONResponse(
            status_code=503, content={"detail": "Storage temporarily unavailable"}
        )

    @app.exception_handler(Exception)
    async def internal_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(
            "Unhandled error on %s %s [%s]",
            request.method,
            request.url.path,
            request_id_var.get(),
        )
        detail = str(exc) if get_settings().debug else "Internal server error"
        return JSONResponse(status_code=500, content={"detail": detail})


app = create_app()
