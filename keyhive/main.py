"""KeyHive FastAPI application entry point."""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from keyhive import __version__
from keyhive.config import get_settings
from keyhive.db import close_db, init_db
from keyhive.errors import KeyHiveError
from keyhive.services.audit import AuditLogger, DatabaseAuditSink, StructlogAuditSink

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info("keyhive.startup", version=__version__)
    await init_db()
    app.state.audit = AuditLogger([StructlogAuditSink(), DatabaseAuditSink()])

    yield

    # Shutdown
    logger.info("keyhive.shutdown")
    await close_db()


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    app = FastAPI(
        title="KeyHive",
        description="Key-assignment lifecycle for hive drop points",
        version=__version__,
        lifespan=lifespan,
    )

    # Request ID middleware
    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        """Add request ID to all requests."""
        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-Id"] = request_id
        return response

    # Error handler
    @app.exception_handler(KeyHiveError)
    async def keyhive_error_handler(request: Request, exc: KeyHiveError):
        """Render domain errors with a consistent envelope."""
        request_id = getattr(request.state, "request_id", None)
        if exc.status_code >= 500:
            logger.error("api.error", code=exc.code, path=request.url.path, request_id=request_id)
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_dict(request_id),
        )

    # Health check
    @app.get("/health")
    async def health() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "version": __version__}

    # Import and register API routers
    from keyhive.api.v1 import router as v1_router

    app.include_router(v1_router, prefix="/v1")

    return app


# Create default app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "keyhive.main:app",
        host=settings.server.host,
        port=settings.server.port,
        reload=True,
    )
