"""
FastAPI application factory for the FieldVault console.

This module creates the main FastAPI app with:
- CORS configuration for frontend
- FieldVault runtime lifecycle management
- Mapping of FieldVault errors to HTTP status codes
- API routes under /api/v1
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from core.fieldvault.errors import (
    FieldVaultError,
    NotFoundError,
    ProviderUnavailableError,
    TransportUnreachableError,
    ValidationFailedError,
)
from core.fieldvault.main import FieldVault

from .config import Settings
from .routes import router

logger = logging.getLogger(__name__)


def status_for(error: FieldVaultError) -> int:
    """HTTP status code for a FieldVault error."""
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, (ProviderUnavailableError, TransportUnreachableError)):
        return 503
    if isinstance(error, ValidationFailedError):
        return 422
    return 500


async def fieldvault_error_handler(request: Request, exc: FieldVaultError) -> JSONResponse:
    status = status_for(exc)
    if status >= 500:
        logger.error("Request failed", extra={"path": request.url.path, "error": str(exc)})
    return JSONResponse(status_code=status, content={"error": exc.to_dict()})


def create_app(vault: FieldVault | None = None, settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        vault: Prebuilt runtime (built from environment when omitted)
        settings: Console settings (loaded from environment when omitted)
    """
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Manage FieldVault runtime lifecycle."""
        runtime = vault or FieldVault()
        await runtime.open()
        app.state.vault = runtime
        app.state.settings = settings

        scheduler_task = None
        if settings.run_scheduler:
            scheduler_task = asyncio.create_task(runtime.scheduler.start())

        yield

        if scheduler_task is not None:
            await runtime.scheduler.stop()
            scheduler_task.cancel()
            await asyncio.gather(scheduler_task, return_exceptions=True)
        await runtime.scheduler.wait_idle()
        await runtime.close()

    app = FastAPI(
        title="FieldVault Console",
        description="Operator interface for backups, versions, sync and the offline queue.",
        version="1.0.0",
        lifespan=lifespan,
    )

    # CORS for frontend
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    app.add_exception_handler(FieldVaultError, fieldvault_error_handler)

    # API routes
    app.include_router(router, prefix="/api/v1")

    # Health endpoint at root
    @app.get("/health")
    async def health():
        return {"status": "healthy", "service": "fieldvault-console"}

    return app


# Default app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = Settings()
    uvicorn.run(app, host=settings.host, port=settings.port)
