"""
Main FastAPI application.
"""
from contextlib import asynccontextmanager
from typing import Optional
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from wslbackup.core.config import Settings
from wslbackup.core.exceptions import (
    BackupSystemError,
    ChainError,
    ChainReplayError,
    DependencyError,
    ExternalToolError,
    IntegrityError,
    OperationTimeoutError,
    ValidationError,
)
from wslbackup.core.logging_handler import setup_logging, teardown_logging
from wslbackup.api.v1 import backups, restores, migration, logs
from wslbackup.services import build_services
from wslbackup.services.deployment import BatchDeploymentCoordinator
from wslbackup.services.wsl import EnvironmentRuntime

logger = logging.getLogger(__name__)

# Most specific first; subclasses must precede their bases
ERROR_STATUS = [
    (ValidationError, 400),
    (IntegrityError, 409),
    (ChainReplayError, 409),
    (ChainError, 409),
    (DependencyError, 409),
    (ExternalToolError, 502),
    (OperationTimeoutError, 504),
]


def error_status(error: BackupSystemError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            return status_code
    return 500


async def backup_system_error_handler(request: Request, exc: BackupSystemError) -> JSONResponse:
    """Convert service exceptions into result JSON."""
    body = {
        "success": False,
        "error": str(exc),
        "error_type": type(exc).__name__,
    }
    if isinstance(exc, DependencyError):
        body["dependent_ids"] = exc.dependent_ids
    elif isinstance(exc, ChainReplayError):
        body["target_name"] = exc.target_name
        body["applied_backup_ids"] = exc.applied_backup_ids
        body["last_applied_backup_id"] = exc.last_applied_backup_id
        body["failed_backup_id"] = exc.failed_backup_id
    elif isinstance(exc, IntegrityError):
        body["expected"] = exc.expected
        body["actual"] = exc.actual

    status_code = error_status(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.warning(f"{request.method} {request.url.path} rejected: {exc}")
    return JSONResponse(status_code=status_code, content=body)


def create_app(
    settings: Optional[Settings] = None,
    runtime: Optional[EnvironmentRuntime] = None,
    deployer: Optional[BatchDeploymentCoordinator] = None
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Application settings (read from the environment when omitted)
        runtime: Local runtime override
        deployer: Batch coordinator override
    """
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        handler = setup_logging(settings)
        app.state.log_handler = handler
        logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
        version = await app.state.services.runtime.get_runtime_version()
        if version:
            logger.info(f"WSL runtime: {version}")

        yield

        # Shutdown
        logger.info("Shutting down...")
        app.state.log_handler = None
        teardown_logging(handler)

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Backup, restore and migration of WSL distributions",
        lifespan=lifespan
    )
    app.state.settings = settings
    app.state.services = build_services(settings, runtime=runtime, deployer=deployer)
    app.state.log_handler = None

    app.add_exception_handler(BackupSystemError, backup_system_error_handler)

    # Include routers
    app.include_router(backups.router, prefix=f"{settings.API_V1_PREFIX}/backups", tags=["Backups"])
    app.include_router(restores.router, prefix=f"{settings.API_V1_PREFIX}/restores", tags=["Restores"])
    app.include_router(migration.router, prefix=f"{settings.API_V1_PREFIX}/migration", tags=["Migration"])
    app.include_router(logs.router, prefix=f"{settings.API_V1_PREFIX}/logs", tags=["Logs"])

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy", "version": settings.APP_VERSION}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "wslbackup.main:app",
        host=app.state.settings.HOST,
        port=app.state.settings.PORT,
        reload=app.state.settings.DEBUG
    )
