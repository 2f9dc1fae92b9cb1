from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from .config import load_config
from .errors import (
    BackupError, FileSystemError, InvalidIdentifier, NotFound, PermissionDenied,
    QuotaExceeded, RunInProgress, SubprocessFailure,
)
from .logger import setup_logging, get_logger
from .routers import backups, configurations, databases, restores, runs, system
from .services import Services

logger = get_logger(__name__)

ERROR_STATUS_CODES = {
    NotFound: 404,
    PermissionDenied: 403,
    InvalidIdentifier: 400,
    QuotaExceeded: 422,
    RunInProgress: 409,
    SubprocessFailure: 502,
    FileSystemError: 500,
}


def create_app(settings: Optional[dict] = None, services: Optional[Services] = None) -> FastAPI:
    settings = settings or load_config()
    services = services or Services(settings)

    app = FastAPI(title="Fleet Backup")
    app.state.settings = settings
    app.state.services = services
    Instrumentator().instrument(app).expose(app)

    @app.exception_handler(BackupError)
    async def backup_error_handler(request: Request, exc: BackupError):
        status_code = ERROR_STATUS_CODES.get(type(exc), 500)
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    @app.on_event("startup")
    def startup_event():
        app.state.services.startup()

    @app.on_event("shutdown")
    def shutdown_event():
        app.state.services.shutdown()

    app.include_router(configurations.router, prefix="/configurations", tags=["configurations"])
    app.include_router(backups.router, prefix="/backups", tags=["backups"])
    app.include_router(runs.router, prefix="/runs", tags=["runs"])
    app.include_router(restores.router, prefix="/restores", tags=["restores"])
    app.include_router(databases.router, prefix="/databases", tags=["databases"])
    app.include_router(system.router, prefix="/system", tags=["system"])
    return app


def get_app() -> FastAPI:
    """Factory for ``uvicorn --factory fleet_backup.main:get_app``."""
    setup_logging()
    return create_app()
