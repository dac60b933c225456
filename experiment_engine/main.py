import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from . import __version__
from .api import experiments, monitoring
from .core.config import settings
from .core.errors import APIError, ExperimentError
from .core.logging import setup_logging
from .core.monitoring import set_system_info
from .db.mongodb import MongoDB
from .repositories.memory import in_memory_repositories
from .repositories.mongo import ensure_indexes, mongo_repositories
from .services.code_change import HttpCodeChangeClient, build_code_change_client
from .services.experiment_service import ExperimentService

logger = logging.getLogger(__name__)


async def experiment_error_handler(request: Request, exc: ExperimentError):
    error = APIError.from_experiment_error(exc)
    if error.status_code >= 500:
        logger.error(f"{exc.error_code} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=error.status_code, content={"detail": error.detail})


def create_app(service: Optional[ExperimentService] = None) -> FastAPI:
    """
    Build the HTTP application.

    A ready service can be injected; otherwise MongoDB is used when
    MONGODB_URI is configured and in-memory storage when it is not.
    """
    setup_logging(settings.LOG_LEVEL, settings.LOG_JSON)

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=__version__,
        openapi_url=f"{settings.API_V1_STR}/openapi.json"
    )
    app.add_exception_handler(ExperimentError, experiment_error_handler)
    app.include_router(experiments.router, prefix=settings.API_V1_STR, tags=["experiments"])
    app.include_router(monitoring.router)

    app.state.mongodb = None
    if service is None and not settings.MONGODB_URI:
        logger.warning("MONGODB_URI not configured. Using in-memory storage.")
        service = ExperimentService(in_memory_repositories(), build_code_change_client())
    app.state.experiment_service = service

    @app.on_event("startup")
    async def startup_event():
        logger.info("Starting up experiment engine...")
        if app.state.experiment_service is None:
            mongodb = MongoDB()
            await mongodb.connect()
            db = mongodb.get_db()
            await ensure_indexes(db)
            app.state.mongodb = mongodb
            app.state.experiment_service = ExperimentService(
                mongo_repositories(db), build_code_change_client()
            )
        set_system_info(__version__, "production" if app.state.mongodb else "development")
        logger.info(f"API Version: {settings.API_V1_STR}")

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("Shutting down experiment engine...")
        code_changes = app.state.experiment_service.winners.code_changes
        if isinstance(code_changes, HttpCodeChangeClient):
            await code_changes.close()
        if app.state.mongodb is not None:
            await app.state.mongodb.close()

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("experiment_engine.main:app", host="0.0.0.0", port=8000)
