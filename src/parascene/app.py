"""FastAPI application factory."""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy import text

from parascene.api.routes import create, credits, worker
from parascene.core.config import Settings, configure_logging
from parascene.core.database import setup_db_session
from parascene.services.creation import CreationService
from parascene.services.exceptions import CreationError
from parascene.services.provider.client import ProviderClient
from parascene.services.recovery import recover_stale_creations
from parascene.services.storage import LocalImageStorage
from parascene.uow import create_uow_factory
from parascene.workers.creation_job import make_job_runner
from parascene.workers.dispatch import InProcessDispatcher, build_dispatcher

logger = structlog.get_logger()

SHUTDOWN_DRAIN_TIMEOUT = 30


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    Handles startup and shutdown tasks:
    - Startup: configure logging, build the database session factory, the
      job runner and the dispatch strategy (chosen once, here)
    - Shutdown: wait for in-process jobs, then cancel the stragglers
    """
    settings = Settings()  # type: ignore[call-arg]
    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)

    storage = LocalImageStorage(settings.images_dir, settings.images_url_prefix)
    provider = ProviderClient(timeout_seconds=settings.provider_timeout_seconds)
    job_runner = make_job_runner(uow_factory, storage, provider, settings)

    # Raises ConfigurationError for serverless deployments without a queue token
    dispatcher = build_dispatcher(settings, job_runner)

    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.uow_factory = uow_factory
    app.state.job_runner = job_runner
    app.state.dispatcher = dispatcher
    app.state.creation_service = CreationService(uow_factory, dispatcher, settings)

    if settings.recover_stale_on_startup:
        try:
            stale_ids = await recover_stale_creations(
                uow_factory, limit=settings.recovery_batch_size
            )
            logger.info("startup.recovery_completed", recovered=len(stale_ids))
        except Exception as e:
            # Stale rows stay recoverable through the retry endpoint
            logger.error(
                "startup.recovery_failed",
                error=str(e),
                error_type=type(e).__name__,
            )

    logger.info(
        "application.startup",
        db_url=settings.database_url.split("@")[-1],
        dispatch="queue" if settings.is_serverless else "in_process",
    )

    yield

    logger.info("application.shutdown")
    if isinstance(dispatcher, InProcessDispatcher):
        await dispatcher.drain(timeout=SHUTDOWN_DRAIN_TIMEOUT)


async def handle_creation_error(request: Request, exc: CreationError) -> JSONResponse:
    """Render request-time creation errors as ``{"error": ..., **extra}``."""
    logger.info(
        "request.rejected",
        path=request.url.path,
        status_code=exc.status_code,
        error=exc.message,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app() -> FastAPI:
    """Create and configure FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    settings = Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="parascene Backend API",
        description="Asynchronous image creation pipeline",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(CreationError, handle_creation_error)  # type: ignore[arg-type]

    app.include_router(create.router)
    app.include_router(credits.router)
    app.include_router(worker.router)

    # Serves LocalImageStorage output
    app.mount(
        settings.images_url_prefix,
        StaticFiles(directory=settings.images_dir, check_dir=False),
        name="images",
    )

    @app.get("/health")
    async def health_check(response: Response):
        """Health check endpoint with database connectivity test.

        Returns:
            200: {"status": "healthy"} if database connection succeeds
            503: {"status": "unhealthy", "error": {...}} if database connection fails
        """
        try:
            async with app.state.session_factory() as session:
                result = await session.execute(text("SELECT 1"))
                result.scalar()

            logger.debug("health_check.success")
            return {"status": "healthy"}

        except Exception as e:
            logger.error(
                "health_check.failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return {
                "status": "unhealthy",
                "error": {
                    "type": type(e).__name__,
                    "message": str(e),
                },
            }

    return app


# Create app instance for uvicorn
app = create_app()
