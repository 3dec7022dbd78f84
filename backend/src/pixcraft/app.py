"""FastAPI application factory."""

import asyncio
from contextlib import asynccontextmanager
from typing import Awaitable, Callable

import structlog
from fastapi import FastAPI, Response, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from pixcraft.api.routes import accounts, generations
from pixcraft.core.config import Settings, configure_logging
from pixcraft.core.database import setup_db_session
from pixcraft.services.credit_ledger import CreditLedger
from pixcraft.services.generation_service import GenerationService
from pixcraft.services.image_generation.provider_client import ProviderClient
from pixcraft.services.storage.artifact_store import ArtifactStore
from pixcraft.services.storage.s3_client import S3ObjectStore
from pixcraft.uow import create_uow_factory
from pixcraft.workers.dispatcher import GenerationDispatcher, recover_interrupted_generations
from pixcraft.workers.generation_orchestrator import GenerationOrchestrator

logger = structlog.get_logger()


def create_resilient_worker(
    coro_func: Callable[[str], Awaitable[None]],
    worker_name: str,
    shutdown_event: asyncio.Event,
    running: set[asyncio.Task],
    restart_delay: float = 1,
) -> asyncio.Task:
    """Create a worker with automatic restart on failure.

    Args:
        coro_func: Worker coroutine function taking the worker name
            (e.g., GenerationDispatcher.run_worker)
        worker_name: Human-readable worker name for logging
        shutdown_event: Event to signal graceful shutdown
        running: Set holding the live task of every worker and every pending
            restart, so shutdown can cancel them
        restart_delay: Seconds to wait before restarting a crashed worker

    Returns:
        Initial task handle (will be auto-recreated on crash)
    """

    def start() -> asyncio.Task:
        task = asyncio.create_task(coro_func(worker_name))
        running.add(task)
        task.add_done_callback(on_worker_done)
        return task

    def on_worker_done(task: asyncio.Task):
        running.discard(task)

        if shutdown_event.is_set():
            logger.info("worker.shutdown_complete", worker=worker_name)
            return

        # Cancelled outside of shutdown: not restarted
        if task.cancelled():
            logger.info("worker.cancelled", worker=worker_name)
            return

        exc = task.exception()
        if exc:
            logger.error(
                "worker.crashed",
                worker=worker_name,
                error=str(exc),
                error_type=type(exc).__name__,
                retry_in_seconds=restart_delay,
                exc_info=exc,
            )
        else:
            # Worker loops never return on their own
            logger.warning(
                "worker.stopped_unexpectedly",
                worker=worker_name,
                retry_in_seconds=restart_delay,
            )

        async def restart_worker():
            await asyncio.sleep(restart_delay)

            if shutdown_event.is_set():
                return

            logger.info("worker.restarting", worker=worker_name)
            start()

        restart = asyncio.create_task(restart_worker())
        running.add(restart)
        restart.add_done_callback(running.discard)

    return start()


def build_generation_service(settings: Settings, uow_factory) -> GenerationService:
    """Wire adapters, ledger, orchestrator and dispatcher from settings."""
    provider = ProviderClient(
        api_token=settings.replicate_api_token,
        model_version=settings.replicate_model_version,
        max_retries=settings.provider_max_retries,
        timeout_seconds=settings.provider_timeout_seconds,
    )
    object_store = S3ObjectStore(
        bucket=settings.aws_s3_bucket,
        region=settings.aws_region,
        access_key_id=settings.aws_access_key_id,
        secret_access_key=settings.aws_secret_access_key,
        public_base_url=settings.s3_public_base_url,
    )
    artifact_store = ArtifactStore(
        object_store,
        max_width=settings.image_max_width,
        max_height=settings.image_max_height,
        quality=settings.image_quality,
    )
    orchestrator = GenerationOrchestrator(
        uow_factory,
        provider=provider,
        artifact_store=artifact_store,
        ledger=CreditLedger(uow_factory),
        store_timeout_seconds=settings.store_timeout_seconds,
    )
    dispatcher = GenerationDispatcher(
        orchestrator,
        worker_count=settings.generation_worker_count,
        queue_size=settings.generation_queue_size,
    )
    return GenerationService(
        uow_factory,
        orchestrator=orchestrator,
        dispatcher=dispatcher,
        artifact_store=artifact_store,
        model_used=settings.replicate_model_version,
        max_upload_bytes=settings.max_upload_bytes,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    Handles startup and shutdown tasks:
    - Startup: Configure logging, initialize database session factory, wire the
      generation pipeline, recover interrupted generations, start workers
    - Shutdown: Stop workers

    Workers automatically restart on failure.
    """
    settings = Settings()  # type: ignore[call-arg]

    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)
    generation_service = build_generation_service(settings, uow_factory)
    dispatcher = generation_service.dispatcher

    # Store in app.state for access in routes
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.uow_factory = uow_factory
    app.state.generation_service = generation_service

    shutdown_event = asyncio.Event()
    worker_tasks: set[asyncio.Task] = set()

    for index in range(dispatcher.worker_count):
        create_resilient_worker(
            dispatcher.run_worker, f"generation-{index + 1}", shutdown_event, worker_tasks
        )

    # Workers are running, so re-submitted generations are drained as they are queued
    try:
        failed, resubmitted = await recover_interrupted_generations(uow_factory, dispatcher)
        logger.info(
            "startup.recovery_completed",
            orphaned_failed=failed,
            pending_resubmitted=resubmitted,
        )
    except Exception as e:
        # Log error but don't prevent startup - new requests can still be served
        logger.error(
            "startup.recovery_failed",
            error=str(e),
            error_type=type(e).__name__,
        )

    logger.info(
        "application.startup",
        db_url=settings.database_url.split("@")[-1],
        workers=dispatcher.worker_count,
    )

    yield

    logger.info("application.shutdown", queued=dispatcher.pending_count)
    shutdown_event.set()

    tasks = list(worker_tasks)
    for task in tasks:
        task.cancel()

    await asyncio.gather(*tasks, return_exceptions=True)


def create_app() -> FastAPI:
    """Create and configure FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    settings = Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="Pixcraft Backend API",
        description="Asynchronous AI image generation",
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

    app.include_router(generations.router)  # prefix="/api/generations" in definition
    app.include_router(accounts.router)  # prefix="/api/accounts" in definition

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
