"""
Media processor worker - entry point

Starts the pipeline coordinator inside the FastAPI lifespan and serves the
health/info endpoints with uvicorn.
"""

import logging
import uvicorn
from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI

from media_processor.config.settings import settings
from media_processor.core.exceptions import ConfigurationError, general_exception_handler
from media_processor.api.v1.router import router as api_router
from media_processor.services.coordinator import PipelineCoordinator
from media_processor.services.queue.rabbitmq import RabbitMQClient
from media_processor.services.queue.topology import QueueTopology
from media_processor.services.storage.s3_store import S3ObjectStore

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format=settings.log_format,
        datefmt=settings.log_date_format,
    )
    # boto and pika are chatty at INFO
    for noisy in ("botocore", "boto3", "s3transfer", "aiormq", "aio_pika"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def build_coordinator() -> PipelineCoordinator:
    """Wire the production queue and object store clients.

    Raises:
        ConfigurationError: object store credentials missing
    """
    if not settings.storage_configured:
        raise ConfigurationError(
            "Missing required object store configuration "
            "(IDRIVE_ACCESS_KEY_ID, IDRIVE_SECRET_ACCESS_KEY, IDRIVE_BUCKET_NAME)"
        )
    topology = QueueTopology.from_settings(settings)
    queue_client = RabbitMQClient(
        settings.rabbitmq_url,
        topology,
        include_stage_queues=settings.deployment_mode == "staged",
        prefetch_count=settings.queue_prefetch,
    )
    return PipelineCoordinator(
        queue_client,
        S3ObjectStore.from_settings(settings),
        config=settings,
        topology=topology,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management"""
    coordinator: Optional[PipelineCoordinator] = getattr(app.state, "coordinator", None)
    if coordinator is None:
        coordinator = build_coordinator()
        app.state.coordinator = coordinator
    logger.info("Starting %s %s...", settings.service_name, settings.service_version)
    await coordinator.start()
    try:
        yield
    finally:
        logger.info("Shutting down %s...", settings.service_name)
        await coordinator.stop()


def create_application(coordinator: Optional[PipelineCoordinator] = None) -> FastAPI:
    """Create and configure FastAPI application"""

    app = FastAPI(
        title=settings.service_name,
        description=settings.service_description,
        version=settings.service_version,
        debug=settings.debug,
        lifespan=lifespan,
    )
    if coordinator is not None:
        app.state.coordinator = coordinator

    app.add_exception_handler(Exception, general_exception_handler)
    app.include_router(api_router)

    return app


def run() -> None:
    configure_logging()
    try:
        app = create_application(build_coordinator())
    except ConfigurationError as e:
        logger.critical("Startup aborted: %s", e.message)
        raise SystemExit(1) from e

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
