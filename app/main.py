from contextlib import asynccontextmanager
from pathlib import Path
import logging

from fastapi import FastAPI, Request

from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.config import settings, setup_logging
from app.dependencies import CoreServices, create_services
from app.exceptions import CatalogServiceError
from app.services.playlist_cache import GENERATOR_SOURCE_KEY
from app.utils.file_operations import cleanup_temp_dir

from app.routers import main_router


setup_logging()
logger = logging.getLogger(__name__)


async def bootstrap(services: CoreServices) -> None:
    """Apply script and playlist configuration from settings.

    Every step is independent: a failing download is logged and the
    service still starts, serving whatever data becomes available later.
    """
    config = services.settings

    if config.resolver_script_url:
        try:
            await services.resolver.acquire(config.resolver_script_url)
            await services.resolver.validate()
        except CatalogServiceError as e:
            logger.error(f"Resolver script initialization failed: {e}")
        if config.resolver_update_interval:
            services.resolver.schedule_recurring(config.resolver_update_interval)

    source = config.playlist_url
    if config.generator_script_url:
        try:
            await services.generator.acquire(config.generator_script_url)
            if config.playlist_url is None:
                source = GENERATOR_SOURCE_KEY
                services.playlist_cache.configured_source = source
            await services.generator.execute()
        except CatalogServiceError as e:
            logger.error(f"Generator script initialization failed: {e}")
        if config.generator_update_interval:
            services.generator.schedule_recurring(config.generator_update_interval)

    if source:
        try:
            await services.playlist_cache.rebuild(source)
        except CatalogServiceError as e:
            logger.error(f"Initial playlist build failed: {e}")

    services.playlist_cache.start_background_refresh(config.cache_update_interval_ms)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events"""
    logger.info("Starting Live TV Catalog Service...")

    try:
        cleanup_temp_dir(Path(settings.temp_dir))

        services = create_services(settings)
        app.state.services = services
        services.registry.start()
        await bootstrap(services)

        logger.info("Live TV Catalog Service started successfully")
    except Exception as e:
        logger.error(f"Failed to start Live TV Catalog Service: {e}", exc_info=True)
        raise

    yield

    logger.info("Shutting down Live TV Catalog Service...")
    try:
        services.shutdown()
        logger.info("Scheduler stopped")
    except Exception as e:
        logger.error(f"Error during scheduler shutdown: {e}", exc_info=True)

    logger.info("Live TV Catalog Service stopped")


app = FastAPI(
    title="Live TV Catalog Service",
    version="0.1.0",
    lifespan=lifespan
)

app.include_router(main_router)

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Log validation errors with details"""
    logger.error(f"Validation error for {request.method} {request.url.path}")
    logger.error(f"Validation details: {exc.errors()}")

    # Create a properly serializable error response
    errors = []
    for error in exc.errors():
        error_dict = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
            "input": str(error.get("input", ""))[:100]
        }
        errors.append(error_dict)

    return JSONResponse(
        status_code=422,
        content={
            "detail": errors
        }
    )
