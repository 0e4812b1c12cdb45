from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
import uvicorn
from fastapi import FastAPI

from image_ingest.api.router import router
from image_ingest.config import Settings, settings
from image_ingest.core.exceptions import register_exception_handlers
from image_ingest.core.logging import setup_logging
from image_ingest.core.middleware import RequestTimeoutMiddleware
from image_ingest.services import image_fetcher
from image_ingest.services.image_storage import ImageStorage

logger = structlog.get_logger()


def create_app(config: Settings | None = None) -> FastAPI:
    config = config or settings
    storage = ImageStorage.from_settings(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        storage.ensure_dirs()
        logger.info(
            "server_started",
            images_dir=str(storage.images_dir),
            small_images_dir=str(storage.small_images_dir),
        )
        yield
        await image_fetcher.close_client()
        logger.info("server_shutdown")

    app = FastAPI(
        title=config.app_name,
        debug=config.debug,
        lifespan=lifespan,
        redirect_slashes=False,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.settings = config
    app.state.storage = storage

    app.add_middleware(RequestTimeoutMiddleware, timeout=config.request_timeout)
    register_exception_handlers(app)
    app.include_router(router)
    return app


app = create_app()


def run() -> None:
    setup_logging(settings.log_level, json_logs=not settings.debug)
    logger.info("server_starting", host=settings.host, port=settings.port)
    # uvicorn drains in-flight requests on SIGINT/SIGTERM and exits non-zero if the bind fails.
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
        timeout_graceful_shutdown=settings.graceful_shutdown_timeout,
    )


if __name__ == "__main__":
    run()
