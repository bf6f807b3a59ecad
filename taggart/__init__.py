import logging
import os
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from .config import ConfigStore
from .database import make_engine, make_session_factory
from .errors import (
    ConflictError,
    MediaProcessingError,
    NoMatchesError,
    NotFoundError,
    PartialFailureError,
    StorageError,
    TaggartError,
    ValidationError,
)
from .media import DefaultThumbnailRenderer, FFmpegMediaProcessor, MediaProcessor, ThumbnailRenderer

__version__ = "1.0.0"

logger = logging.getLogger(__name__)

# Most specific first; the first isinstance match wins.
ERROR_STATUS = [
    (ValidationError, 400),
    (ConflictError, 409),
    (NotFoundError, 404),
    (NoMatchesError, 404),
    (MediaProcessingError, 502),
    (PartialFailureError, 500),
    (StorageError, 500),
]


def status_for(error: TaggartError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(error, error_type):
            return status
    return 500


async def taggart_error_handler(request: Request, exc: TaggartError) -> JSONResponse:
    status = status_for(exc)
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    body = {"detail": str(exc)}
    if isinstance(exc, NotFoundError) and exc.missing:
        body["missing"] = exc.missing
    return JSONResponse(body, status_code=status)


def create_app(
    config_store: Optional[ConfigStore] = None,
    media_processor: Optional[MediaProcessor] = None,
    thumbnail_renderer: Optional[ThumbnailRenderer] = None,
) -> FastAPI:
    """
    Builds the application. Configuration is loaded once here; routes read the
    current snapshot per request so an alias reload applies immediately.
    """
    if config_store is None:
        config_store = ConfigStore()
        config_store.load()
    settings = config_store.current

    app = FastAPI(
        title=settings.instance_name,
        description="A personal media catalogue with category/value tagging.",
        version=__version__,
    )

    # --- Database Configuration (SQLite) ---
    engine = make_engine(settings.database_url)
    app.state.engine = engine
    app.state.SessionLocal = make_session_factory(engine)
    app.state.config_store = config_store
    app.state.media_processor = media_processor or FFmpegMediaProcessor(timeout=settings.media_timeout)
    app.state.thumbnail_renderer = thumbnail_renderer or DefaultThumbnailRenderer(timeout=settings.media_timeout)

    # --- Static Files ---
    os.makedirs(settings.thumbnail_dir, exist_ok=True)
    app.mount("/uploads", StaticFiles(directory=settings.upload_root), name="uploads")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(TaggartError, taggart_error_handler)

    from .routes import router
    app.include_router(router)

    logger.info("Database: %s", settings.database_path)
    logger.info("Upload directory: %s", settings.upload_root)
    return app
