"""Export Queue - FastAPI application."""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from exportqueue.core.config import settings
from exportqueue.exports.router import router as exports_router
from exportqueue.utils.logger import configure_logging, get_logger

# Binds shared tasks to the configured Celery app so .delay() reaches the broker
from exportqueue.worker.app import app as celery_app  # noqa: F401

configure_logging(settings.log_level, settings.log_format)
logger = get_logger(__name__)


def create_app() -> FastAPI:
    application = FastAPI(title="Export Queue", version="1.0.0")

    application.add_middleware(
        CORSMiddleware,
        allow_origins=[url.strip() for url in settings.allowed_cors_urls.split(",")],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(exports_router, prefix=settings.api_prefix)

    @application.get("/health", tags=["Health"])
    def health():
        return {"status": "ok", "environment": settings.environment}

    logger.info(
        "Export Queue API ready",
        environment=settings.environment,
        storage_dir=settings.export_storage_dir,
        page_size=settings.export_page_size,
    )
    return application


app = create_app()
