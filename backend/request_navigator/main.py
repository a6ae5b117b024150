"""
CRA Request Navigator - FastAPI application

Serves the request workflow API and the mail integration admin API. Unless
SCHEDULER_ENABLED is false, the same process runs the outbox dispatcher and
the admin digest jobs.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config.settings import settings
from .api.routes import api_router
from .api.middleware import CorrelationIdMiddleware, CORRELATION_HEADER, register_error_handlers
from .repositories.mongo_client import create_indexes, close_connection, health_check
from .scheduler.dispatch_scheduler import start_scheduler, stop_scheduler, scheduler_status
from .utils.logger import setup_logging, get_logger

setup_logging()
logger = get_logger(__name__)

APP_NAME = "CRA Request Navigator"
APP_VERSION = "1.0.0"
API_PREFIX = "/api/v1"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: ensure indexes (the outbox dedupe key and the claim queries
    rely on them), then start the dispatch jobs.
    Shutdown: stop the jobs before closing the Mongo client they use.
    """
    logger.info(
        f"Starting {APP_NAME} {APP_VERSION}",
        extra={"status": settings.environment}
    )

    try:
        create_indexes()
    except Exception as e:
        logger.error(f"Failed to create indexes: {e}")

    if settings.scheduler_enabled:
        try:
            start_scheduler()
        except Exception as e:
            logger.error(f"Failed to start notification scheduler: {e}")
    else:
        logger.info("Notification scheduler disabled for this process")

    yield

    stop_scheduler()
    close_connection()
    logger.info(f"{APP_NAME} stopped")


def create_app() -> FastAPI:
    """Build the application; tests call this and override the service dependencies."""
    docs_enabled = settings.debug
    application = FastAPI(
        title=APP_NAME,
        description="Customer request workflow with Microsoft 365 status notifications",
        version=APP_VERSION,
        lifespan=lifespan,
        docs_url="/api/docs" if docs_enabled else None,
        redoc_url="/api/redoc" if docs_enabled else None,
        openapi_url="/api/openapi.json" if docs_enabled else None,
    )

    allow_all = settings.cors_origins.strip() == "*"
    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if allow_all else settings.cors_origins_list,
        # must be False together with a wildcard origin
        allow_credentials=not allow_all,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[CORRELATION_HEADER],
    )
    application.add_middleware(CorrelationIdMiddleware)

    register_error_handlers(application)
    application.include_router(api_router, prefix=API_PREFIX)

    @application.get("/health", tags=["Health"])
    async def health():
        """Database connectivity and whether this process dispatches notifications"""
        mongo = health_check()
        return {
            "status": "healthy" if mongo.get("status") == "healthy" else "degraded",
            "version": APP_VERSION,
            "environment": settings.environment,
            "mongo": mongo,
            "scheduler": scheduler_status(),
        }

    @application.get("/", tags=["Health"])
    async def root():
        return {
            "name": APP_NAME,
            "version": APP_VERSION,
            "api": API_PREFIX,
            "docs": "/api/docs" if docs_enabled else None,
        }

    return application


app = create_app()
