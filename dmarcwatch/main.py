from fastapi import FastAPI
import logging
from contextlib import asynccontextmanager

from dmarcwatch.config import get_settings
from dmarcwatch.database import check_db_connection, init_db
from dmarcwatch.api.routes import router as api_router
from dmarcwatch.metrics import metrics_router, metrics_middleware
from dmarcwatch.logging_config import setup_logging, log_requests_middleware
from dmarcwatch.error_handlers import register_error_handlers

settings = get_settings()

setup_logging(
    log_level=settings.log_level,
    log_dir=settings.log_dir,
    app_name="dmarcwatch-api",
    enable_json=settings.log_json
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown tasks"""
    logger.info("Starting application...")
    init_db()
    yield
    logger.info("Shutting down application...")


app = FastAPI(
    title=settings.app_name,
    description="DMARC aggregate report ingestion and policy advice",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

register_error_handlers(app)

if settings.enable_request_logging:
    app.middleware("http")(log_requests_middleware)

app.middleware("http")(metrics_middleware)

app.include_router(api_router)
app.include_router(metrics_router)


@app.get("/health")
async def health():
    db_connected = check_db_connection()
    return {
        "status": "healthy" if db_connected else "unhealthy",
        "database": "connected" if db_connected else "disconnected",
    }
