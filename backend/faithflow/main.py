"""FastAPI application entry point"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from faithflow.api import billing, checkout, refunds, webhooks
from faithflow.core.config import settings
from faithflow.core.errors import BillingError
from faithflow.core.logging import setup_logging
from faithflow.db.redis import get_redis_client
from faithflow.db.session import init_db

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    # Startup
    logger.info(f"Starting FaithFlow billing ({settings.ENVIRONMENT})")
    logger.info("Initializing database...")
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    logger.info("Testing Redis connection...")
    try:
        get_redis_client().ping()
        logger.info("Redis connection successful")
    except Exception as e:
        # Realtime and caching degrade gracefully without Redis
        logger.warning(f"Redis connection failed: {e}")

    tasks = []
    if settings.SCHEDULER_ENABLED:
        from faithflow.tasks.scheduler import start_scheduler
        tasks = start_scheduler()
        logger.info(f"Started {len(tasks)} scheduler tasks")

    yield

    # Shutdown
    logger.info("Shutting down...")
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


# Create FastAPI app
app = FastAPI(
    title="FaithFlow Billing",
    description="Giving, ticketing and platform subscription billing",
    version="1.0.0",
    lifespan=lifespan
)

# Include routers
app.include_router(checkout.router)
app.include_router(refunds.router)
app.include_router(webhooks.router)
app.include_router(billing.router)


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    """Render service-layer errors as {"error": message}"""
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"}
    )


# Prometheus metrics endpoint
@app.get("/metrics")
def metrics_endpoint():
    """Prometheus metrics endpoint"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# Health check endpoint
@app.get("/health")
def health_check():
    """Health check endpoint"""
    return {"status": "healthy"}
