"""
Event Registration API - Main Application Entry Point

Ticket registration and M-Pesa settlement for events:
- Admission control that never oversells capacity, even under concurrency
- STK push payments with a single-flight OAuth token cache
- Idempotent settlement of M-Pesa callbacks
- Structured logging with request correlation and Prometheus metrics
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.core.config import get_settings
from app.core.logging import setup_logging, get_logger
from app.core.metrics import metrics_endpoint
from app.api.router import api_router
from app.api.middleware import RequestLoggingMiddleware
from app.infrastructure.mpesa_client import close_mpesa_client, get_mpesa_client
from app.infrastructure.redis_client import close_redis, get_redis, get_redis_status

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle: startup and shutdown hooks."""
    setup_logging()
    logger = get_logger(__name__)

    logger.info(
        "application_starting",
        app=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        mpesa_env=settings.MPESA_ENV,
    )

    if not get_mpesa_client().is_configured:
        logger.warning("mpesa_not_configured", message="Paid registrations will fail")

    if settings.ADMISSION_STRATEGY == "redis":
        if await get_redis():
            logger.info("redis_ready")
        else:
            logger.warning("redis_unavailable", message="Admission gate fails open")

    yield

    await close_mpesa_client()
    await close_redis()
    logger.info("application_shutdown")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Event ticket registration with M-Pesa settlement and concurrency-safe admission control",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestLoggingMiddleware)

app.include_router(api_router)


@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint for Docker and load balancers."""
    return {
        "status": "healthy",
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "mpesa": {
            "environment": settings.MPESA_ENV,
            "configured": get_mpesa_client().is_configured,
        },
        "redis": await get_redis_status(),
    }


@app.get("/metrics", tags=["Health"], include_in_schema=False)
def metrics():
    return metrics_endpoint()


@app.get("/", tags=["Root"])
async def root():
    return {
        "message": f"Welcome to {settings.APP_NAME}",
        "version": settings.APP_VERSION,
        "docs": "/docs",
    }
