"""Main FastAPI application for the MobilePay bridge"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import structlog

from mobilepay_bridge import __version__
from mobilepay_bridge.api.errors import register_exception_handlers
from mobilepay_bridge.api.routes import admin, agreements, webhooks
from mobilepay_bridge.clients.mobilepay_client import get_mobilepay_client
from mobilepay_bridge.config import settings
from mobilepay_bridge.database import models  # noqa: F401  registers tables on Base
from mobilepay_bridge.database.database import engine, Base
from mobilepay_bridge.monitoring.logging_config import configure_logging
from mobilepay_bridge.monitoring.metrics import router as metrics_router
from mobilepay_bridge.monitoring.sentry_config import init_sentry

configure_logging()
logger = structlog.get_logger(__name__)

# Initialize Sentry if DSN is provided
init_sentry()

app = FastAPI(
    title="MobilePay Bridge API",
    description="MobilePay recurring payments for the subscription platform",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

app.include_router(agreements.router, prefix="/api/v1", tags=["agreements"])
app.include_router(webhooks.router, prefix="/api/v1", tags=["webhooks"])
app.include_router(admin.router, prefix="/api/v1", tags=["admin"])
app.include_router(metrics_router)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "service": "mobilepay-bridge", "environment": settings.APP_ENV}


@app.on_event("startup")
async def startup_event():
    logger.info("mobilepay_bridge_starting", environment=settings.APP_ENV)
    # Tests create their own schema on an in-memory engine
    if settings.APP_ENV != "test":
        Base.metadata.create_all(bind=engine)


@app.on_event("shutdown")
async def shutdown_event():
    await get_mobilepay_client().close()
    logger.info("mobilepay_bridge_shutting_down")
