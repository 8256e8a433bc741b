"""
FastAPI Application Entry Point.

This is the main application file for the Credit Ledger Engine.
"""

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from backend.app.core.config import settings
from backend.app.api.v1.router import router as api_v1_router
from backend.app.core.dependencies import expiration_scheduler
from backend.app.core.observability import ObservabilityMiddleware, configure_logging
from backend.app.db.session import engine, Base
from backend.app.core.exceptions import (
    AppException,
    app_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    generic_exception_handler
)

# Import models to ensure they are registered with Base
from backend.app.models.audit_log import AuditLog
from backend.app.models.credit_rate_table import CreditRateTable
from backend.app.models.credit_transaction import CreditTransaction
from backend.app.models.credit_wallet import CreditWallet
from backend.app.models.dlq import DeadLetterQueue
from backend.app.models.week import Week

configure_logging(settings.log_level)
logger = logging.getLogger("credit_ledger")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for application startup/shutdown.

    1. Creates database tables on startup.
    2. Starts the daily credit expiration sweep.
    3. Stops the scheduler on shutdown.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    if settings.expiration_sweep_enabled:
        expiration_scheduler.start()
    logger.info("Credit ledger started", extra={"sweep_enabled": settings.expiration_sweep_enabled})

    yield

    expiration_scheduler.shutdown()
    await engine.dispose()


# Initialize FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.api_version,
    debug=settings.debug,
    description="Converts deposited timeshare weeks into expiring, spendable credits",
    lifespan=lifespan,
)

app.add_middleware(ObservabilityMiddleware)

# Register global exception handlers
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint.

    Returns:
        dict: Status and application information
    """
    return {
        "status": "healthy",
        "app_name": settings.app_name,
        "version": settings.api_version,
        "expiration_sweep_running": expiration_scheduler.running,
    }


# Include API v1 router
app.include_router(api_v1_router, prefix=f"/{settings.api_version}")


@app.get("/", tags=["Root"])
async def root():
    """
    Root endpoint.

    Returns:
        dict: Welcome message and API documentation links
    """
    return {
        "message": "Welcome to the Credit Ledger Engine API",
        "docs": "/docs",
        "health": "/health",
    }
