"""
FastAPI Application Entry Point.

This is the main application file for the Agency Dispatch Backend.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from dispatch_backend.app.core.config import settings
from dispatch_backend.app.api.v1.router import router as api_v1_router
from dispatch_backend.app.core.observability import ObservabilityMiddleware, configure_logging
from dispatch_backend.app.db.session import engine, Base
from dispatch_backend.app.core.exceptions import (
    AppException,
    app_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    generic_exception_handler
)

# Import models to ensure they are registered with Base
from dispatch_backend.app.models.agency import Agency
from dispatch_backend.app.models.pricing_agreement import PricingAgreement
from dispatch_backend.app.models.order import Order, OrderItem
from dispatch_backend.app.models.parcel import Parcel
from dispatch_backend.app.models.parcel_event import ParcelEvent
from dispatch_backend.app.models.dispatch import Dispatch
from dispatch_backend.app.models.dispatch_payment import DispatchPayment
from dispatch_backend.app.models.inter_agency_debt import InterAgencyDebt
from dispatch_backend.app.models.audit_log import AuditLog

configure_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for application startup/shutdown.

    Creates database tables on startup and disposes the engine on shutdown.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


# Initialize FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.api_version,
    debug=settings.debug,
    description="Dispatch, reception and inter-agency billing for a hierarchy of shipping agencies",
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
        "message": "Welcome to the Agency Dispatch Backend API",
        "docs": "/docs",
        "health": "/health",
    }
