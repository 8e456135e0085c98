"""Main FastAPI application - lead deduplication & merge engine."""

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
import logging

from app.config import settings
from app.database import Base, dispose_engine
from app.errors import (
    DedupeError,
    dedupe_error_handler,
    unhandled_error_handler,
    validation_error_handler,
)

# Import models to register them with SQLAlchemy
from app.models import User, ScrapedLead, LeadDuplicate, AuditLog  # noqa: F401

from app.routers import dedupe_routes

# Configure logging
logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Lead Deduplication API",
    description="Detects, records and merges duplicate lead records",
    version="1.0.0",
    redirect_slashes=False
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, specify your frontend domain
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Error envelopes: {"success": false, "error": "..."}
app.add_exception_handler(DedupeError, dedupe_error_handler)
app.add_exception_handler(RequestValidationError, validation_error_handler)
app.add_exception_handler(Exception, unhandled_error_handler)

app.include_router(dedupe_routes.router)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT,
        "registered_tables": sorted(Base.metadata.tables.keys()),
    }


@app.on_event("startup")
async def startup_event():
    """Run on application startup."""
    logger.info("Starting Lead Deduplication API...")
    logger.info(f"Registered {len(Base.metadata.tables)} SQLAlchemy tables")
    logger.info(
        f"Working-set caps: cross-batch={settings.DEDUPE_CROSS_BATCH_LIMIT}, "
        f"sweep={settings.DEDUPE_FULL_SWEEP_LIMIT}; "
        f"merge lock {'enabled' if settings.DEDUPE_MERGE_LOCK_ENABLED else 'disabled'}"
    )


@app.on_event("shutdown")
async def shutdown_event():
    """Run on application shutdown."""
    logger.info("Shutting down Lead Deduplication API...")
    await dispose_engine()
