"""
Thumbnail Studio - FastAPI Backend
Main application entry point with health check and API routing.
"""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

from config import settings, validate_security_settings
from database import async_session_maker, engine, Base
import models  # noqa: F401
from routers import (
    health,
    thumbnails,
    templates,
    subscriptions,
    credits,
    media,
)
from services.errors import ThumbnailServiceError
from services.generation_queue import recover_stalled_generations, release_orphaned_reservations
from services.storage import get_artifact_storage
from services.templates import ensure_default_templates
from services.thumbnails import sweep_orphaned_artifacts


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Thumbnail Studio API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    try:
        async with async_session_maker() as db:
            seeded = await ensure_default_templates(db)
        if seeded:
            print(f"🎨 Seeded {seeded} built-in templates.")
    except Exception as exc:
        print(f"⚠️ Template seeding skipped: {exc}")
    try:
        recovered = await recover_stalled_generations()
        if recovered:
            print(f"♻️ Refunded {recovered} stalled generations after startup.")
    except Exception as exc:
        print(f"⚠️ Stalled generation recovery skipped: {exc}")
    try:
        released = await release_orphaned_reservations()
        if released:
            print(f"♻️ Released {released} orphaned credit reservations.")
    except Exception as exc:
        print(f"⚠️ Orphaned reservation release skipped: {exc}")
    try:
        async with async_session_maker() as db:
            swept = await sweep_orphaned_artifacts(db, get_artifact_storage())
        if swept:
            print(f"🧹 Removed {swept} unreferenced artifacts.")
    except Exception as exc:
        print(f"⚠️ Artifact sweep skipped: {exc}")
    yield
    # Shutdown
    print("👋 Shutting down API...")


app = FastAPI(
    title="Thumbnail Studio API",
    description="Generate video thumbnails from templates, billed against a credit ledger",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ThumbnailServiceError)
async def thumbnail_service_error_handler(request: Request, exc: ThumbnailServiceError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(thumbnails.router, prefix="/thumbnails", tags=["Thumbnails"])
app.include_router(templates.router, prefix="/templates", tags=["Templates"])
app.include_router(subscriptions.router, prefix="/subscriptions", tags=["Subscriptions"])
app.include_router(credits.router, prefix="/credits", tags=["Credits"])
app.include_router(media.router, prefix="/media", tags=["Media"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Thumbnail Studio API",
        "version": "0.1.0",
        "status": "running"
    }
