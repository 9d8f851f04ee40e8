# src/rolegate/main.py
"""Main entry point for the rolegate application."""

from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware

from rolegate.api.v1 import verification_router
from rolegate.core.settings import settings
from rolegate.db.session import create_tables
from rolegate.services.assets import get_asset_client
from rolegate.services.platform import get_platform_client
from rolegate.services.reconciler import ReconcileWorker

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="rolegate API",
    description="Wallet ownership verification and role gating",
    version=settings.app_version,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)

# Add GZip middleware for compression
app.add_middleware(GZipMiddleware)

# Include API routers
app.include_router(verification_router, prefix="/api/v1")


@app.on_event("startup")
async def on_startup() -> None:
    if settings.auto_create_tables:
        create_tables()
    if settings.reconcile_enabled:
        worker = ReconcileWorker(get_asset_client(), get_platform_client())
        await worker.start()
        app.state.reconcile_worker = worker
        logger.info("Role reconciliation every %.0fs", worker.interval_seconds)
    else:
        app.state.reconcile_worker = None


@app.on_event("shutdown")
async def on_shutdown() -> None:
    worker: ReconcileWorker | None = getattr(app.state, "reconcile_worker", None)
    if worker:
        await worker.stop()
    await get_asset_client().close()
    await get_platform_client().close()


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint to verify the service is running."""
    return {"status": "ok"}


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with basic information about the API."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "description": "Wallet ownership verification and role gating",
        "docs": "/docs",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("rolegate.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
