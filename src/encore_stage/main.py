# src/encore_stage/main.py
"""Main entry point for the Encore voting service."""

from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware

from encore_stage.api.v1 import collections_router, votes_router
from encore_stage.core.settings import settings
from encore_stage.services.feed import reset_change_feed
from encore_stage.services.trending import TrendingRefreshWorker

logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Encore API",
    description="Setlist prediction voting, live counts and trending",
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
app.include_router(votes_router, prefix="/api/v1")
app.include_router(collections_router, prefix="/api/v1")


@app.on_event("startup")
async def on_startup() -> None:
    if settings.trending_refresh_enabled:
        worker = TrendingRefreshWorker()
        await worker.start()
        app.state.trending_worker = worker
        logger.info("Trending refresh every %.1fs", worker.interval)
    else:
        app.state.trending_worker = None


@app.on_event("shutdown")
async def on_shutdown() -> None:
    worker: TrendingRefreshWorker | None = getattr(app.state, "trending_worker", None)
    if worker:
        await worker.stop()
    reset_change_feed()


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint to verify the service is running."""
    return {"status": "ok"}


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with basic information about the API."""
    return {
        "name": "Encore API",
        "version": settings.app_version,
        "description": "Setlist prediction voting, live counts and trending",
        "docs": "/docs",
        "redoc": "/redoc",
    }


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.DEBUG if settings.debug else logging.INFO)
    uvicorn.run("encore_stage.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
