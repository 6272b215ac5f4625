# ============================================================================
# Konarae - FastAPI Application Entry Point
# ============================================================================
"""
Main FastAPI application for the Konarae support-program crawler.

This module sets up:
- Logging for the API process
- CORS middleware
- Startup/shutdown handlers (schema creation, source sync, resource cleanup)
- The v1 API router

Usage:
    Docker: uvicorn konarae.main:app --host 0.0.0.0 --port 8000
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.v1 import api_router
from .config import settings
from .connectors.adapters.browser_pool import close_browser
from .connectors.scrape.crawl_service import crawl_service
from .core.shared.database_service import database_service

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("konarae.main")

# ============================================================================
# APPLICATION INITIALIZATION
# ============================================================================

app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=(
        "Konarae crawler API\n\n"
        "Collects government support-program announcements, analyzes their "
        "attachments, groups duplicates and serves hybrid search."
    ),
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

# ============================================================================
# APPLICATION EVENT HANDLERS
# ============================================================================


@app.on_event("startup")
async def startup_event() -> None:
    """Create tables and register configured sources."""
    logger.info(f"Starting {settings.api_title} v{settings.api_version} (debug={settings.debug})")
    await database_service.init_db()
    async with database_service.get_session() as session:
        await crawl_service.sync_sources(session)
    logger.info("Startup complete")


@app.on_event("shutdown")
async def shutdown_event() -> None:
    """Release the shared browser, HTTP client and database engine."""
    await close_browser()
    await crawl_service.close()
    await database_service.close()
    logger.info("Shutdown complete")


# ============================================================================
# ROUTES
# ============================================================================

app.include_router(api_router, prefix="/api/v1")
