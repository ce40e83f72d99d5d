# FILE: bookcovers/app.py
"""
FastAPI application entry point for the book cover engine
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from bookcovers import __version__
from bookcovers.config import get_settings
from bookcovers.providers.registry import get_fetcher_registry
from bookcovers.routes import admin, health
from bookcovers.services.io_pool import shutdown_io_executor
from bookcovers.services.local_cache import get_local_cover_cache
from bookcovers.services.orchestrator import get_cover_orchestrator

logger = logging.getLogger(__name__)
settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown"""
    logger.info(f"Starting book cover engine v{__version__}")

    removed = get_local_cover_cache().purge_expired()
    logger.info(f"Local cover cache ready ({removed} expired files purged)")

    if not settings.s3_configured:
        logger.warning("Object storage not configured; S3 tier and cleanup endpoints disabled")

    yield

    # Shutdown
    logger.info("Shutting down book cover engine")
    await get_cover_orchestrator().shutdown()
    await get_fetcher_registry().close()
    shutdown_io_executor(wait=False)


app = FastAPI(
    title="Book Cover Engine API",
    description="Book cover resolution, caching and cleanup",
    version=__version__,
    lifespan=lifespan
)


# Exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "detail": str(exc)}
    )

# Include routers
app.include_router(health.router, prefix="/health", tags=["health"])
app.include_router(admin.router, prefix="/admin", tags=["admin"])

# Cached cover files
app.mount(
    f"/{settings.cover_cache_dir_name.strip('/')}",
    StaticFiles(directory=settings.cover_cache_dir, check_dir=False),
    name="cover-cache",
)


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "service": "Book Cover Engine",
        "version": __version__,
        "status": "active"
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "bookcovers.app:app",
        host=settings.backend_host,
        port=settings.backend_port,
        reload=settings.environment == "development"
    )
