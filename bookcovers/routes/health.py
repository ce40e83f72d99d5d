# FILE: bookcovers/routes/health.py
"""
Health check endpoint
"""
import logging
from fastapi import APIRouter

from bookcovers import __version__
from bookcovers.providers.registry import get_fetcher_registry
from bookcovers.services.local_cache import get_local_cover_cache
from bookcovers.services.orchestrator import get_cover_orchestrator
from bookcovers.services.s3_cache import get_s3_cover_cache

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("")
async def health_check():
    """
    Health check endpoint
    Reports configured providers, storage tiers and circuit breaker state
    """
    registry = get_fetcher_registry()
    s3_cache = get_s3_cover_cache()

    return {
        "status": "healthy",
        "version": __version__,
        "available_providers": [s.value for s in registry.fetchers],
        "provider_order": [s.value for s in registry.provider_order],
        "local_cache": get_local_cover_cache().get_stats(),
        "object_storage_configured": s3_cache.configured,
        "background_refreshes": len(get_cover_orchestrator().in_flight()),
        "circuit_breakers": {
            "providers": registry.circuit_status(),
            "object_storage": s3_cache.circuit_status(),
        },
    }
