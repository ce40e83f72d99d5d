# FILE: bookcovers/routes/admin.py
"""
Admin endpoints: cover cleanup, provenance and circuit breakers
"""
import logging
from typing import Optional
from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse, PlainTextResponse

from bookcovers.errors import CleanupConfigurationError
from bookcovers.providers.registry import get_fetcher_registry
from bookcovers.services.cleanup import get_cleanup_service
from bookcovers.services.provenance import get_provenance_log
from bookcovers.services.s3_cache import get_s3_cover_cache

logger = logging.getLogger(__name__)
router = APIRouter()

_NOT_CONFIGURED = "Object storage is not configured"


@router.get("/s3-cleanup/dry-run", response_class=PlainTextResponse)
def cleanup_dry_run(
    prefix: Optional[str] = Query(default=None),
    limit: Optional[int] = Query(default=None, description="<= 0 scans everything"),
):
    """
    Scan cached covers and list the ones that do not look like front covers

    Read-only. Returns a plain-text report.
    """
    service = get_cleanup_service()
    if not service.s3_cache.configured:
        return JSONResponse(status_code=503, content={"error": _NOT_CONFIGURED})

    try:
        summary = service.perform_dry_run(prefix=prefix, limit=limit)
    except Exception as e:
        logger.error(f"[ADMIN] Cleanup dry run failed: {e}", exc_info=True)
        return JSONResponse(status_code=500, content={"error": f"Dry run failed: {e}"})

    return PlainTextResponse(summary.to_text())


@router.post("/s3-cleanup/move-flagged")
def cleanup_move_flagged(
    prefix: Optional[str] = Query(default=None),
    limit: Optional[int] = Query(default=None, description="<= 0 scans everything"),
    quarantine_prefix: Optional[str] = Query(default=None, alias="quarantinePrefix"),
):
    """
    Move flagged covers under the quarantine prefix (copy, then delete)
    """
    service = get_cleanup_service()
    if not service.s3_cache.configured:
        return JSONResponse(status_code=503, content={"error": _NOT_CONFIGURED})

    try:
        summary = service.perform_move_action(
            prefix=prefix, limit=limit, quarantine_prefix=quarantine_prefix
        )
    except CleanupConfigurationError as e:
        logger.warning(f"[ADMIN] Rejected cleanup move: {e}")
        return JSONResponse(status_code=400, content={"error": str(e)})
    except Exception as e:
        logger.error(f"[ADMIN] Cleanup move failed: {e}", exc_info=True)
        return JSONResponse(status_code=500, content={"error": f"Move action failed: {e}"})

    return JSONResponse(content=summary.model_dump(mode="json", by_alias=True))


@router.get("/provenance/recent")
async def recent_provenance(limit: int = Query(default=20, ge=1, le=100)):
    """Recent cover resolution provenance records, newest last"""
    records = get_provenance_log().get_recent(limit=limit)
    return {
        "status": "success",
        "count": len(records),
        "records": [r.model_dump(mode="json") for r in records],
    }


@router.post("/circuit-breakers/reset")
async def reset_circuit_breakers(resource: Optional[str] = Query(default=None)):
    """Close provider and object storage circuits (one resource, or all)"""
    registry = get_fetcher_registry()
    s3_cache = get_s3_cover_cache()
    registry.circuit_breaker.reset(resource)
    s3_cache.circuit_breaker.reset(resource)
    logger.info(f"[ADMIN] Circuit breakers reset ({resource or 'all'})")
    return {
        "status": "success",
        "providers": registry.circuit_status(),
        "object_storage": s3_cache.circuit_status(),
    }
