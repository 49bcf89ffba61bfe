"""
API routes for community statistics, cache diagnostics and reconciliation.
"""

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException
from starlette.concurrency import run_in_threadpool

from community_votes.dependencies import (
    get_engine, get_reconciliation_scheduler, require_api_key
)
from community_votes.engine import VoteEngine
from community_votes.models import (
    CacheStatsResponse, CommunityStats, HealthResponse, ReconciliationResultResponse
)
from community_votes.scheduler import ReconciliationScheduler


router = APIRouter(tags=["Stats"])


# =============================================================================
# Community Stats
# =============================================================================


@router.get("/stats", response_model=CommunityStats)
async def get_stats(
    refresh: bool = False,
    engine: VoteEngine = Depends(get_engine)
) -> CommunityStats:
    """
    Get community-wide counters.

    Served from cache for up to the configured TTL; ``refresh=true``
    forces a fresh read (which then repopulates the cache).
    """
    return await engine.get_stats(refresh=refresh)


# =============================================================================
# Cache
# =============================================================================


@router.get("/cache/stats", response_model=CacheStatsResponse)
def get_cache_stats(engine: VoteEngine = Depends(get_engine)) -> CacheStatsResponse:
    """Diagnostic view of the read cache and in-flight requests."""
    return engine.cache_stats()


@router.post("/cache/clear", response_model=CacheStatsResponse,
             dependencies=[Depends(require_api_key)])
def clear_cache(engine: VoteEngine = Depends(get_engine)) -> CacheStatsResponse:
    """
    Drop every cached read.

    Requires API key if configured.
    """
    engine.clear_cache()
    return engine.cache_stats()


# =============================================================================
# Reconciliation
# =============================================================================


@router.post("/reconciliation/run", response_model=ReconciliationResultResponse,
             dependencies=[Depends(require_api_key)])
async def trigger_reconciliation(
    scheduler: ReconciliationScheduler = Depends(get_reconciliation_scheduler)
):
    """
    Manually recompute vote aggregates from individual votes.

    In production this runs on a schedule; use this endpoint after a
    manual data fix. Requires API key if configured.
    """
    result = await scheduler.run_reconciliation()
    if result is None:
        raise HTTPException(status_code=409, detail="Reconciliation already in progress")
    if "error" in result:
        raise HTTPException(status_code=500, detail=result["error"])

    return ReconciliationResultResponse(
        success=result["success"],
        posts_checked=result["posts_checked"],
        posts_corrected=result["posts_corrected"],
        duration_seconds=result["duration_seconds"],
        errors=result.get("errors", []),
        completed_at=datetime.fromisoformat(result["completed_at"])
    )


@router.get("/reconciliation/status")
def get_reconciliation_status(
    scheduler: ReconciliationScheduler = Depends(get_reconciliation_scheduler)
):
    """Get the status of the reconciliation scheduler and its last run."""
    return scheduler.get_status()


# =============================================================================
# Health Check
# =============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(
    engine: VoteEngine = Depends(get_engine),
    scheduler: ReconciliationScheduler = Depends(get_reconciliation_scheduler)
):
    """
    Health check endpoint.

    Returns service health status and cache statistics.
    """
    db_connected = await run_in_threadpool(engine.store.ping)

    return HealthResponse(
        status="healthy" if db_connected else "degraded",
        version=engine.settings.app_version,
        database_connected=db_connected,
        cache=engine.cache_stats(),
        last_reconciliation=scheduler.last_run
    )
