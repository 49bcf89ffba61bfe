"""
FastAPI dependency providers.

The engine and scheduler are created in the app lifespan and kept on
``app.state``; routes receive them through these providers.
"""

from typing import Optional

from fastapi import Header, HTTPException, Request

from community_votes.engine import VoteEngine
from community_votes.scheduler import ReconciliationScheduler


def get_engine(request: Request) -> VoteEngine:
    return request.app.state.engine


def get_reconciliation_scheduler(request: Request) -> ReconciliationScheduler:
    return request.app.state.reconciliation


def require_api_key(request: Request, x_api_key: Optional[str] = Header(default=None)):
    """Check API key if configured."""
    settings = request.app.state.engine.settings
    if settings.api_key and x_api_key != settings.api_key:
        raise HTTPException(status_code=403, detail="Invalid API key")
