"""
API routes for voting on posts.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query

from community_votes.dependencies import get_engine
from community_votes.engine import VoteEngine
from community_votes.errors import VoteConflict
from community_votes.models import (
    SubmitVoteRequest, VoteOutcome, VoteRecord, VoteResponse
)


logger = logging.getLogger(__name__)

router = APIRouter(tags=["Votes"])


# =============================================================================
# Submit/Update Vote
# =============================================================================


@router.post("/posts/{post_id}/votes", response_model=VoteResponse)
async def submit_vote(
    post_id: int,
    request: SubmitVoteRequest,
    engine: VoteEngine = Depends(get_engine)
) -> VoteResponse:
    """
    Vote on a post as trusted, suspicious or untrusted.

    Each user has one vote per post. Voting again with a different
    category changes the existing vote; voting again with the same
    category changes nothing. ``safe`` and ``unsafe`` are accepted as
    aliases of ``trusted`` and ``untrusted``.

    A write that loses a race with another writer is retried once.
    """
    try:
        outcome = await engine.submit_vote(post_id, request.voter_id, request.category)
    except VoteConflict:
        logger.warning(f"Vote conflict on post {post_id}, retrying once")
        outcome = await engine.submit_vote(post_id, request.voter_id, request.category)
    return _outcome_to_response(engine, post_id, request.voter_id, outcome)


# =============================================================================
# Get Votes
# =============================================================================


@router.get("/posts/{post_id}/votes/{voter_id}", response_model=VoteRecord)
async def get_user_vote(
    post_id: int,
    voter_id: str,
    engine: VoteEngine = Depends(get_engine)
) -> VoteRecord:
    """Get a specific user's vote on a specific post."""
    vote = await engine.get_user_vote(post_id, voter_id)
    if not vote:
        raise HTTPException(status_code=404, detail="Vote not found")
    return vote


@router.get("/voters/{voter_id}/votes", response_model=List[VoteRecord])
async def get_votes_by_voter(
    voter_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    engine: VoteEngine = Depends(get_engine)
) -> List[VoteRecord]:
    """Get all votes cast by a specific user, most recent first."""
    return await engine.list_votes_by_voter(voter_id, limit, offset)


# =============================================================================
# Delete Vote
# =============================================================================


@router.delete("/posts/{post_id}/votes/{voter_id}", response_model=VoteResponse)
async def retract_vote(
    post_id: int,
    voter_id: str,
    engine: VoteEngine = Depends(get_engine)
) -> VoteResponse:
    """Withdraw a user's vote from a post."""
    outcome = await engine.retract_vote(post_id, voter_id)
    return _outcome_to_response(engine, post_id, voter_id, outcome)


# =============================================================================
# Helper Functions
# =============================================================================


def _outcome_to_response(
    engine: VoteEngine, post_id: int, voter_id: str, outcome: VoteOutcome
) -> VoteResponse:
    return VoteResponse(
        post_id=post_id,
        voter_id=voter_id,
        category=outcome.vote.category if outcome.vote else None,
        previous_category=outcome.previous_category,
        changed=outcome.changed,
        aggregate=outcome.aggregate,
        consensus=engine.consensus(outcome.aggregate),
        trust_score=engine.trust_score(outcome.aggregate),
    )
