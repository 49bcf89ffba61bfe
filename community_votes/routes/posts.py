"""
API routes for submitting and listing posts.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from community_votes.dependencies import get_engine
from community_votes.engine import VoteEngine
from community_votes.models import (
    BatchAggregatesRequest, BatchAggregatesResponse, CreatePostRequest,
    PostAggregateResponse, PostRecord, PostResponse, PostsPageResponse, SortMode
)


router = APIRouter(prefix="/posts", tags=["Posts"])


# =============================================================================
# Create Post
# =============================================================================


@router.post("/", response_model=PostResponse, status_code=201)
async def create_post(
    request: CreatePostRequest,
    engine: VoteEngine = Depends(get_engine)
) -> PostResponse:
    """
    Submit a link for community review.

    The new post starts with no votes and an ``unknown`` consensus.
    """
    post = await engine.create_post(
        url=request.url,
        title=request.title,
        description=request.description,
        owner_id=request.owner_id,
    )
    return post_to_response(engine, post)


# =============================================================================
# Get Posts
# =============================================================================


@router.get("/", response_model=PostsPageResponse)
async def list_posts(
    sort: SortMode = SortMode.NEWEST,
    page_size: Optional[int] = None,
    cursor: Optional[str] = None,
    engine: VoteEngine = Depends(get_engine)
) -> PostsPageResponse:
    """
    Get a page of posts.

    Pass the returned ``next_cursor`` to fetch the following page.
    ``page_size`` defaults to and is bounded by the service settings.
    """
    try:
        page = await engine.get_posts_page(sort, page_size, cursor)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return PostsPageResponse(
        posts=[post_to_response(engine, p) for p in page.posts],
        next_cursor=page.next_cursor,
        has_more=page.has_more,
    )


@router.post("/batch/aggregates", response_model=BatchAggregatesResponse)
async def get_posts_aggregates(
    request: BatchAggregatesRequest,
    engine: VoteEngine = Depends(get_engine)
) -> BatchAggregatesResponse:
    """
    Get vote aggregates for several posts in one call.

    Cached aggregates are served directly; the rest are read together.
    Ids that match no post are returned in ``missing``.
    """
    try:
        aggregates = await engine.get_posts_aggregates(request.post_ids)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return BatchAggregatesResponse(
        aggregates={
            post_id: PostAggregateResponse(
                aggregate=aggregate,
                consensus=engine.consensus(aggregate),
                trust_score=engine.trust_score(aggregate),
            )
            for post_id, aggregate in aggregates.items()
        },
        missing=[
            post_id for post_id in dict.fromkeys(request.post_ids)
            if post_id not in aggregates
        ],
    )


@router.get("/{post_id}/consensus", response_model=PostResponse)
async def get_post_consensus(
    post_id: int,
    engine: VoteEngine = Depends(get_engine)
) -> PostResponse:
    """Get a post with its current aggregate and community consensus."""
    post = await engine.get_post_consensus(post_id)
    return post_to_response(engine, post)


# =============================================================================
# Helper Functions
# =============================================================================


def post_to_response(engine: VoteEngine, post: PostRecord) -> PostResponse:
    """Convert a stored post to a response with derived consensus."""
    return PostResponse(
        id=post.id,
        url=post.url,
        title=post.title,
        description=post.description,
        owner_id=post.owner_id,
        aggregate=post.aggregate,
        consensus=engine.consensus(post.aggregate),
        trust_score=engine.trust_score(post.aggregate),
        created_at=post.created_at,
    )
