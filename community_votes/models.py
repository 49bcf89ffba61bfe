"""
Pydantic models for Community Votes API requests and responses.

The vote vocabulary is canonicalised here: older clients send
``safe``/``unsafe``, which are translated once at the boundary and never
propagated further.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from community_votes.errors import InvalidCategory


# =============================================================================
# Enums
# =============================================================================


class VoteCategory(str, Enum):
    """How a voter assesses a link."""
    TRUSTED = "trusted"
    SUSPICIOUS = "suspicious"
    UNTRUSTED = "untrusted"

    @classmethod
    def parse(cls, value) -> "VoteCategory":
        """Resolve a canonical or legacy label, raising InvalidCategory."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise InvalidCategory(value)
        normalized = value.strip().lower()
        normalized = LEGACY_CATEGORY_ALIASES.get(normalized, normalized)
        try:
            return cls(normalized)
        except ValueError:
            raise InvalidCategory(value) from None


LEGACY_CATEGORY_ALIASES = {
    "safe": VoteCategory.TRUSTED.value,
    "unsafe": VoteCategory.UNTRUSTED.value,
}


class ConsensusLabel(str, Enum):
    """Community classification of a link."""
    TRUSTED = "trusted"
    SUSPICIOUS = "suspicious"
    UNTRUSTED = "untrusted"
    UNKNOWN = "unknown"  # No votes yet


class SortMode(str, Enum):
    """Ordering for post listings."""
    NEWEST = "newest"
    POPULAR = "popular"      # Most votes first
    TRENDING = "trending"    # Most recently voted first


# =============================================================================
# Domain Models
# =============================================================================


class VoteAggregate(BaseModel):
    """Running vote totals for a post."""

    post_id: int
    trusted: int = 0
    suspicious: int = 0
    untrusted: int = 0
    total: int = 0
    last_vote_at: Optional[datetime] = None

    def counts(self) -> Dict[VoteCategory, int]:
        return {
            VoteCategory.TRUSTED: self.trusted,
            VoteCategory.SUSPICIOUS: self.suspicious,
            VoteCategory.UNTRUSTED: self.untrusted,
        }


class ConsensusResult(BaseModel):
    """Derived classification; recomputed on demand, never stored."""

    label: ConsensusLabel
    percentage: int = Field(..., ge=0, le=100)


class PostRecord(BaseModel):
    """A submitted link and its aggregate."""

    id: int
    url: str
    title: str
    description: Optional[str] = None
    owner_id: str

    aggregate: VoteAggregate

    created_at: datetime

    class Config:
        from_attributes = True


class VoteRecord(BaseModel):
    """A single voter's vote on a post."""

    id: int
    post_id: int
    voter_id: str
    category: VoteCategory
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class VoteOutcome(BaseModel):
    """Result of a committed vote write."""

    aggregate: VoteAggregate
    vote: Optional[VoteRecord] = None
    previous_category: Optional[VoteCategory] = None
    changed: bool = True


class PostsPage(BaseModel):
    """One page of posts from the store."""

    posts: List[PostRecord]
    next_cursor: Optional[str] = None
    has_more: bool = False


class CommunityStats(BaseModel):
    """Site-wide counters."""

    total_posts: int = 0
    total_votes: int = 0
    total_voters: int = 0
    total_comments: int = 0
    votes_by_category: Dict[VoteCategory, int] = Field(default_factory=dict)
    last_updated: datetime


# =============================================================================
# Request Models
# =============================================================================


class CreatePostRequest(BaseModel):
    """Request to submit a link for community review."""

    url: str = Field(..., max_length=2048, description="Link being submitted")
    title: str = Field(..., min_length=1, max_length=300)
    description: Optional[str] = Field(default=None, max_length=4000)
    owner_id: str = Field(..., min_length=1, max_length=128)

    @field_validator('url')
    @classmethod
    def validate_url(cls, v):
        """Ensure the link is an http(s) URL."""
        if not v.startswith(('http://', 'https://')):
            raise ValueError(f'Invalid URL: {v}')
        return v


class SubmitVoteRequest(BaseModel):
    """Request to vote on a post.

    ``category`` is kept as a raw string so the engine can reject unknown
    values with its own InvalidCategory condition.
    """

    voter_id: str = Field(..., min_length=1, max_length=128)
    category: str = Field(..., description="trusted, suspicious or untrusted")


class BatchAggregatesRequest(BaseModel):
    """Request for the vote aggregates of several posts at once."""

    post_ids: List[int] = Field(..., min_length=1)


# =============================================================================
# Response Models
# =============================================================================


class PostResponse(BaseModel):
    """A post with its derived consensus."""

    id: int
    url: str
    title: str
    description: Optional[str] = None
    owner_id: str
    aggregate: VoteAggregate
    consensus: ConsensusResult
    trust_score: int
    created_at: datetime


class PostsPageResponse(BaseModel):
    posts: List[PostResponse]
    next_cursor: Optional[str] = None
    has_more: bool = False


class VoteResponse(BaseModel):
    """Authoritative aggregate after a vote write."""

    post_id: int
    voter_id: str
    category: Optional[VoteCategory] = None
    previous_category: Optional[VoteCategory] = None
    changed: bool
    aggregate: VoteAggregate
    consensus: ConsensusResult
    trust_score: int


class PostAggregateResponse(BaseModel):
    aggregate: VoteAggregate
    consensus: ConsensusResult
    trust_score: int


class BatchAggregatesResponse(BaseModel):
    """Aggregates keyed by post id; ids with no post are listed in ``missing``."""

    aggregates: Dict[int, PostAggregateResponse]
    missing: List[int] = Field(default_factory=list)


class CacheStatsResponse(BaseModel):
    """Diagnostic view of the read cache."""

    entries: int
    capacity: int
    ttl_seconds: float
    in_flight: int


class ReconciliationResultResponse(BaseModel):
    success: bool
    posts_checked: int
    posts_corrected: int
    duration_seconds: float
    errors: List[str] = Field(default_factory=list)
    completed_at: datetime


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "healthy"
    version: str
    database_connected: bool
    cache: Optional[CacheStatsResponse] = None
    last_reconciliation: Optional[datetime] = None
