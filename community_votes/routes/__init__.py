"""
Routes package for the Community Votes API.
"""

from community_votes.routes.posts import router as posts_router
from community_votes.routes.votes import router as votes_router
from community_votes.routes.stats import router as stats_router

__all__ = ["posts_router", "votes_router", "stats_router"]
