"""
Vote ledger: one vote per voter per post, reflected in the post aggregate.
"""

import logging
from typing import List, Optional

from starlette.concurrency import run_in_threadpool

from community_votes.models import VoteCategory, VoteOutcome, VoteRecord
from community_votes.store import StoreAdapter


logger = logging.getLogger(__name__)


class VoteLedger:
    """
    Applies votes through the store's transactional vote write.

    Resubmitting the same category is a no-op that still returns the current
    aggregate; changing category moves one count between categories and
    leaves the total alone. Because every call re-reads the existing vote,
    a submission that failed with VoteConflict can simply be retried.
    """

    def __init__(self, store: StoreAdapter):
        self.store = store

    async def submit_vote(self, post_id: int, voter_id: str, category) -> VoteOutcome:
        """
        Record ``voter_id``'s vote on ``post_id``.

        Args:
            post_id: Target post
            voter_id: Identity of the voter
            category: VoteCategory or a canonical/legacy label

        Raises:
            InvalidCategory: before any store call, for unknown labels
            PostNotFound: the post does not exist (nothing written)
            VoteConflict: a concurrent writer changed the same vote
            StoreUnavailable: the store could not be reached
        """
        category = VoteCategory.parse(category)
        outcome = await run_in_threadpool(self.store.apply_vote, post_id, voter_id, category)
        if not outcome.changed:
            logger.debug(f"Duplicate vote ignored: post {post_id} voter {voter_id}")
        return outcome

    async def retract_vote(self, post_id: int, voter_id: str) -> VoteOutcome:
        """Remove the voter's vote and its count from the aggregate."""
        return await run_in_threadpool(self.store.delete_vote, post_id, voter_id)

    async def get_user_vote(self, post_id: int, voter_id: str) -> Optional[VoteRecord]:
        return await run_in_threadpool(self.store.get_vote, post_id, voter_id)

    async def list_votes_by_voter(
        self, voter_id: str, limit: int = 50, offset: int = 0
    ) -> List[VoteRecord]:
        return await run_in_threadpool(self.store.list_votes_by_voter, voter_id, limit, offset)
