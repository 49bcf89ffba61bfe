"""
Vote engine: the read cache, request deduplication and the vote ledger
composed into the operations the HTTP layer uses.

One engine is built per process in the app lifespan and handed to routes
through ``get_engine``; nothing here is module-global.
"""

import logging
import time
from typing import Callable, Dict, List, Optional, Union

from starlette.concurrency import run_in_threadpool

from community_votes.cache import BoundedCache, make_key
from community_votes.config import Settings, get_settings
from community_votes.consensus import classify, trust_score as weighted_trust_score
from community_votes.dedup import RequestDeduplicator
from community_votes.errors import PostNotFound
from community_votes.ledger import VoteLedger
from community_votes.models import (
    CacheStatsResponse, CommunityStats, ConsensusResult, PostRecord,
    PostsPage, SortMode, VoteAggregate, VoteCategory, VoteOutcome, VoteRecord
)
from community_votes.store import StoreAdapter


logger = logging.getLogger(__name__)

POSTS_PREFIX = "posts"
STATS_KEY = "stats"
VOTE_PREFIX = "vote"
AGGREGATE_PREFIX = "aggregate"

CachedValue = Union[PostsPage, CommunityStats, VoteAggregate]


class VoteEngine:
    """
    Public face of the voting and caching engine.

    Reads go cache -> deduplicated store call -> cache. Writes go through
    the ledger and then drop every cached page, aggregate and the stats
    entry.
    """

    def __init__(
        self,
        store: StoreAdapter,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.ledger = VoteLedger(store)
        self.cache: BoundedCache[CachedValue] = BoundedCache(
            max_entries=self.settings.cache_max_entries,
            ttl_seconds=self.settings.cache_ttl_seconds,
            clock=clock,
        )
        self.dedup = RequestDeduplicator()
        # Bumped by every write; reads begun under an older generation
        # neither populate the cache nor get joined by newer readers.
        self._generation = 0

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_posts_page(
        self,
        sort_mode: Union[SortMode, str] = SortMode.NEWEST,
        page_size: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> PostsPage:
        """
        Fetch one page of posts.

        Only the first page (``cursor is None``) is served from and written
        to the cache; later pages are deduplicated but always fetched.
        """
        sort_mode = SortMode(sort_mode)
        if page_size is None:
            page_size = self.settings.default_page_size
        if not 1 <= page_size <= self.settings.max_page_size:
            raise ValueError(
                f"page_size must be between 1 and {self.settings.max_page_size}"
            )

        key = make_key(POSTS_PREFIX, sort=sort_mode, size=page_size, cursor=cursor)
        first_page = cursor is None

        if first_page:
            cached = self.cache.get(key)
            if cached is not None:
                logger.debug(f"Cache hit: {key}")
                return cached

        async def produce() -> PostsPage:
            generation = self._generation
            page = await run_in_threadpool(
                self.store.fetch_posts_page, sort_mode, page_size, cursor
            )
            if first_page:
                self._store_if_current(key, page, generation)
            return page

        return await self.dedup.with_dedup(self._inflight_key(key), produce)

    async def get_stats(self, refresh: bool = False) -> CommunityStats:
        """Community-wide counters; ``refresh`` skips the cache read only."""
        if not refresh:
            cached = self.cache.get(STATS_KEY)
            if cached is not None:
                logger.debug("Cache hit: stats")
                return cached

        async def produce() -> CommunityStats:
            generation = self._generation
            stats = await run_in_threadpool(self.store.fetch_stats)
            self._store_if_current(STATS_KEY, stats, generation)
            return stats

        return await self.dedup.with_dedup(self._inflight_key(STATS_KEY), produce)

    async def get_posts_aggregates(self, post_ids: List[int]) -> Dict[int, VoteAggregate]:
        """
        Aggregates for several posts, in request order.

        Each post's aggregate is cached on its own; the posts that miss are
        fetched together in one store call. Unknown post ids are left out.
        """
        post_ids = list(dict.fromkeys(post_ids))
        if not 1 <= len(post_ids) <= self.settings.max_batch_size:
            raise ValueError(
                f"Between 1 and {self.settings.max_batch_size} post ids per request"
            )

        found: Dict[int, VoteAggregate] = {}
        missed = []
        for post_id in post_ids:
            cached = self.cache.get(make_key(AGGREGATE_PREFIX, post=post_id))
            if cached is not None:
                found[post_id] = cached
            else:
                missed.append(post_id)

        if missed:
            logger.debug(f"Aggregate cache: {len(found)} hit(s), {len(missed)} miss(es)")
            batch_key = make_key(AGGREGATE_PREFIX, posts=",".join(map(str, sorted(missed))))

            async def produce() -> Dict[int, VoteAggregate]:
                generation = self._generation
                fetched = await run_in_threadpool(self.store.fetch_aggregates, missed)
                for post_id, aggregate in fetched.items():
                    self._store_if_current(
                        make_key(AGGREGATE_PREFIX, post=post_id), aggregate, generation
                    )
                return fetched

            found.update(await self.dedup.with_dedup(self._inflight_key(batch_key), produce))

        return {post_id: found[post_id] for post_id in post_ids if post_id in found}

    async def get_post_consensus(self, post_id: int) -> PostRecord:
        """Authoritative post with its aggregate, never served from cache."""
        post = await run_in_threadpool(self.store.get_post, post_id)
        if post is None:
            raise PostNotFound(post_id)
        return post

    async def get_user_vote(self, post_id: int, voter_id: str) -> Optional[VoteRecord]:
        return await self.ledger.get_user_vote(post_id, voter_id)

    async def list_votes_by_voter(
        self, voter_id: str, limit: int = 50, offset: int = 0
    ) -> List[VoteRecord]:
        return await self.ledger.list_votes_by_voter(voter_id, limit, offset)

    # =========================================================================
    # Writes
    # =========================================================================

    async def submit_vote(self, post_id: int, voter_id: str, category) -> VoteOutcome:
        """
        Vote on a post.

        Concurrent submissions by the same voter on the same post share one
        write. Returns the authoritative aggregate after the write.
        """
        category = VoteCategory.parse(category)
        key = make_key(VOTE_PREFIX, post=post_id, voter=voter_id)

        async def produce() -> VoteOutcome:
            outcome = await self.ledger.submit_vote(post_id, voter_id, category)
            self.invalidate_reads()
            return outcome

        return await self.dedup.with_dedup(key, produce)

    async def retract_vote(self, post_id: int, voter_id: str) -> VoteOutcome:
        """Withdraw a vote; shares the in-flight slot with submit_vote."""
        key = make_key(VOTE_PREFIX, post=post_id, voter=voter_id)

        async def produce() -> VoteOutcome:
            outcome = await self.ledger.retract_vote(post_id, voter_id)
            self.invalidate_reads()
            return outcome

        return await self.dedup.with_dedup(key, produce)

    async def create_post(
        self, url: str, title: str, description: Optional[str], owner_id: str
    ) -> PostRecord:
        post = await run_in_threadpool(
            self.store.create_post, url, title, description, owner_id
        )
        self.invalidate_reads()
        return post

    # =========================================================================
    # Cache management
    # =========================================================================

    def invalidate_reads(self):
        """Coarse invalidation: every cached page, aggregate and the stats entry."""
        self._generation += 1
        dropped = sum(
            self.cache.invalidate(prefix)
            for prefix in (POSTS_PREFIX, AGGREGATE_PREFIX, STATS_KEY)
        )
        if dropped:
            logger.info(f"Invalidated {dropped} cached read(s)")

    def clear_cache(self):
        self._generation += 1
        self.cache.invalidate_all()
        logger.info("Read cache cleared")

    def cache_stats(self) -> CacheStatsResponse:
        return CacheStatsResponse(
            entries=len(self.cache),
            capacity=self.cache.max_entries,
            ttl_seconds=self.cache.ttl_seconds,
            in_flight=self.dedup.in_flight(),
        )

    # =========================================================================
    # Consensus
    # =========================================================================

    def consensus(self, aggregate: VoteAggregate) -> ConsensusResult:
        return classify(aggregate, self.settings.consensus_threshold_percent)

    @staticmethod
    def trust_score(aggregate: VoteAggregate) -> int:
        return weighted_trust_score(aggregate)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _inflight_key(self, key: str) -> str:
        return f"{key}@{self._generation}"

    def _store_if_current(self, key: str, value: CachedValue, generation: int):
        if generation != self._generation:
            logger.debug(f"Discarding result fetched before a write: {key}")
            return
        self.cache.set(key, value)
        logger.debug(f"Cached: {key}")
