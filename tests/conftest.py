"""
Shared fixtures: an in-memory SQLite store, a counting fake store, and
engines built on each.
"""

import threading
import time
from datetime import datetime, UTC
from typing import Dict, List, Optional

import pytest
from sqlalchemy import update

from community_votes.config import Settings
from community_votes.database import Post, create_db_engine, init_db, make_session_factory
from community_votes.engine import VoteEngine
from community_votes.errors import PostNotFound, StoreUnavailable
from community_votes.models import (
    CommunityStats, PostRecord, PostsPage, SortMode, VoteAggregate,
    VoteCategory, VoteOutcome, VoteRecord
)
from community_votes.store import SqlAlchemyStore, StoreAdapter


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite:///:memory:",
        cache_ttl_seconds=300,
        cache_max_entries=100,
        enable_scheduler=False,
        api_key=None,
    )


@pytest.fixture
def db_engine(settings):
    engine = create_db_engine(settings.database_url)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(db_engine):
    return SqlAlchemyStore(make_session_factory(db_engine))


@pytest.fixture
def post(store):
    return store.create_post(
        url="https://example.com/offer",
        title="Too good to be true?",
        description=None,
        owner_id="owner-1",
    )


@pytest.fixture
def corrupt_aggregate(store):
    """Overwrite a post's stored counts without touching its votes."""

    def corrupt(post_id: int, trusted: int = 0, suspicious: int = 0, untrusted: int = 0):
        with store.session_scope() as session:
            session.execute(
                update(Post)
                .where(Post.id == post_id)
                .values(
                    trusted_count=trusted,
                    suspicious_count=suspicious,
                    untrusted_count=untrusted,
                    total_votes=trusted + suspicious + untrusted,
                )
            )
            session.commit()

    return corrupt


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


class CountingStore(StoreAdapter):
    """
    In-memory store that counts calls and can be told to fail.

    Reads sleep briefly so concurrent callers genuinely overlap.
    """

    def __init__(self, delay: float = 0.05):
        self.delay = delay
        self.calls: Dict[str, int] = {}
        self.fail_with: Optional[Exception] = None
        self._lock = threading.Lock()
        self._posts: Dict[int, PostRecord] = {}
        self._votes: Dict[tuple, VoteRecord] = {}
        self._next_vote_id = 1
        self.requested_aggregates: List[List[int]] = []

    def _record(self, name: str):
        with self._lock:
            self.calls[name] = self.calls.get(name, 0) + 1
        if self.delay:
            time.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with

    def count(self, name: str) -> int:
        return self.calls.get(name, 0)

    def fetch_posts_page(self, sort_mode, page_size, cursor) -> PostsPage:
        self._record("fetch_posts_page")
        posts = sorted(self._posts.values(), key=lambda p: p.id, reverse=True)
        return PostsPage(posts=posts[:page_size], has_more=len(posts) > page_size)

    def fetch_stats(self) -> CommunityStats:
        self._record("fetch_stats")
        return CommunityStats(
            total_posts=len(self._posts),
            total_votes=len(self._votes),
            total_voters=len({voter for _, voter in self._votes}),
            last_updated=datetime.now(UTC),
        )

    def get_post(self, post_id: int) -> Optional[PostRecord]:
        self._record("get_post")
        return self._posts.get(post_id)

    def create_post(self, url, title, description, owner_id) -> PostRecord:
        self._record("create_post")
        post_id = len(self._posts) + 1
        post = PostRecord(
            id=post_id,
            url=url,
            title=title,
            description=description,
            owner_id=owner_id,
            aggregate=VoteAggregate(post_id=post_id),
            created_at=datetime.now(UTC),
        )
        self._posts[post_id] = post
        return post

    def fetch_aggregates(self, post_ids: List[int]) -> Dict[int, VoteAggregate]:
        self._record("fetch_aggregates")
        self.requested_aggregates.append(list(post_ids))
        return {
            post_id: self._posts[post_id].aggregate
            for post_id in post_ids if post_id in self._posts
        }

    def get_vote(self, post_id: int, voter_id: str) -> Optional[VoteRecord]:
        self._record("get_vote")
        return self._votes.get((post_id, voter_id))

    def apply_vote(self, post_id: int, voter_id: str, category: VoteCategory) -> VoteOutcome:
        self._record("apply_vote")
        with self._lock:
            post = self._posts.get(post_id)
            if post is None:
                raise PostNotFound(post_id)
            counts = post.aggregate.model_dump()
            existing = self._votes.get((post_id, voter_id))
            now = datetime.now(UTC)
            if existing is not None and existing.category == category:
                return VoteOutcome(aggregate=post.aggregate, vote=existing,
                                   previous_category=category, changed=False)
            if existing is None:
                vote = VoteRecord(id=self._next_vote_id, post_id=post_id, voter_id=voter_id,
                                  category=category, created_at=now, updated_at=now)
                self._next_vote_id += 1
                counts["total"] += 1
                previous = None
            else:
                previous = existing.category
                vote = existing.model_copy(update={"category": category, "updated_at": now})
                counts[previous.value] -= 1
            counts[category.value] += 1
            counts["last_vote_at"] = now
            self._votes[(post_id, voter_id)] = vote
            post.aggregate = VoteAggregate(**counts)
            return VoteOutcome(aggregate=post.aggregate, vote=vote,
                               previous_category=previous, changed=True)

    def delete_vote(self, post_id: int, voter_id: str) -> VoteOutcome:
        raise NotImplementedError

    def list_votes_by_voter(self, voter_id, limit=50, offset=0) -> List[VoteRecord]:
        self._record("list_votes_by_voter")
        votes = [v for (_, voter), v in self._votes.items() if voter == voter_id]
        return votes[offset:offset + limit]


@pytest.fixture
def counting_store():
    store = CountingStore()
    store.delay = 0
    store.create_post("https://example.com/a", "A", None, "owner-1")
    store.calls.clear()
    store.delay = 0.05
    return store


@pytest.fixture
def fake_engine(counting_store, settings, clock):
    return VoteEngine(counting_store, settings, clock=clock)


@pytest.fixture
def engine(store, settings, clock):
    return VoteEngine(store, settings, clock=clock)


@pytest.fixture
def unavailable():
    return StoreUnavailable("connection refused")
