"""
Integration tests for the SQLAlchemy store against in-memory SQLite.
"""

import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError

from community_votes.database import Comment, Vote
from community_votes.errors import PostNotFound, StoreUnavailable, VoteConflict, VoteNotFound
from community_votes.models import SortMode, VoteCategory
from community_votes.store import SqlAlchemyStore, decode_cursor, encode_cursor

find_vote = SqlAlchemyStore._find_vote


def assert_consistent(aggregate):
    assert aggregate.trusted + aggregate.suspicious + aggregate.untrusted == aggregate.total


def changed_after_read(session, post_id, voter_id):
    """Find the vote, then let another writer switch its category."""
    vote = find_vote(session, post_id, voter_id)
    session.execute(
        update(Vote)
        .where(Vote.id == vote.id)
        .values(category=VoteCategory.SUSPICIOUS.value)
        .execution_options(synchronize_session=False)
    )
    return vote


class TestApplyVote:

    def test_first_vote_increments_category_and_total(self, store, post):
        outcome = store.apply_vote(post.id, "alice", VoteCategory.TRUSTED)

        assert outcome.changed
        assert outcome.previous_category is None
        assert outcome.aggregate.trusted == 1
        assert outcome.aggregate.total == 1
        assert outcome.aggregate.last_vote_at is not None
        assert outcome.vote.category == VoteCategory.TRUSTED

    def test_changed_vote_moves_count(self, store, post):
        store.apply_vote(post.id, "bob", VoteCategory.SUSPICIOUS)
        store.apply_vote(post.id, "alice", VoteCategory.TRUSTED)

        outcome = store.apply_vote(post.id, "alice", VoteCategory.UNTRUSTED)

        assert outcome.previous_category == VoteCategory.TRUSTED
        assert outcome.aggregate.trusted == 0
        assert outcome.aggregate.untrusted == 1
        assert outcome.aggregate.suspicious == 1
        assert outcome.aggregate.total == 2

    def test_same_vote_is_a_no_op(self, store, post):
        first = store.apply_vote(post.id, "alice", VoteCategory.TRUSTED)
        second = store.apply_vote(post.id, "alice", VoteCategory.TRUSTED)

        assert not second.changed
        assert second.aggregate.model_dump() == first.aggregate.model_dump()

    def test_only_one_vote_row_per_voter(self, store, post):
        for category in (VoteCategory.TRUSTED, VoteCategory.UNTRUSTED, VoteCategory.SUSPICIOUS):
            store.apply_vote(post.id, "alice", category)

        with store.session_scope() as session:
            rows = session.execute(select(Vote).where(Vote.post_id == post.id)).scalars().all()

        assert len(rows) == 1
        assert rows[0].category == VoteCategory.SUSPICIOUS.value

    def test_missing_post_writes_nothing(self, store):
        with pytest.raises(PostNotFound):
            store.apply_vote(999, "alice", VoteCategory.TRUSTED)

        assert store.get_vote(999, "alice") is None

    def test_invariant_holds_over_mixed_sequence(self, store, post):
        sequence = [
            ("a", VoteCategory.TRUSTED), ("b", VoteCategory.TRUSTED),
            ("c", VoteCategory.UNTRUSTED), ("a", VoteCategory.SUSPICIOUS),
            ("b", VoteCategory.TRUSTED), ("c", VoteCategory.TRUSTED),
            ("d", VoteCategory.UNTRUSTED), ("a", VoteCategory.UNTRUSTED),
        ]
        for voter, category in sequence:
            outcome = store.apply_vote(post.id, voter, category)
            assert_consistent(outcome.aggregate)

        aggregate = store.get_post(post.id).aggregate
        assert (aggregate.trusted, aggregate.suspicious, aggregate.untrusted) == (2, 0, 2)
        assert aggregate.total == 4

    def test_concurrent_first_vote_is_a_conflict(self, store, post, monkeypatch):
        store.apply_vote(post.id, "alice", VoteCategory.TRUSTED)
        # Simulate a writer that read "no vote yet" before alice's row landed
        monkeypatch.setattr(SqlAlchemyStore, "_find_vote", staticmethod(lambda *args: None))

        with pytest.raises(VoteConflict):
            store.apply_vote(post.id, "alice", VoteCategory.UNTRUSTED)

        monkeypatch.undo()
        aggregate = store.get_post(post.id).aggregate
        assert aggregate.trusted == 1
        assert aggregate.total == 1

    def test_category_changed_underneath_is_a_conflict(self, store, post, monkeypatch):
        store.apply_vote(post.id, "alice", VoteCategory.TRUSTED)
        monkeypatch.setattr(SqlAlchemyStore, "_find_vote", staticmethod(changed_after_read))

        with pytest.raises(VoteConflict):
            store.apply_vote(post.id, "alice", VoteCategory.UNTRUSTED)

        monkeypatch.undo()
        aggregate = store.get_post(post.id).aggregate
        assert (aggregate.trusted, aggregate.suspicious, aggregate.untrusted) == (1, 0, 0)
        assert aggregate.total == 1
        assert store.get_vote(post.id, "alice").category == VoteCategory.TRUSTED

    def test_database_errors_become_store_unavailable(self, store, post, monkeypatch):
        def broken(*args, **kwargs):
            raise OperationalError("SELECT 1", {}, Exception("database is locked"))

        monkeypatch.setattr(SqlAlchemyStore, "_find_vote", staticmethod(broken))

        with pytest.raises(StoreUnavailable):
            store.apply_vote(post.id, "alice", VoteCategory.TRUSTED)


class TestDeleteVote:

    def test_retract_decrements(self, store, post):
        store.apply_vote(post.id, "alice", VoteCategory.UNTRUSTED)
        store.apply_vote(post.id, "bob", VoteCategory.TRUSTED)

        outcome = store.delete_vote(post.id, "alice")

        assert outcome.previous_category == VoteCategory.UNTRUSTED
        assert outcome.aggregate.untrusted == 0
        assert outcome.aggregate.total == 1
        assert store.get_vote(post.id, "alice") is None

    def test_category_changed_underneath_is_a_conflict(self, store, post, monkeypatch):
        store.apply_vote(post.id, "alice", VoteCategory.TRUSTED)
        monkeypatch.setattr(SqlAlchemyStore, "_find_vote", staticmethod(changed_after_read))

        with pytest.raises(VoteConflict):
            store.delete_vote(post.id, "alice")

        monkeypatch.undo()
        aggregate = store.get_post(post.id).aggregate
        assert aggregate.trusted == 1
        assert aggregate.total == 1
        assert store.get_vote(post.id, "alice") is not None

    def test_retract_without_vote(self, store, post):
        with pytest.raises(VoteNotFound):
            store.delete_vote(post.id, "nobody")

    def test_retract_on_missing_post(self, store):
        with pytest.raises(PostNotFound):
            store.delete_vote(42, "alice")


class TestFetchPostsPage:

    @pytest.fixture
    def posts(self, store):
        return [
            store.create_post(f"https://example.com/{i}", f"Post {i}", None, "owner")
            for i in range(5)
        ]

    def test_newest_first_with_cursor(self, store, posts):
        first = store.fetch_posts_page(SortMode.NEWEST, 2, None)

        assert [p.id for p in first.posts] == [posts[4].id, posts[3].id]
        assert first.has_more
        assert first.next_cursor is not None

        second = store.fetch_posts_page(SortMode.NEWEST, 2, first.next_cursor)
        third = store.fetch_posts_page(SortMode.NEWEST, 2, second.next_cursor)

        assert [p.id for p in second.posts] == [posts[2].id, posts[1].id]
        assert [p.id for p in third.posts] == [posts[0].id]
        assert not third.has_more
        assert third.next_cursor is None

    def test_popular_orders_by_total_votes(self, store, posts):
        store.apply_vote(posts[1].id, "a", VoteCategory.TRUSTED)
        store.apply_vote(posts[1].id, "b", VoteCategory.TRUSTED)
        store.apply_vote(posts[3].id, "a", VoteCategory.UNTRUSTED)

        page = store.fetch_posts_page(SortMode.POPULAR, 3, None)

        assert [p.id for p in page.posts][:2] == [posts[1].id, posts[3].id]

    def test_trending_orders_by_last_vote(self, store, posts):
        store.apply_vote(posts[0].id, "a", VoteCategory.TRUSTED)
        store.apply_vote(posts[2].id, "a", VoteCategory.TRUSTED)

        page = store.fetch_posts_page(SortMode.TRENDING, 5, None)

        assert [p.id for p in page.posts][:2] == [posts[2].id, posts[0].id]

    def test_malformed_cursor(self, store, posts):
        with pytest.raises(ValueError):
            store.fetch_posts_page(SortMode.NEWEST, 2, "not-a-cursor")


class TestCursor:

    def test_round_trip(self):
        assert decode_cursor(encode_cursor(30)) == 30

    def test_none_is_first_page(self):
        assert decode_cursor(None) == 0


class TestFetchStats:

    def test_counts(self, store, post):
        other = store.create_post("https://example.com/b", "B", None, "owner-2")
        store.apply_vote(post.id, "alice", VoteCategory.TRUSTED)
        store.apply_vote(other.id, "alice", VoteCategory.SUSPICIOUS)
        store.apply_vote(other.id, "bob", VoteCategory.SUSPICIOUS)
        with store.session_scope() as session:
            session.add(Comment(post_id=post.id, author_id="bob", content="Looks like phishing"))
            session.commit()

        stats = store.fetch_stats()

        assert stats.total_posts == 2
        assert stats.total_votes == 3
        assert stats.total_voters == 2
        assert stats.total_comments == 1
        assert stats.votes_by_category[VoteCategory.SUSPICIOUS] == 2
        assert stats.votes_by_category[VoteCategory.UNTRUSTED] == 0


class TestVotesByVoter:

    def test_lists_votes(self, store, post):
        other = store.create_post("https://example.com/b", "B", None, "owner-2")
        store.apply_vote(post.id, "alice", VoteCategory.TRUSTED)
        store.apply_vote(other.id, "alice", VoteCategory.UNTRUSTED)
        store.apply_vote(other.id, "bob", VoteCategory.UNTRUSTED)

        votes = store.list_votes_by_voter("alice")

        assert {v.post_id for v in votes} == {post.id, other.id}
        assert all(v.voter_id == "alice" for v in votes)

    def test_ping(self, store):
        assert store.ping()


class TestFetchAggregates:

    def test_one_query_for_many_posts(self, store, post):
        other = store.create_post("https://example.com/b", "B", None, "owner-2")
        store.apply_vote(other.id, "alice", VoteCategory.SUSPICIOUS)

        aggregates = store.fetch_aggregates([post.id, other.id, 999])

        assert set(aggregates) == {post.id, other.id}
        assert aggregates[post.id].total == 0
        assert aggregates[other.id].suspicious == 1

    def test_empty_request(self, store):
        assert store.fetch_aggregates([]) == {}
