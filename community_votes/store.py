"""
Store adapter: the engine's only view of the backing database.

``StoreAdapter`` is the contract; ``SqlAlchemyStore`` implements it on
SQLAlchemy sessions. All methods are blocking and are run off the event
loop by the engine.
"""

import base64
import binascii
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional

from sqlalchemy import delete, func, select, text, update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from community_votes.database import (
    CATEGORY_COLUMNS, Comment, Post, Vote, utcnow
)
from community_votes.errors import (
    PostNotFound, StoreUnavailable, VoteConflict, VoteNotFound
)
from community_votes.models import (
    CommunityStats, PostRecord, PostsPage, SortMode, VoteAggregate,
    VoteCategory, VoteOutcome, VoteRecord
)


logger = logging.getLogger(__name__)


# =============================================================================
# Cursors
# =============================================================================


def encode_cursor(offset: int) -> str:
    return base64.urlsafe_b64encode(f"o:{offset}".encode()).decode().rstrip("=")


def decode_cursor(cursor: Optional[str]) -> int:
    """Offset encoded in ``cursor``; raises ValueError if malformed."""
    if cursor is None:
        return 0
    try:
        padded = cursor + "=" * (-len(cursor) % 4)
        raw = base64.urlsafe_b64decode(padded.encode()).decode()
    except (binascii.Error, UnicodeDecodeError) as e:
        raise ValueError(f"Malformed cursor: {cursor!r}") from e
    prefix, _, value = raw.partition(":")
    if prefix != "o" or not value.isdigit():
        raise ValueError(f"Malformed cursor: {cursor!r}")
    return int(value)


# =============================================================================
# Contract
# =============================================================================


class StoreAdapter(ABC):
    """Operations the voting engine needs from the document store."""

    @abstractmethod
    def fetch_posts_page(
        self, sort_mode: SortMode, page_size: int, cursor: Optional[str]
    ) -> PostsPage:
        ...

    @abstractmethod
    def fetch_stats(self) -> CommunityStats:
        ...

    @abstractmethod
    def get_post(self, post_id: int) -> Optional[PostRecord]:
        ...

    @abstractmethod
    def create_post(
        self, url: str, title: str, description: Optional[str], owner_id: str
    ) -> PostRecord:
        ...

    @abstractmethod
    def fetch_aggregates(self, post_ids: List[int]) -> Dict[int, VoteAggregate]:
        """Aggregates of the given posts in one query; unknown ids are left out."""

    @abstractmethod
    def get_vote(self, post_id: int, voter_id: str) -> Optional[VoteRecord]:
        ...

    @abstractmethod
    def apply_vote(
        self, post_id: int, voter_id: str, category: VoteCategory
    ) -> VoteOutcome:
        """
        Write the voter's vote and the matching aggregate delta as one unit.

        Raises PostNotFound if the post is missing and VoteConflict if a
        concurrent writer changed the same vote first.
        """

    @abstractmethod
    def delete_vote(self, post_id: int, voter_id: str) -> VoteOutcome:
        ...

    @abstractmethod
    def list_votes_by_voter(
        self, voter_id: str, limit: int = 50, offset: int = 0
    ) -> List[VoteRecord]:
        ...

    def ping(self) -> bool:
        return True


# =============================================================================
# SQLAlchemy implementation
# =============================================================================


class SqlAlchemyStore(StoreAdapter):
    """StoreAdapter backed by the SQLAlchemy models in ``database.py``."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """Session that maps database failures onto engine errors."""
        session = self.session_factory()
        try:
            yield session
        except (IntegrityError, StaleDataError) as e:
            session.rollback()
            raise VoteConflict(f"Concurrent update rejected: {e}") from e
        except OperationalError as e:
            session.rollback()
            raise StoreUnavailable(f"Database unavailable: {e}") from e
        except SQLAlchemyError as e:
            session.rollback()
            raise StoreUnavailable(f"Database error: {e}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def fetch_posts_page(
        self, sort_mode: SortMode, page_size: int, cursor: Optional[str]
    ) -> PostsPage:
        offset = decode_cursor(cursor)
        query = select(Post).order_by(*self._ordering(sort_mode))
        # One extra row tells us whether another page exists
        query = query.offset(offset).limit(page_size + 1)

        with self.session_scope() as session:
            rows = session.execute(query).scalars().all()

        has_more = len(rows) > page_size
        rows = rows[:page_size]
        return PostsPage(
            posts=[_post_record(p) for p in rows],
            next_cursor=encode_cursor(offset + page_size) if has_more else None,
            has_more=has_more,
        )

    @staticmethod
    def _ordering(sort_mode: SortMode) -> list:
        if sort_mode == SortMode.POPULAR:
            return [Post.total_votes.desc(), Post.created_at.desc(), Post.id.desc()]
        if sort_mode == SortMode.TRENDING:
            return [
                Post.last_vote_at.desc().nulls_last(),
                Post.created_at.desc(),
                Post.id.desc(),
            ]
        return [Post.created_at.desc(), Post.id.desc()]

    def fetch_stats(self) -> CommunityStats:
        with self.session_scope() as session:
            total_posts = session.scalar(select(func.count(Post.id))) or 0
            total_votes = session.scalar(select(func.count(Vote.id))) or 0
            total_voters = session.scalar(
                select(func.count(func.distinct(Vote.voter_id)))
            ) or 0
            total_comments = session.scalar(select(func.count(Comment.id))) or 0
            by_category = session.execute(
                select(Vote.category, func.count(Vote.id)).group_by(Vote.category)
            ).all()

        votes_by_category = {category: 0 for category in VoteCategory}
        for category, count in by_category:
            votes_by_category[VoteCategory(category)] = count

        return CommunityStats(
            total_posts=total_posts,
            total_votes=total_votes,
            total_voters=total_voters,
            total_comments=total_comments,
            votes_by_category=votes_by_category,
            last_updated=utcnow(),
        )

    def get_post(self, post_id: int) -> Optional[PostRecord]:
        with self.session_scope() as session:
            post = session.get(Post, post_id)
            return _post_record(post) if post else None

    def fetch_aggregates(self, post_ids: List[int]) -> Dict[int, VoteAggregate]:
        if not post_ids:
            return {}
        with self.session_scope() as session:
            posts = session.execute(
                select(Post).where(Post.id.in_(post_ids))
            ).scalars().all()
            return {post.id: _aggregate(post) for post in posts}

    def get_vote(self, post_id: int, voter_id: str) -> Optional[VoteRecord]:
        with self.session_scope() as session:
            vote = self._find_vote(session, post_id, voter_id)
            return _vote_record(vote) if vote else None

    def list_votes_by_voter(
        self, voter_id: str, limit: int = 50, offset: int = 0
    ) -> List[VoteRecord]:
        with self.session_scope() as session:
            votes = session.execute(
                select(Vote)
                .where(Vote.voter_id == voter_id)
                .order_by(Vote.updated_at.desc(), Vote.id.desc())
                .offset(offset)
                .limit(limit)
            ).scalars().all()
            return [_vote_record(v) for v in votes]

    def ping(self) -> bool:
        try:
            with self.session_scope() as session:
                session.execute(text("SELECT 1"))
            return True
        except StoreUnavailable:
            return False

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def create_post(
        self, url: str, title: str, description: Optional[str], owner_id: str
    ) -> PostRecord:
        with self.session_scope() as session:
            post = Post(url=url, title=title, description=description, owner_id=owner_id)
            session.add(post)
            session.commit()
            session.refresh(post)
            logger.info(f"Created post {post.id} for {url}")
            return _post_record(post)

    def apply_vote(
        self, post_id: int, voter_id: str, category: VoteCategory
    ) -> VoteOutcome:
        with self.session_scope() as session:
            post = session.get(Post, post_id)
            if post is None:
                raise PostNotFound(post_id)

            now = utcnow()
            vote = self._find_vote(session, post_id, voter_id)

            if vote is None:
                vote = Vote(
                    post_id=post_id,
                    voter_id=voter_id,
                    category=category.value,
                    created_at=now,
                    updated_at=now,
                )
                session.add(vote)
                # A concurrent first vote by the same voter fails here
                session.flush()
                previous = None
                deltas = {category: 1}
                total_delta = 1
            elif vote.category == category.value:
                return VoteOutcome(
                    aggregate=_aggregate(post),
                    vote=_vote_record(vote),
                    previous_category=category,
                    changed=False,
                )
            else:
                previous = VoteCategory(vote.category)
                result = session.execute(
                    update(Vote)
                    .where(Vote.id == vote.id, Vote.category == previous.value)
                    .values(category=category.value, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise VoteConflict(
                        f"Vote by {voter_id} on post {post_id} changed concurrently"
                    )
                deltas = {previous: -1, category: 1}
                total_delta = 0

            self._apply_delta(session, post_id, deltas, total_delta, now)
            session.refresh(post)
            session.refresh(vote)
            session.commit()

            logger.info(
                f"Vote on post {post_id} by {voter_id}: "
                f"{previous.value if previous else 'none'} -> {category.value}"
            )
            return VoteOutcome(
                aggregate=_aggregate(post),
                vote=_vote_record(vote),
                previous_category=previous,
                changed=True,
            )

    def delete_vote(self, post_id: int, voter_id: str) -> VoteOutcome:
        with self.session_scope() as session:
            post = session.get(Post, post_id)
            if post is None:
                raise PostNotFound(post_id)

            vote = self._find_vote(session, post_id, voter_id)
            if vote is None:
                raise VoteNotFound(post_id, voter_id)

            previous = VoteCategory(vote.category)
            result = session.execute(
                delete(Vote)
                .where(Vote.id == vote.id, Vote.category == previous.value)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise VoteConflict(
                    f"Vote by {voter_id} on post {post_id} changed concurrently"
                )
            session.expunge(vote)

            self._apply_delta(session, post_id, {previous: -1}, -1, None)
            session.refresh(post)
            session.commit()

            logger.info(f"Vote on post {post_id} by {voter_id} retracted ({previous.value})")
            return VoteOutcome(
                aggregate=_aggregate(post),
                vote=None,
                previous_category=previous,
                changed=True,
            )

    def vote_rows(self) -> List[Dict]:
        """Every vote as ``{post_id, category}`` for reconciliation."""
        with self.session_scope() as session:
            rows = session.execute(select(Vote.post_id, Vote.category)).all()
            return [{"post_id": r.post_id, "category": r.category} for r in rows]

    def aggregate_rows(self) -> List[Dict]:
        """Stored aggregate of every post."""
        with self.session_scope() as session:
            rows = session.execute(
                select(
                    Post.id,
                    Post.trusted_count,
                    Post.suspicious_count,
                    Post.untrusted_count,
                    Post.total_votes,
                )
            ).all()
            return [
                {
                    "post_id": r.id,
                    VoteCategory.TRUSTED.value: r.trusted_count,
                    VoteCategory.SUSPICIOUS.value: r.suspicious_count,
                    VoteCategory.UNTRUSTED.value: r.untrusted_count,
                    "total": r.total_votes,
                }
                for r in rows
            ]

    def recount_aggregate(self, post_id: int) -> Optional[VoteAggregate]:
        """
        Rewrite a post's aggregate from its vote rows.

        The counts are subqueries of the UPDATE itself, so a vote committed
        at any point before the statement is counted and one committed after
        it lands as an increment on top of the corrected values.

        Returns the new aggregate, or None if it already matched.
        """
        votes_for_post = select(func.count(Vote.id)).where(Vote.post_id == post_id)
        values = {
            column.key: votes_for_post.where(Vote.category == category.value).scalar_subquery()
            for category, column in CATEGORY_COLUMNS.items()
        }
        values["total_votes"] = votes_for_post.scalar_subquery()

        with self.session_scope() as session:
            post = session.get(Post, post_id)
            if post is None:
                raise PostNotFound(post_id)
            before = _aggregate(post)

            session.execute(
                update(Post)
                .where(Post.id == post_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            session.refresh(post)
            session.commit()

            after = _aggregate(post)
            return None if after.counts() == before.counts() and after.total == before.total else after

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _find_vote(session: Session, post_id: int, voter_id: str) -> Optional[Vote]:
        return session.execute(
            select(Vote).where(Vote.post_id == post_id, Vote.voter_id == voter_id)
        ).scalar_one_or_none()

    @staticmethod
    def _apply_delta(
        session: Session,
        post_id: int,
        deltas: Dict[VoteCategory, int],
        total_delta: int,
        voted_at: Optional[datetime],
    ):
        """Field-level increments evaluated by the database, not in Python."""
        values = {
            CATEGORY_COLUMNS[category].key: CATEGORY_COLUMNS[category] + delta
            for category, delta in deltas.items()
        }
        if total_delta:
            values["total_votes"] = Post.total_votes + total_delta
        if voted_at is not None:
            values["last_vote_at"] = voted_at
        session.execute(
            update(Post)
            .where(Post.id == post_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )


def _aggregate(post: Post) -> VoteAggregate:
    return VoteAggregate(
        post_id=post.id,
        trusted=post.trusted_count,
        suspicious=post.suspicious_count,
        untrusted=post.untrusted_count,
        total=post.total_votes,
        last_vote_at=post.last_vote_at,
    )


def _post_record(post: Post) -> PostRecord:
    return PostRecord(
        id=post.id,
        url=post.url,
        title=post.title,
        description=post.description,
        owner_id=post.owner_id,
        aggregate=_aggregate(post),
        created_at=post.created_at,
    )


def _vote_record(vote: Vote) -> VoteRecord:
    return VoteRecord(
        id=vote.id,
        post_id=vote.post_id,
        voter_id=vote.voter_id,
        category=VoteCategory(vote.category),
        created_at=vote.created_at,
        updated_at=vote.updated_at,
    )
