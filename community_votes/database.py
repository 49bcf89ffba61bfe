"""
Database models and session management for the Community Votes service.

Uses SQLAlchemy with SQLite for the standalone service.
Can be configured for PostgreSQL in production.
"""

from datetime import datetime, UTC
from typing import Optional, List

from sqlalchemy import (
    Integer, String, Float, Text, DateTime, Boolean,
    ForeignKey, Index, UniqueConstraint, create_engine
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import (
    DeclarativeBase, relationship, sessionmaker, Mapped, mapped_column
)
from sqlalchemy.pool import StaticPool

from community_votes.models import VoteCategory


# =============================================================================
# Database Setup
# =============================================================================


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """Create database engine."""
    connect_args = {}
    kwargs = {}
    if "sqlite" in database_url:
        connect_args["check_same_thread"] = False
        if ":memory:" in database_url or database_url.rstrip("/") == "sqlite:":
            # Share the single in-memory database across threadpool workers
            kwargs["poolclass"] = StaticPool
    return create_engine(database_url, connect_args=connect_args, echo=echo, **kwargs)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_db(engine: Engine):
    """Initialize database tables."""
    Base.metadata.create_all(bind=engine)


def utcnow() -> datetime:
    return datetime.now(UTC)


# =============================================================================
# Database Models
# =============================================================================


class Post(Base):
    """
    A link submitted for community review.

    The vote columns are a denormalized aggregate of the ``votes`` table and
    are only ever changed by SQL-side increments inside the same transaction
    as the vote row they account for.
    """

    __tablename__ = "posts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)

    url: Mapped[str] = mapped_column(String(2048), nullable=False)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    owner_id: Mapped[str] = mapped_column(String(128), index=True, nullable=False)

    # Vote aggregate
    trusted_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    suspicious_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    untrusted_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_votes: Mapped[int] = mapped_column(Integer, default=0, index=True, nullable=False)
    last_vote_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, index=True, nullable=False
    )

    # Relationships
    votes: Mapped[List["Vote"]] = relationship(
        "Vote", back_populates="post", cascade="all, delete-orphan"
    )
    comments: Mapped[List["Comment"]] = relationship(
        "Comment", back_populates="post", cascade="all, delete-orphan"
    )


# Aggregate column per vote category
CATEGORY_COLUMNS = {
    VoteCategory.TRUSTED: Post.trusted_count,
    VoteCategory.SUSPICIOUS: Post.suspicious_count,
    VoteCategory.UNTRUSTED: Post.untrusted_count,
}


class Vote(Base):
    """
    A user's vote on a post.

    A second submission by the same voter updates this row; it never
    creates a second one.
    """

    __tablename__ = "votes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)

    post_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("posts.id", ondelete="CASCADE"), index=True
    )
    voter_id: Mapped[str] = mapped_column(String(128), index=True, nullable=False)

    category: Mapped[str] = mapped_column(String(20), nullable=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )

    # Relationships
    post: Mapped["Post"] = relationship("Post", back_populates="votes")

    __table_args__ = (
        # Each user can only vote on a post once
        UniqueConstraint('voter_id', 'post_id', name='uq_voter_post'),
    )


class Comment(Base):
    """A comment on a post. Only counted by this service."""

    __tablename__ = "comments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    post_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("posts.id", ondelete="CASCADE"), index=True
    )
    author_id: Mapped[str] = mapped_column(String(128), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    post: Mapped["Post"] = relationship("Post", back_populates="comments")

    __table_args__ = (
        Index('ix_comments_post_created', 'post_id', 'created_at'),
    )


class ReconciliationRun(Base):
    """
    Log of aggregate reconciliation runs.

    Tracks when counts were recomputed from the votes table and how many
    posts had drifted.
    """

    __tablename__ = "reconciliation_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)

    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Results
    posts_checked: Mapped[int] = mapped_column(Integer, default=0)
    posts_corrected: Mapped[int] = mapped_column(Integer, default=0)

    # Performance
    duration_seconds: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Errors
    success: Mapped[bool] = mapped_column(Boolean, default=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
