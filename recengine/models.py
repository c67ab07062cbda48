"""
SQLAlchemy ORM models.

Tables owned by the surrounding application (read by the engine):
  publication        — kind, status, publish date, engagement counters
  publication_topic  — publication × topic mapping
  publication_author — publication × author mapping
  publication_view   — append-only view log
  publication_like   — user × publication like (re-like refreshes liked_at)
  saved_publication  — publications in a user's default collection (revocable)

Tables owned by the engine:
  topic_affinity     — per-user decayed topic interest scores
  author_affinity    — the same scores keyed by author
  user_similarity    — directional user → user similarity edges
"""
import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
)
from sqlalchemy.orm import Mapped, mapped_column

from recengine.database import Base


class PublicationStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"
    ARCHIVED = "ARCHIVED"


class PublicationKind(str, enum.Enum):
    PAPER = "PAPER"
    BLOG = "BLOG"
    ARTICLE = "ARTICLE"


class Publication(Base):
    __tablename__ = "publication"

    pub_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    status: Mapped[PublicationStatus] = mapped_column(
        Enum(PublicationStatus, native_enum=False, length=20),
        default=PublicationStatus.DRAFT,
        nullable=False,
    )
    kind: Mapped[PublicationKind] = mapped_column(
        Enum(PublicationKind, native_enum=False, length=20),
        default=PublicationKind.ARTICLE,
        nullable=False,
    )
    published_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    like_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    save_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (
        Index("idx_publication_status_published", "status", "published_at"),
    )


class PublicationTopic(Base):
    __tablename__ = "publication_topic"

    pub_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("publication.pub_id"), primary_key=True
    )
    topic_id: Mapped[int] = mapped_column(Integer, primary_key=True)

    __table_args__ = (
        # "which publications carry topic X?" for content-based candidates
        Index("idx_publication_topic_topic", "topic_id"),
    )


class PublicationAuthor(Base):
    __tablename__ = "publication_author"

    pub_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("publication.pub_id"), primary_key=True
    )
    author_id: Mapped[int] = mapped_column(Integer, primary_key=True)

    __table_args__ = (
        Index("idx_publication_author_author", "author_id"),
    )


class PublicationView(Base):
    __tablename__ = "publication_view"

    view_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(Integer, nullable=False)
    pub_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("publication.pub_id"), nullable=False
    )
    viewed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index("idx_view_account_time", "account_id", "viewed_at"),
    )


class PublicationLike(Base):
    __tablename__ = "publication_like"

    account_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    pub_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("publication.pub_id"), primary_key=True
    )
    liked_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index("idx_like_pub", "pub_id"),
        Index("idx_like_time", "liked_at"),
    )


class SavedPublication(Base):
    __tablename__ = "saved_publication"

    account_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    pub_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("publication.pub_id"), primary_key=True
    )
    saved_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index("idx_saved_pub", "pub_id"),
        Index("idx_saved_time", "saved_at"),
    )


class TopicAffinity(Base):
    __tablename__ = "topic_affinity"

    account_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    topic_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    score: Mapped[float] = mapped_column(Float, nullable=False)
    last_updated: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        # similarity candidate lookup: "who else is strongly into topic X?"
        Index("idx_affinity_topic_score", "topic_id", "score"),
        Index("idx_affinity_updated", "last_updated"),
    )


class AuthorAffinity(Base):
    __tablename__ = "author_affinity"

    account_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    author_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    score: Mapped[float] = mapped_column(Float, nullable=False)
    last_updated: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index("idx_author_affinity_updated", "last_updated"),
    )


class UserSimilarity(Base):
    __tablename__ = "user_similarity"

    account_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    other_account_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    similarity_score: Mapped[float] = mapped_column(Float, nullable=False)
    calculated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index("idx_similarity_account_score", "account_id", "similarity_score"),
        Index("idx_similarity_calculated", "calculated_at"),
    )
