"""SQLAlchemy ORM models backing the persistent state."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, Index, Integer, JSON, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base
from .utils import utcnow


class StudioExpansionRecord(Base):
    """Persisted tier of the studio expansion cache."""

    __tablename__ = "studio_expansions"

    parent_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    parent_name: Mapped[str] = mapped_column(String(255))
    subsidiaries: Mapped[list[str]] = mapped_column(JSON)
    expires_at: Mapped[datetime] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class RecommendationCacheRecord(Base):
    """The single live recommendation list for a user."""

    __tablename__ = "recommendation_cache"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    library_hash: Mapped[str] = mapped_column(String(64))
    payload: Mapped[list[dict[str, Any]]] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime)
    expires_at: Mapped[datetime] = mapped_column(DateTime)


class RecommendationPageRecord(Base):
    """A delivered page, kept for offline replay until the series is refreshed."""

    __tablename__ = "recommendation_pages"
    __table_args__ = (
        UniqueConstraint("user_id", "series", "page_index", name="uq_page_series"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64))
    series: Mapped[str] = mapped_column(String(64))
    generation: Mapped[int] = mapped_column(Integer, default=0)
    page_index: Mapped[int] = mapped_column(Integer)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class FeedbackRecordRow(Base):
    """Append-only user reaction to a recommendation."""

    __tablename__ = "feedback_records"
    __table_args__ = (Index("ix_feedback_user", "user_id", "created_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64))
    game_id: Mapped[int] = mapped_column(Integer)
    game_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    action: Mapped[str] = mapped_column(String(16))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
