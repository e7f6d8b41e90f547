"""SQLAlchemy models for the designer matcher."""
from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from pgvector.sqlalchemy import Vector

from .db import Base
from .config import get_settings

_VECTOR_DIM = get_settings().embed_dim


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BriefRecord(Base):
    __tablename__ = "briefs"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    client_id: Mapped[str | None] = mapped_column(String, nullable=True)
    categories: Mapped[list[str]] = mapped_column(JSON, default=list)
    budget_min: Mapped[float | None] = mapped_column(Float, nullable=True)
    budget_max: Mapped[float | None] = mapped_column(Float, nullable=True)
    timeline: Mapped[str | None] = mapped_column(String, nullable=True)
    styles: Mapped[list[str]] = mapped_column(JSON, default=list)
    industries: Mapped[list[str]] = mapped_column(JSON, default=list)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    seniority: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    matches: Mapped[list["MatchRecord"]] = relationship(back_populates="brief")


class DesignerRecord(Base):
    __tablename__ = "designers"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name: Mapped[str] = mapped_column(String, default="")
    categories: Mapped[list[str]] = mapped_column(JSON, default=list)
    years_experience: Mapped[float | None] = mapped_column(Float, nullable=True)
    availability: Mapped[str] = mapped_column(String, default="immediate", nullable=False)
    rate_min: Mapped[float | None] = mapped_column(Float, nullable=True)
    rate_max: Mapped[float | None] = mapped_column(Float, nullable=True)
    styles: Mapped[list[str]] = mapped_column(JSON, default=list)
    industries: Mapped[list[str]] = mapped_column(JSON, default=list)
    bio: Mapped[str | None] = mapped_column(Text, nullable=True)
    # content_hash tracks the profile text, embedding_hash the text the vector was built from.
    content_hash: Mapped[str | None] = mapped_column(String, nullable=True)
    embedding_hash: Mapped[str | None] = mapped_column(String, nullable=True)
    embedding: Mapped[list[float] | None] = mapped_column(Vector(_VECTOR_DIM), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    matches: Mapped[list["MatchRecord"]] = relationship(back_populates="designer")


class MatchRecord(Base):
    __tablename__ = "matches"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    brief_id: Mapped[str] = mapped_column(ForeignKey("briefs.id", ondelete="CASCADE"), nullable=False)
    designer_id: Mapped[str] = mapped_column(ForeignKey("designers.id", ondelete="CASCADE"), nullable=False)
    score: Mapped[float] = mapped_column(Float, nullable=False)
    reasons: Mapped[list[str]] = mapped_column(JSON, default=list)
    status: Mapped[str] = mapped_column(String, default="pending", nullable=False)
    degraded: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    brief: Mapped[BriefRecord] = relationship(back_populates="matches")
    designer: Mapped[DesignerRecord] = relationship(back_populates="matches")

    __table_args__ = (
        # At most one live match per brief; this index is what create-if-absent relies on.
        Index(
            "uq_matches_live_brief",
            "brief_id",
            unique=True,
            postgresql_where=text("status <> 'expired'"),
            sqlite_where=text("status <> 'expired'"),
        ),
    )


class PoolStateRecord(Base):
    __tablename__ = "pool_state"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
