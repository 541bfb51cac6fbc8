"""Spot and Favorite models: tables owned by the spot repository."""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Float, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from spotmerge.db import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


class SpotRow(Base):
    """User-contributed hitchhiking spot."""

    __tablename__ = "spots"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    lng: Mapped[float | None] = mapped_column(Float, nullable=True)
    from_label: Mapped[str] = mapped_column(String(256), default="", nullable=False)
    to_label: Mapped[str] = mapped_column(String(256), default="", nullable=False)
    country: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    ratings_json: Mapped[dict | None] = mapped_column(
        JSONType, nullable=True, comment="accessibility / safety / visibility / traffic"
    )
    global_rating: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    total_reviews: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    photo_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    checkins: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    avg_wait_time: Mapped[float | None] = mapped_column(Float, nullable=True)
    verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    source: Mapped[str | None] = mapped_column(String(64), nullable=True)
    merged_from_json: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    merged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<SpotRow id={self.id} {self.from_label} -> {self.to_label}>"


class FavoriteRow(Base):
    """A user's favourite spot; rewritten when the spot is merged away."""

    __tablename__ = "favorites"
    __table_args__ = (UniqueConstraint("owner_id", "spot_id", name="uq_favorites_owner_spot"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    spot_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<FavoriteRow owner={self.owner_id} spot={self.spot_id}>"
