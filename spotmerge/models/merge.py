"""Merge proposal, vote, redirect and history models."""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from spotmerge.db import Base
from spotmerge.models.spot import JSONType


class MergeProposalRow(Base):
    """Proposal to absorb `spot_id2` into `spot_id1`; never deleted."""

    __tablename__ = "merge_proposals"
    __table_args__ = (
        # At most one pending proposal per unordered pair.
        Index(
            "uq_merge_proposals_pending_pair",
            "pair_key",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    spot_id1: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    spot_id2: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    pair_key: Mapped[str] = mapped_column(String(160), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), default="pending", nullable=False, index=True)
    proposed_by: Mapped[str] = mapped_column(String(128), nullable=False)
    proposed_by_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    reason: Mapped[str] = mapped_column(Text, default="", nullable=False)
    spot1_name: Mapped[str] = mapped_column(String(520), default="", nullable=False)
    spot2_name: Mapped[str] = mapped_column(String(520), default="", nullable=False)
    distance_m: Mapped[int | None] = mapped_column(Integer, nullable=True)
    name_similarity: Mapped[int] = mapped_column(Integer, default=0, nullable=False, comment="percent")
    approved_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    executed_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    executed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<MergeProposalRow id={self.id} {self.spot_id2} -> {self.spot_id1} {self.status}>"


class MergeVoteRow(Base):
    """One row per voter and proposal, so a voter holds a single choice."""

    __tablename__ = "merge_votes"

    proposal_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("merge_proposals.id", ondelete="CASCADE"), primary_key=True
    )
    voter_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    choice: Mapped[str] = mapped_column(String(16), nullable=False, comment="approve | reject")
    voted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class SpotRedirectRow(Base):
    """Permanent absorbed -> survivor mapping written by merge execution."""

    __tablename__ = "spot_redirects"

    from_spot_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    to_spot_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    merge_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<SpotRedirectRow {self.from_spot_id} -> {self.to_spot_id}>"


class MergeHistoryRow(Base):
    """Append-only audit trail, one row per executed merge."""

    __tablename__ = "merge_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    survivor_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    absorbed_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    merge_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    survivor_snapshot: Mapped[dict] = mapped_column(JSONType, nullable=False)
    absorbed_snapshot: Mapped[dict] = mapped_column(JSONType, nullable=False)
    consolidated: Mapped[dict] = mapped_column(JSONType, nullable=False)
    executed_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    moved_references: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    deduped_references: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    executed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<MergeHistoryRow id={self.id} {self.absorbed_id} -> {self.survivor_id}>"
