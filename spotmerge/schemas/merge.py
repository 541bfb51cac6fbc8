"""Merge workflow records: proposals, votes, redirects and history."""
from __future__ import annotations

import enum
from datetime import datetime
from typing import Any, FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from spotmerge.schemas.spot import Spot, normalize_spot_id


class MergeStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXECUTED = "executed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({MergeStatus.REJECTED, MergeStatus.EXECUTED, MergeStatus.CANCELLED})


class VoteChoice(str, enum.Enum):
    APPROVE = "approve"
    REJECT = "reject"


class Identity(BaseModel):
    """Actor behind a workflow operation. There is no anonymous identity."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    display_name: Optional[str] = None

    @field_validator("user_id", mode="before")
    @classmethod
    def validate_user_id(cls, v: Any) -> str:
        user_id = str(v or "").strip()
        if not user_id:
            raise ValueError("Identity requires a user_id")
        return user_id

    @property
    def label(self) -> str:
        return self.display_name or self.user_id


def pair_key(spot_id1: str, spot_id2: str) -> str:
    """Order-independent key of an unordered spot pair."""
    a, b = sorted((normalize_spot_id(spot_id1), normalize_spot_id(spot_id2)))
    return f"{a}|{b}"


class VoteSets(BaseModel):
    """Two disjoint voter sets; a voter sits in at most one of them."""

    model_config = ConfigDict(frozen=True)

    approve: FrozenSet[str] = frozenset()
    reject: FrozenSet[str] = frozenset()

    @model_validator(mode="after")
    def validate_disjoint(self) -> "VoteSets":
        overlap = self.approve & self.reject
        if overlap:
            raise ValueError(f"Voters in both sets: {sorted(overlap)}")
        return self

    def cast(self, voter_id: str, choice: VoteChoice) -> VoteSets:
        """Move `voter_id` into the chosen set (last vote wins)."""
        approve = self.approve - {voter_id}
        reject = self.reject - {voter_id}
        if VoteChoice(choice) == VoteChoice.APPROVE:
            approve = approve | {voter_id}
        else:
            reject = reject | {voter_id}
        return VoteSets(approve=frozenset(approve), reject=frozenset(reject))

    def choice_of(self, voter_id: str) -> VoteChoice | None:
        if voter_id in self.approve:
            return VoteChoice.APPROVE
        if voter_id in self.reject:
            return VoteChoice.REJECT
        return None

    def tally(self) -> dict[str, int]:
        return {"approve": len(self.approve), "reject": len(self.reject)}


class MergeProposal(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    spot_id1: str
    spot_id2: str
    proposed_by: str
    created_at: datetime
    status: MergeStatus = MergeStatus.PENDING
    proposed_by_name: Optional[str] = None
    reason: str = ""
    spot1_name: str = ""
    spot2_name: str = ""
    distance_m: Optional[int] = Field(default=None, ge=0)
    name_similarity: int = Field(default=0, ge=0, le=100)
    votes: VoteSets = Field(default_factory=VoteSets)
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    executed_by: Optional[str] = None
    executed_at: Optional[datetime] = None

    @field_validator("spot_id1", "spot_id2", mode="before")
    @classmethod
    def validate_spot_id(cls, v: Any) -> str:
        return normalize_spot_id(v)

    @model_validator(mode="after")
    def validate_distinct_spots(self) -> "MergeProposal":
        if self.spot_id1 == self.spot_id2:
            raise ValueError("A merge proposal needs two distinct spots")
        return self

    @property
    def pair_key(self) -> str:
        return pair_key(self.spot_id1, self.spot_id2)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def with_votes(self, votes: VoteSets) -> MergeProposal:
        return self.model_copy(update={"votes": votes})


class RedirectEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    from_spot_id: str
    to_spot_id: str
    created_at: datetime
    merge_id: Optional[str] = None

    @field_validator("from_spot_id", "to_spot_id", mode="before")
    @classmethod
    def validate_spot_id(cls, v: Any) -> str:
        return normalize_spot_id(v)

    @model_validator(mode="after")
    def validate_not_self(self) -> "RedirectEntry":
        if self.from_spot_id == self.to_spot_id:
            raise ValueError(f"Redirect from {self.from_spot_id} to itself")
        return self


class MergeHistoryRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    survivor_id: str
    absorbed_id: str
    survivor_snapshot: Spot
    absorbed_snapshot: Spot
    consolidated: Spot
    executed_at: datetime
    merge_id: Optional[str] = None
    executed_by: Optional[str] = None
    moved_references: int = Field(default=0, ge=0)
    deduped_references: int = Field(default=0, ge=0)
