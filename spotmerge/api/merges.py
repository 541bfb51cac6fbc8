"""Duplicate detection and merge workflow API.

Identity comes from the `X-User-Id` / `X-User-Name` headers set by the
authenticating gateway; domain errors are rendered by the app-level
`SpotMergeError` handler.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from spotmerge.dedup import DuplicateCandidate, DuplicatePair
from spotmerge.dependencies import get_identity, get_service
from spotmerge.errors import PermissionDenied
from spotmerge.schemas.merge import Identity, MergeProposal, MergeStatus, VoteChoice
from spotmerge.scoring.confidence import describe_reasons
from spotmerge.service import SpotMergeService

logger = logging.getLogger(__name__)

spots_router = APIRouter(prefix="/spots", tags=["duplicates"])
router = APIRouter(prefix="/merges", tags=["merges"])


# ── Payloads ──


class ProposePayload(BaseModel):
    spot_id1: str | int = Field(description="Surviving spot")
    spot_id2: str | int = Field(description="Spot absorbed on execution")
    reason: str = ""


class VotePayload(BaseModel):
    choice: VoteChoice


class RejectPayload(BaseModel):
    reason: str = ""


class DirectMergePayload(BaseModel):
    spot_id1: str | int
    spot_id2: str | int


# ── Responses ──


class VotesResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    approve: list[str]
    reject: list[str]

    @field_validator("approve", "reject")
    @classmethod
    def sort_voters(cls, v: list[str]) -> list[str]:
        return sorted(v)


class ProposalResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    spot_id1: str
    spot_id2: str
    status: MergeStatus
    proposed_by: str
    proposed_by_name: str | None = None
    reason: str = ""
    spot1_name: str = ""
    spot2_name: str = ""
    distance_m: int | None = None
    name_similarity: int = 0
    votes: VotesResponse
    created_at: datetime
    approved_by: str | None = None
    approved_at: datetime | None = None
    rejected_by: str | None = None
    rejected_at: datetime | None = None
    rejection_reason: str | None = None
    cancelled_by: str | None = None
    cancelled_at: datetime | None = None
    executed_by: str | None = None
    executed_at: datetime | None = None

    @computed_field
    @property
    def vote_counts(self) -> dict[str, int]:
        return {"approve": len(self.votes.approve), "reject": len(self.votes.reject)}

    @classmethod
    def from_record(cls, proposal: MergeProposal) -> ProposalResponse:
        return cls.model_validate(proposal)


class StatsResponse(BaseModel):
    pending: int
    approved: int
    executed: int
    rejected: int
    cancelled: int
    total_proposed: int


def _reasons_out(codes: tuple[str, ...]) -> list[dict[str, str]]:
    return [{"code": code, "detail": detail} for code, detail in zip(codes, describe_reasons(codes))]


def _candidate_out(candidate: DuplicateCandidate) -> dict[str, Any]:
    return {
        "spot": candidate.spot.model_dump(mode="json"),
        "distance_m": round(candidate.distance_m, 1),
        "name_similarity": round(candidate.name_similarity * 100),
        "confidence": candidate.confidence,
        "reasons": _reasons_out(candidate.reasons),
    }


def _pair_out(pair: DuplicatePair) -> dict[str, Any]:
    return {
        "primary": pair.primary.model_dump(mode="json"),
        "duplicate": pair.duplicate.model_dump(mode="json"),
        "distance_m": round(pair.distance_m, 1),
        "name_similarity": round(pair.name_similarity * 100),
        "confidence": pair.confidence,
        "reasons": _reasons_out(pair.reasons),
    }


def _require_moderator(service: SpotMergeService, identity: Identity) -> None:
    if not service.moderators.has_moderator_capability(identity):
        raise PermissionDenied(f"{identity.user_id} may not execute merges")


# ── Spots ──


@spots_router.get("/{spot_id}/duplicates")
async def get_duplicates(
    spot_id: str,
    radius: float | None = Query(default=None, gt=0, description="Search radius in metres"),
    service: SpotMergeService = Depends(get_service),
) -> dict[str, Any]:
    candidates = await service.detect_duplicates(spot_id, radius)
    return {
        "spot_id": spot_id,
        "count": len(candidates),
        "candidates": [_candidate_out(c) for c in candidates],
    }


@spots_router.get("/{spot_id}/resolve")
async def resolve_spot(spot_id: str, service: SpotMergeService = Depends(get_service)) -> dict[str, Any]:
    canonical_id = await service.resolve(spot_id)
    return {"spot_id": spot_id, "canonical_id": canonical_id, "redirected": canonical_id != spot_id}


# ── Merges: collection-level routes (declared before /{proposal_id}) ──


@router.get("/scan")
async def scan_duplicates(
    radius: float | None = Query(default=None, gt=0),
    min_confidence: int | None = Query(default=None, ge=0, le=100),
    service: SpotMergeService = Depends(get_service),
) -> dict[str, Any]:
    pairs = await service.scan_all(radius, min_confidence)
    return {"count": len(pairs), "pairs": [_pair_out(p) for p in pairs]}


@router.get("/stats")
async def merge_stats(service: SpotMergeService = Depends(get_service)) -> StatsResponse:
    return StatsResponse(**await service.get_stats())


@router.get("/history")
async def merge_history(
    limit: int = Query(default=50, ge=1, le=500),
    service: SpotMergeService = Depends(get_service),
) -> list[dict[str, Any]]:
    return [r.model_dump(mode="json") for r in await service.list_history(limit)]


@router.get("/redirects")
async def merge_redirects(service: SpotMergeService = Depends(get_service)) -> list[dict[str, Any]]:
    return [r.model_dump(mode="json") for r in await service.list_redirects()]


@router.post("/execute")
async def execute_direct(
    payload: DirectMergePayload,
    identity: Identity = Depends(get_identity),
    service: SpotMergeService = Depends(get_service),
) -> dict[str, Any]:
    """Moderator shortcut: merge two spots without a proposal."""
    _require_moderator(service, identity)
    spot = await service.execute(payload.spot_id1, payload.spot_id2, actor=identity)
    return {"merge_id": None, "spot": spot.model_dump(mode="json")}


@router.post("")
async def create_proposal(
    payload: ProposePayload,
    identity: Identity = Depends(get_identity),
    service: SpotMergeService = Depends(get_service),
) -> ProposalResponse:
    proposal = await service.propose(payload.spot_id1, payload.spot_id2, identity, payload.reason)
    return ProposalResponse.from_record(proposal)


@router.get("")
async def list_proposals(
    status: MergeStatus | None = None,
    service: SpotMergeService = Depends(get_service),
) -> list[ProposalResponse]:
    return [ProposalResponse.from_record(p) for p in await service.list_proposals(status)]


# ── Merges: single proposal ──


@router.get("/{proposal_id}")
async def get_proposal(proposal_id: str, service: SpotMergeService = Depends(get_service)) -> ProposalResponse:
    return ProposalResponse.from_record(await service.get_proposal(proposal_id))


@router.post("/{proposal_id}/vote")
async def vote_proposal(
    proposal_id: str,
    payload: VotePayload,
    identity: Identity = Depends(get_identity),
    service: SpotMergeService = Depends(get_service),
) -> ProposalResponse:
    return ProposalResponse.from_record(await service.vote(proposal_id, identity, payload.choice))


@router.post("/{proposal_id}/approve")
async def approve_proposal(
    proposal_id: str,
    identity: Identity = Depends(get_identity),
    service: SpotMergeService = Depends(get_service),
) -> ProposalResponse:
    return ProposalResponse.from_record(await service.approve(proposal_id, identity))


@router.post("/{proposal_id}/reject")
async def reject_proposal(
    proposal_id: str,
    payload: RejectPayload | None = None,
    identity: Identity = Depends(get_identity),
    service: SpotMergeService = Depends(get_service),
) -> ProposalResponse:
    reason = payload.reason if payload else ""
    return ProposalResponse.from_record(await service.reject(proposal_id, identity, reason))


@router.post("/{proposal_id}/cancel")
async def cancel_proposal(
    proposal_id: str,
    identity: Identity = Depends(get_identity),
    service: SpotMergeService = Depends(get_service),
) -> ProposalResponse:
    return ProposalResponse.from_record(await service.cancel(proposal_id, identity))


@router.post("/{proposal_id}/execute")
async def execute_proposal(
    proposal_id: str,
    identity: Identity = Depends(get_identity),
    service: SpotMergeService = Depends(get_service),
) -> dict[str, Any]:
    _require_moderator(service, identity)
    spot = await service.execute_proposal(proposal_id, identity)
    return {"merge_id": proposal_id, "spot": spot.model_dump(mode="json")}
