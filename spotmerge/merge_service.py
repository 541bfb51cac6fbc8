"""Spot consolidation and merge execution.

Used by the explicit execute action of the merge workflow and by direct
moderator merges.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from spotmerge.config import settings
from spotmerge.errors import (
    ProposalNotFound,
    ProposalNotPending,
    ProposalPairMismatch,
    SelfMergeRejected,
    SpotNotFound,
)
from spotmerge.metrics import MERGE_TRANSITIONS_TOTAL, MIGRATED_REFERENCES_TOTAL, SPOT_MERGES_TOTAL
from spotmerge.notifications import MERGE_EXECUTED, Notifier, safe_notify
from spotmerge.redirects import RedirectResolver
from spotmerge.schemas.merge import (
    Identity,
    MergeHistoryRecord,
    MergeProposal,
    MergeStatus,
    RedirectEntry,
    pair_key,
)
from spotmerge.schemas.spot import Spot
from spotmerge.state_engine import transition_proposal
from spotmerge.store.base import UnitOfWork, UnitOfWorkFactory, pair_lock_key, proposal_lock_key, spot_lock_key

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class MergeResult:
    spot: Spot
    survivor_id: str
    absorbed_id: str
    merge_id: str | None = None
    moved_references: int = 0
    deduped_references: int = 0


def is_placeholder_photo(photo_url: str | None, marker: str | None = None) -> bool:
    marker = settings.PLACEHOLDER_PHOTO_MARKER if marker is None else marker
    if not photo_url:
        return True
    return bool(marker) and marker in photo_url


def _weighted(value1: float, weight1: int, value2: float, weight2: int) -> float:
    if weight2 <= 0:
        return value1
    if weight1 <= 0:
        return value2
    return (value1 * weight1 + value2 * weight2) / (weight1 + weight2)


def _merge_ratings(survivor: Spot, absorbed: Spot) -> dict[str, float]:
    reviews1 = survivor.total_reviews
    reviews2 = absorbed.total_reviews
    merged: dict[str, float] = {}
    for key in sorted(set(survivor.ratings) | set(absorbed.ratings)):
        r1 = float(survivor.ratings.get(key, 0.0))
        r2 = float(absorbed.ratings.get(key, 0.0))
        if reviews1 + reviews2 > 0:
            merged[key] = _weighted(r1, reviews1, r2, reviews2)
        else:
            merged[key] = max(r1, r2)
    return merged


def _pick_coordinates(survivor: Spot, absorbed: Spot):
    if absorbed.verified and not survivor.verified and absorbed.coordinates is not None:
        return absorbed.coordinates
    return survivor.coordinates if survivor.coordinates is not None else absorbed.coordinates


def _pick_photo(survivor: Spot, absorbed: Spot, marker: str | None) -> str | None:
    if not is_placeholder_photo(survivor.photo_url, marker):
        return survivor.photo_url
    if not is_placeholder_photo(absorbed.photo_url, marker):
        return absorbed.photo_url
    return survivor.photo_url or absorbed.photo_url


def _latest(a: datetime | None, b: datetime | None) -> datetime | None:
    if a is None or b is None:
        return a or b
    return max(a, b)


def consolidate_spots(
    survivor: Spot,
    absorbed: Spot,
    *,
    merged_at: datetime | None = None,
    placeholder_marker: str | None = None,
) -> Spot:
    """Consolidate `absorbed` into `survivor`, keeping the best of each field.

    Merging with an empty or strictly inferior record leaves the survivor's
    data unchanged (only the merge provenance is added).
    """
    reviews = survivor.total_reviews + absorbed.total_reviews
    if reviews > 0:
        global_rating = _weighted(
            survivor.global_rating, survivor.total_reviews, absorbed.global_rating, absorbed.total_reviews
        )
    else:
        global_rating = max(survivor.global_rating, absorbed.global_rating)

    checkins = survivor.checkins + absorbed.checkins
    if survivor.avg_wait_time is None or absorbed.avg_wait_time is None:
        avg_wait_time = survivor.avg_wait_time if survivor.avg_wait_time is not None else absorbed.avg_wait_time
    elif checkins > 0:
        avg_wait_time = _weighted(survivor.avg_wait_time, survivor.checkins, absorbed.avg_wait_time, absorbed.checkins)
    else:
        avg_wait_time = survivor.avg_wait_time

    # Longer description wins, ties keep the survivor's.
    description = survivor.description
    if len(absorbed.description or "") > len(survivor.description or ""):
        description = absorbed.description

    merged_from = tuple(
        dict.fromkeys(survivor.merged_from + (absorbed.id,) + absorbed.merged_from)
    )

    return survivor.model_copy(
        update={
            "coordinates": _pick_coordinates(survivor, absorbed),
            "from_label": survivor.from_label or absorbed.from_label,
            "to_label": survivor.to_label or absorbed.to_label,
            "country": survivor.country or absorbed.country,
            "source": survivor.source or absorbed.source,
            "ratings": _merge_ratings(survivor, absorbed),
            "global_rating": global_rating,
            "total_reviews": reviews,
            "description": description,
            "photo_url": _pick_photo(survivor, absorbed, placeholder_marker),
            "checkins": checkins,
            "avg_wait_time": avg_wait_time,
            "last_used": _latest(survivor.last_used, absorbed.last_used),
            "verified": survivor.verified or absorbed.verified,
            "merged_from": merged_from,
            "merged_at": merged_at or datetime.now(timezone.utc),
        }
    )


class MergeExecutor:
    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        notifier: Notifier | None = None,
        max_redirect_hops: int | None = None,
    ) -> None:
        self._uow_factory = uow_factory
        self._notifier = notifier
        self._max_redirect_hops = max_redirect_hops

    async def _close_superseded(
        self,
        uow: UnitOfWork,
        merged_pair: str,
        keep_id: str | None,
        actor: Identity | None,
        now: datetime,
    ) -> list[tuple[MergeStatus, MergeProposal]]:
        """Pending proposals on a merged pair are cancelled, approved ones marked executed."""
        closed: list[tuple[MergeStatus, MergeProposal]] = []
        for other in await uow.proposals.list_for_pair(merged_pair):
            if other.id == keep_id or other.is_terminal:
                continue
            target = MergeStatus.CANCELLED if other.status == MergeStatus.PENDING else MergeStatus.EXECUTED
            updated = transition_proposal(other, target, actor=actor, now_utc=now)
            await uow.proposals.save(updated, expected_status=other.status)
            closed.append((other.status, updated))
        return closed

    async def execute(
        self,
        spot_id1: str | int,
        spot_id2: str | int,
        proposal_id: str | None = None,
        actor: Identity | None = None,
    ) -> Spot:
        """Absorb `spot_id2` into `spot_id1` and return the consolidated spot."""
        result = await self.execute_merge(spot_id1, spot_id2, proposal_id=proposal_id, actor=actor)
        return result.spot

    async def execute_proposal(self, proposal_id: str, actor: Identity | None = None) -> Spot:
        async with self._uow_factory() as uow:
            proposal = await uow.proposals.get(proposal_id)
        if proposal is None:
            raise ProposalNotFound(proposal_id)
        # Re-checked under lock in execute_merge.
        if proposal.status != MergeStatus.APPROVED:
            raise ProposalNotPending(proposal.id, proposal.status.value, MergeStatus.APPROVED.value)
        return await self.execute(proposal.spot_id1, proposal.spot_id2, proposal_id=proposal_id, actor=actor)

    async def execute_merge(
        self,
        spot_id1: str | int,
        spot_id2: str | int,
        *,
        proposal_id: str | None = None,
        actor: Identity | None = None,
    ) -> MergeResult:
        """Single commit: spot replace + remove, reference migration,
        redirect, history append, (if given) proposal approved -> executed, and
        closing of any other open proposal on the merged pair.
        """
        now = datetime.now(timezone.utc)
        async with self._uow_factory() as uow:
            resolver = RedirectResolver(uow.proposals, self._max_redirect_hops)
            survivor_id = await resolver.resolve(spot_id1)
            absorbed_id = await resolver.resolve(spot_id2)
            if survivor_id == absorbed_id:
                raise SelfMergeRejected(survivor_id)

            merged_pair = pair_key(survivor_id, absorbed_id)
            open_ids = [p.id for p in await uow.proposals.list_for_pair(merged_pair) if not p.is_terminal]
            lock_keys = [spot_lock_key(survivor_id), spot_lock_key(absorbed_id), pair_lock_key(merged_pair)]
            lock_keys += [proposal_lock_key(i) for i in [proposal_id, *open_ids] if i]
            await uow.lock(*lock_keys)

            proposal: MergeProposal | None = None
            if proposal_id:
                proposal = await uow.proposals.get(proposal_id)
                if proposal is None:
                    raise ProposalNotFound(proposal_id)
                if proposal.status != MergeStatus.APPROVED:
                    raise ProposalNotPending(proposal.id, proposal.status.value, MergeStatus.APPROVED.value)
                proposal_pair = pair_key(
                    await resolver.resolve(proposal.spot_id1),
                    await resolver.resolve(proposal.spot_id2),
                )
                if proposal_pair != merged_pair:
                    raise ProposalPairMismatch(
                        f"Proposal {proposal.id} covers {proposal_pair}, not {survivor_id}|{absorbed_id}"
                    )

            survivor = await uow.spots.get_by_id(survivor_id)
            if survivor is None:
                raise SpotNotFound(survivor_id)
            absorbed = await uow.spots.get_by_id(absorbed_id)
            if absorbed is None:
                raise SpotNotFound(absorbed_id)

            await resolver.ensure_acyclic(absorbed_id, survivor_id)

            consolidated = consolidate_spots(survivor, absorbed, merged_at=now)
            await uow.spots.replace(survivor_id, consolidated)
            await uow.spots.remove(absorbed_id)
            moved, deduped = await uow.references.migrate(absorbed_id, survivor_id)
            await uow.proposals.add_redirect(
                RedirectEntry(
                    from_spot_id=absorbed_id,
                    to_spot_id=survivor_id,
                    created_at=now,
                    merge_id=proposal_id,
                )
            )
            await uow.proposals.append_history(
                MergeHistoryRecord(
                    survivor_id=survivor_id,
                    absorbed_id=absorbed_id,
                    survivor_snapshot=survivor,
                    absorbed_snapshot=absorbed,
                    consolidated=consolidated,
                    executed_at=now,
                    merge_id=proposal_id,
                    executed_by=actor.user_id if actor else None,
                    moved_references=moved,
                    deduped_references=deduped,
                )
            )
            if proposal is not None:
                executed = transition_proposal(proposal, MergeStatus.EXECUTED, actor=actor, now_utc=now)
                await uow.proposals.save(executed, expected_status=MergeStatus.APPROVED)
            closed = await self._close_superseded(uow, merged_pair, proposal_id, actor, now)
            await uow.commit()

        origin = "proposal" if proposal_id else "direct"
        SPOT_MERGES_TOTAL.labels(origin=origin).inc()
        MIGRATED_REFERENCES_TOTAL.labels(outcome="moved").inc(moved)
        MIGRATED_REFERENCES_TOTAL.labels(outcome="deduped").inc(deduped)
        if proposal_id:
            MERGE_TRANSITIONS_TOTAL.labels(from_status="approved", to_status="executed").inc()
        for previous_status, superseded in closed:
            MERGE_TRANSITIONS_TOTAL.labels(from_status=previous_status.value, to_status=superseded.status.value).inc()
            logger.info(
                "Proposal %s closed as %s by merge of %s into %s",
                superseded.id,
                superseded.status.value,
                absorbed_id,
                survivor_id,
            )
        logger.info(
            "Merged spot %s into %s",
            absorbed_id,
            survivor_id,
            extra={"merge_id": proposal_id, "moved_references": moved, "deduped_references": deduped},
        )
        safe_notify(
            self._notifier,
            MERGE_EXECUTED,
            {
                "merge_id": proposal_id,
                "survivor_id": survivor_id,
                "absorbed_id": absorbed_id,
                "moved_references": moved,
                "deduped_references": deduped,
            },
        )
        return MergeResult(
            spot=consolidated,
            survivor_id=survivor_id,
            absorbed_id=absorbed_id,
            merge_id=proposal_id,
            moved_references=moved,
            deduped_references=deduped,
        )
