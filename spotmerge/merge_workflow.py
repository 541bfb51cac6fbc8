"""Merge proposal lifecycle: propose, vote, approve, reject, cancel."""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from spotmerge.auth import ModeratorPolicy
from spotmerge.core.geo import haversine_distance_m
from spotmerge.core.text_similarity import name_similarity
from spotmerge.errors import ProposalNotFound, SelfMergeRejected, SpotNotFound
from spotmerge.metrics import MERGE_PROPOSALS_TOTAL, MERGE_TRANSITIONS_TOTAL, MERGE_VOTES_TOTAL
from spotmerge.notifications import (
    PROPOSAL_APPROVED,
    PROPOSAL_CANCELLED,
    PROPOSAL_CREATED,
    PROPOSAL_REJECTED,
    VOTE_RECORDED,
    Notifier,
    safe_notify,
)
from spotmerge.redirects import RedirectResolver
from spotmerge.schemas.merge import Identity, MergeProposal, MergeStatus, VoteChoice, pair_key
from spotmerge.schemas.spot import Spot
from spotmerge.state_engine import ensure_action_allowed, transition_proposal
from spotmerge.store.base import UnitOfWork, UnitOfWorkFactory, pair_lock_key, proposal_lock_key

logger = logging.getLogger(__name__)


def new_proposal_id() -> str:
    return f"merge_{uuid.uuid4().hex[:16]}"


def proposal_metrics(spot1: Spot, spot2: Spot) -> tuple[int | None, int]:
    """Rounded distance (metres) and label similarity (percent) at proposal time."""
    distance = None
    if spot1.coordinates is not None and spot2.coordinates is not None:
        distance = round(haversine_distance_m(spot1.coordinates, spot2.coordinates))
    similarity = name_similarity(
        f"{spot1.from_label} {spot1.to_label}",
        f"{spot2.from_label} {spot2.to_label}",
    )
    return distance, round(similarity * 100)


def proposal_payload(proposal: MergeProposal) -> dict:
    return {
        "merge_id": proposal.id,
        "spot_id1": proposal.spot_id1,
        "spot_id2": proposal.spot_id2,
        "status": proposal.status.value,
        "votes": proposal.votes.tally(),
    }


class MergeWorkflow:
    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        moderators: ModeratorPolicy,
        notifier: Notifier | None = None,
        max_redirect_hops: int | None = None,
    ) -> None:
        self._uow_factory = uow_factory
        self._moderators = moderators
        self._notifier = notifier
        self._max_redirect_hops = max_redirect_hops

    def _resolver(self, uow: UnitOfWork) -> RedirectResolver:
        return RedirectResolver(uow.proposals, self._max_redirect_hops)

    async def propose(
        self,
        spot_id1: str | int,
        spot_id2: str | int,
        proposer: Identity,
        reason: str = "",
    ) -> MergeProposal:
        """Create a pending proposal, or return the pending one covering the same pair.

        `spot_id1` is the survivor and `spot_id2` the absorbed spot, both
        taken after redirect resolution.
        """
        async with self._uow_factory() as uow:
            resolver = self._resolver(uow)
            survivor_id = await resolver.resolve(spot_id1)
            absorbed_id = await resolver.resolve(spot_id2)
            if survivor_id == absorbed_id:
                raise SelfMergeRejected(survivor_id)

            await uow.lock(pair_lock_key(pair_key(survivor_id, absorbed_id)))
            survivor = await uow.spots.get_by_id(survivor_id)
            if survivor is None:
                raise SpotNotFound(survivor_id)
            absorbed = await uow.spots.get_by_id(absorbed_id)
            if absorbed is None:
                raise SpotNotFound(absorbed_id)

            distance, similarity = proposal_metrics(survivor, absorbed)
            candidate = MergeProposal(
                id=new_proposal_id(),
                spot_id1=survivor.id,
                spot_id2=absorbed.id,
                proposed_by=proposer.user_id,
                proposed_by_name=proposer.display_name,
                reason=reason or "",
                spot1_name=survivor.display_name,
                spot2_name=absorbed.display_name,
                distance_m=distance,
                name_similarity=similarity,
                created_at=datetime.now(timezone.utc),
            )
            proposal, created = await uow.proposals.create_if_absent(candidate)
            await uow.commit()

        MERGE_PROPOSALS_TOTAL.labels(outcome="created" if created else "reused").inc()
        if created:
            logger.info(
                "Merge proposed: %s <- %s by %s",
                proposal.spot_id1,
                proposal.spot_id2,
                proposer.user_id,
                extra={"merge_id": proposal.id, "distance_m": distance, "name_similarity": similarity},
            )
            safe_notify(self._notifier, PROPOSAL_CREATED, proposal_payload(proposal))
        else:
            logger.info("Pending merge %s already covers %s", proposal.id, proposal.pair_key)
        return proposal

    async def get_proposal(self, proposal_id: str) -> MergeProposal:
        async with self._uow_factory() as uow:
            proposal = await uow.proposals.get(proposal_id)
        if proposal is None:
            raise ProposalNotFound(proposal_id)
        return proposal

    async def list_proposals(self, status: MergeStatus | str | None = None) -> list[MergeProposal]:
        async with self._uow_factory() as uow:
            return await uow.proposals.list(MergeStatus(status) if status else None)

    async def vote(self, proposal_id: str, voter: Identity, choice: VoteChoice | str) -> MergeProposal:
        """Record `voter`'s choice; a later vote replaces an earlier one."""
        choice = VoteChoice(choice)
        async with self._uow_factory() as uow:
            await uow.lock(proposal_lock_key(proposal_id))
            proposal = await self._load(uow, proposal_id)
            ensure_action_allowed(proposal, action="VOTE", actor=voter, is_moderator=False)
            updated = proposal.with_votes(proposal.votes.cast(voter.user_id, choice))
            updated = await uow.proposals.save(updated, expected_status=MergeStatus.PENDING)
            await uow.commit()

        MERGE_VOTES_TOTAL.labels(choice=choice.value).inc()
        logger.info("Vote %s on %s by %s", choice.value, proposal_id, voter.user_id)
        safe_notify(self._notifier, VOTE_RECORDED, proposal_payload(updated))
        return updated

    async def approve(self, proposal_id: str, actor: Identity) -> MergeProposal:
        return await self._moderate(proposal_id, actor, "APPROVE", MergeStatus.APPROVED, PROPOSAL_APPROVED)

    async def reject(self, proposal_id: str, actor: Identity, reason: str = "") -> MergeProposal:
        return await self._moderate(
            proposal_id, actor, "REJECT", MergeStatus.REJECTED, PROPOSAL_REJECTED, reason=reason
        )

    async def cancel(self, proposal_id: str, actor: Identity) -> MergeProposal:
        """Withdraw a pending proposal; only its proposer or a moderator may."""
        return await self._moderate(proposal_id, actor, "CANCEL", MergeStatus.CANCELLED, PROPOSAL_CANCELLED)

    async def _moderate(
        self,
        proposal_id: str,
        actor: Identity,
        action: str,
        new_status: MergeStatus,
        event_type: str,
        reason: str | None = None,
    ) -> MergeProposal:
        is_moderator = self._moderators.has_moderator_capability(actor)
        async with self._uow_factory() as uow:
            await uow.lock(proposal_lock_key(proposal_id))
            proposal = await self._load(uow, proposal_id)
            ensure_action_allowed(proposal, action=action, actor=actor, is_moderator=is_moderator)
            updated = transition_proposal(proposal, new_status, actor=actor, reason=reason)
            updated = await uow.proposals.save(updated, expected_status=proposal.status)
            await uow.commit()

        MERGE_TRANSITIONS_TOTAL.labels(from_status=proposal.status.value, to_status=new_status.value).inc()
        logger.info("Merge %s %s by %s", proposal_id, new_status.value, actor.user_id)
        safe_notify(self._notifier, event_type, proposal_payload(updated))
        return updated

    @staticmethod
    async def _load(uow: UnitOfWork, proposal_id: str) -> MergeProposal:
        proposal = await uow.proposals.get(proposal_id)
        if proposal is None:
            raise ProposalNotFound(proposal_id)
        return proposal
