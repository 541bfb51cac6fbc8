"""Public operations of the spot merge core."""
from __future__ import annotations

import logging
from typing import Any

from spotmerge.auth import ModeratorPolicy, SettingsModeratorPolicy
from spotmerge.config import Settings, settings as default_settings
from spotmerge.dedup import DuplicateCandidate, DuplicatePair, detect_duplicates, scan_for_duplicates
from spotmerge.errors import SpotNotFound
from spotmerge.merge_service import MergeExecutor
from spotmerge.merge_workflow import MergeWorkflow
from spotmerge.metrics import DUPLICATE_CANDIDATES_OBS
from spotmerge.notifications import LoggingNotifier, Notifier
from spotmerge.redirects import RedirectResolver
from spotmerge.schemas.merge import Identity, MergeHistoryRecord, MergeProposal, MergeStatus, RedirectEntry, VoteChoice
from spotmerge.schemas.spot import Spot
from spotmerge.store.base import UnitOfWorkFactory

logger = logging.getLogger(__name__)


class SpotMergeService:
    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        *,
        moderators: ModeratorPolicy | None = None,
        notifier: Notifier | None = None,
        config: Settings | None = None,
    ) -> None:
        self.config = config or default_settings
        self._uow_factory = uow_factory
        self.moderators = moderators or SettingsModeratorPolicy(self.config.MODERATOR_USER_IDS)
        notifier = notifier if notifier is not None else LoggingNotifier()
        self.workflow = MergeWorkflow(
            uow_factory,
            self.moderators,
            notifier=notifier,
            max_redirect_hops=self.config.REDIRECT_MAX_HOPS,
        )
        self.executor = MergeExecutor(
            uow_factory,
            notifier=notifier,
            max_redirect_hops=self.config.REDIRECT_MAX_HOPS,
        )

    # ── Detection (read-only) ──

    async def detect_duplicates(self, spot_id: str | int, radius: float | None = None) -> list[DuplicateCandidate]:
        radius = self.config.DUPLICATE_RADIUS_M if radius is None else radius
        async with self._uow_factory() as uow:
            canonical_id = await RedirectResolver(uow.proposals, self.config.REDIRECT_MAX_HOPS).resolve(spot_id)
            spot = await uow.spots.get_by_id(canonical_id)
            if spot is None:
                raise SpotNotFound(canonical_id)
            pool = await uow.spots.list()
        candidates = detect_duplicates(spot, pool, radius)
        for candidate in candidates:
            DUPLICATE_CANDIDATES_OBS.labels(origin="detect").observe(candidate.confidence)
        return candidates

    async def scan_all(self, radius: float | None = None, min_confidence: int | None = None) -> list[DuplicatePair]:
        radius = self.config.DUPLICATE_RADIUS_M if radius is None else radius
        if min_confidence is None:
            min_confidence = self.config.AUTO_PROPOSE_MIN_CONFIDENCE
        async with self._uow_factory() as uow:
            spots = await uow.spots.list()
        return scan_for_duplicates(spots, radius, min_confidence)

    # ── Workflow ──

    async def propose(
        self,
        spot_id1: str | int,
        spot_id2: str | int,
        proposer: Identity,
        reason: str = "",
    ) -> MergeProposal:
        return await self.workflow.propose(spot_id1, spot_id2, proposer, reason)

    async def vote(self, proposal_id: str, voter: Identity, choice: VoteChoice | str) -> MergeProposal:
        return await self.workflow.vote(proposal_id, voter, choice)

    async def approve(self, proposal_id: str, actor: Identity) -> MergeProposal:
        return await self.workflow.approve(proposal_id, actor)

    async def reject(self, proposal_id: str, actor: Identity, reason: str = "") -> MergeProposal:
        return await self.workflow.reject(proposal_id, actor, reason)

    async def cancel(self, proposal_id: str, actor: Identity) -> MergeProposal:
        return await self.workflow.cancel(proposal_id, actor)

    async def get_proposal(self, proposal_id: str) -> MergeProposal:
        return await self.workflow.get_proposal(proposal_id)

    async def list_proposals(self, status: MergeStatus | str | None = None) -> list[MergeProposal]:
        return await self.workflow.list_proposals(status)

    # ── Execution ──

    async def execute(
        self,
        spot_id1: str | int,
        spot_id2: str | int,
        proposal_id: str | None = None,
        actor: Identity | None = None,
    ) -> Spot:
        return await self.executor.execute(spot_id1, spot_id2, proposal_id=proposal_id, actor=actor)

    async def execute_proposal(self, proposal_id: str, actor: Identity | None = None) -> Spot:
        return await self.executor.execute_proposal(proposal_id, actor=actor)

    # ── Redirects / history ──

    async def resolve(self, spot_id: str | int) -> str:
        async with self._uow_factory() as uow:
            return await RedirectResolver(uow.proposals, self.config.REDIRECT_MAX_HOPS).resolve(spot_id)

    async def list_redirects(self) -> list[RedirectEntry]:
        async with self._uow_factory() as uow:
            return await uow.proposals.list_redirects()

    async def list_history(self, limit: int | None = None) -> list[MergeHistoryRecord]:
        async with self._uow_factory() as uow:
            return await uow.proposals.list_history(limit)

    async def get_stats(self) -> dict[str, Any]:
        """Proposal counts per status; `executed` counts every executed merge."""
        async with self._uow_factory() as uow:
            counts = await uow.proposals.count_by_status()
            executed = await uow.proposals.count_history()
        return {
            "pending": counts.get(MergeStatus.PENDING.value, 0),
            "approved": counts.get(MergeStatus.APPROVED.value, 0),
            "executed": executed,
            "rejected": counts.get(MergeStatus.REJECTED.value, 0),
            "cancelled": counts.get(MergeStatus.CANCELLED.value, 0),
            "total_proposed": sum(counts.values()),
        }
