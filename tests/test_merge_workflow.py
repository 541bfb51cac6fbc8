import asyncio

import pytest

from spotmerge.auth import SettingsModeratorPolicy
from spotmerge.errors import (
    PermissionDenied,
    ProposalNotFound,
    ProposalNotPending,
    SelfMergeRejected,
    SpotNotFound,
)
from spotmerge.notifications import PROPOSAL_CREATED, PROPOSAL_REJECTED, VOTE_RECORDED
from spotmerge.schemas.merge import Identity, MergeStatus, VoteChoice
from spotmerge.service import SpotMergeService

ALICE = Identity(user_id="alice", display_name="Alice")
BOB = Identity(user_id="bob")
MOD = Identity(user_id="mod")


@pytest.fixture
def seeded(backend, make_spot):
    backend.add_spot(make_spot("1", 0))
    backend.add_spot(make_spot("2", 8))
    backend.add_spot(make_spot("3", 500, from_label="Grenoble", to_label="Turin"))
    return backend


def test_propose_records_metrics_at_proposal_time(seeded, service, notifier) -> None:
    proposal = asyncio.run(service.propose("1", "2", ALICE, "same lay-by"))

    assert proposal.status == MergeStatus.PENDING
    assert proposal.proposed_by == "alice"
    assert proposal.proposed_by_name == "Alice"
    assert proposal.distance_m == 8
    assert proposal.name_similarity == 100
    assert proposal.spot1_name == "Lyon -> Paris"
    assert proposal.reason == "same lay-by"
    assert notifier.types() == [PROPOSAL_CREATED]


def test_propose_is_idempotent_per_unordered_pair(seeded, service, notifier) -> None:
    async def scenario():
        first = await service.propose("1", "2", ALICE)
        again = await service.propose(2, 1, BOB)
        return first, again, await service.list_proposals()

    first, again, proposals = asyncio.run(scenario())

    assert again.id == first.id
    assert again.proposed_by == "alice"
    assert len(proposals) == 1
    assert notifier.types() == [PROPOSAL_CREATED]


def test_concurrent_proposals_share_one_pending_record(seeded, service) -> None:
    async def scenario():
        results = await asyncio.gather(*(service.propose("1", "2", Identity(user_id=f"user{i}")) for i in range(5)))
        return results, await service.list_proposals(MergeStatus.PENDING)

    results, pending = asyncio.run(scenario())

    assert len({p.id for p in results}) == 1
    assert len(pending) == 1


def test_propose_rejects_self_merge_and_missing_spots(seeded, service) -> None:
    with pytest.raises(SelfMergeRejected):
        asyncio.run(service.propose("1", 1, ALICE))
    with pytest.raises(SpotNotFound):
        asyncio.run(service.propose("1", "404", ALICE))
    assert asyncio.run(service.list_proposals()) == []


def test_last_vote_wins_and_terminal_proposals_refuse_votes(seeded, service, notifier) -> None:
    async def scenario():
        proposal = await service.propose("1", "2", ALICE)
        await service.vote(proposal.id, BOB, VoteChoice.APPROVE)
        flipped = await service.vote(proposal.id, BOB, "reject")
        await service.reject(proposal.id, MOD, "different sides of the road")
        with pytest.raises(ProposalNotPending):
            await service.vote(proposal.id, BOB, VoteChoice.APPROVE)
        return flipped, await service.get_proposal(proposal.id)

    flipped, final = asyncio.run(scenario())

    assert flipped.votes.reject == frozenset({"bob"})
    assert flipped.votes.approve == frozenset()
    assert final.status == MergeStatus.REJECTED
    assert final.rejected_by == "mod"
    assert final.rejection_reason == "different sides of the road"
    assert final.votes.reject == frozenset({"bob"})
    assert notifier.types() == [PROPOSAL_CREATED, VOTE_RECORDED, VOTE_RECORDED, PROPOSAL_REJECTED]


def test_only_moderators_approve_or_reject(seeded, service) -> None:
    async def scenario():
        proposal = await service.propose("1", "2", ALICE)
        with pytest.raises(PermissionDenied):
            await service.approve(proposal.id, ALICE)
        with pytest.raises(PermissionDenied):
            await service.reject(proposal.id, BOB)
        return await service.approve(proposal.id, MOD)

    approved = asyncio.run(scenario())

    assert approved.status == MergeStatus.APPROVED
    assert approved.approved_by == "mod"
    assert approved.approved_at is not None


def test_cancel_by_proposer_frees_the_pair(seeded, service) -> None:
    async def scenario():
        proposal = await service.propose("1", "2", ALICE)
        with pytest.raises(PermissionDenied):
            await service.cancel(proposal.id, BOB)
        cancelled = await service.cancel(proposal.id, ALICE)
        with pytest.raises(ProposalNotPending):
            await service.approve(proposal.id, MOD)
        fresh = await service.propose("1", "2", BOB)
        return proposal, cancelled, fresh

    proposal, cancelled, fresh = asyncio.run(scenario())

    assert cancelled.status == MergeStatus.CANCELLED
    assert cancelled.cancelled_by == "alice"
    assert fresh.id != proposal.id
    assert fresh.status == MergeStatus.PENDING


def test_unknown_proposal(seeded, service) -> None:
    with pytest.raises(ProposalNotFound):
        asyncio.run(service.get_proposal("merge_missing"))
    with pytest.raises(ProposalNotFound):
        asyncio.run(service.vote("merge_missing", BOB, "approve"))


def test_notification_failure_does_not_fail_the_operation(seeded) -> None:
    class BrokenNotifier:
        def notify(self, event_type, payload) -> None:
            raise ConnectionError("broker down")

    service = SpotMergeService(
        seeded.unit_of_work,
        moderators=SettingsModeratorPolicy(["mod"]),
        notifier=BrokenNotifier(),
    )

    proposal = asyncio.run(service.propose("1", "2", ALICE))

    assert proposal.status == MergeStatus.PENDING


def test_filter_proposals_by_status(seeded, service) -> None:
    async def scenario():
        first = await service.propose("1", "2", ALICE)
        await service.propose("1", "3", ALICE)
        await service.approve(first.id, MOD)
        return (
            await service.list_proposals("approved"),
            await service.list_proposals(MergeStatus.PENDING),
        )

    approved, pending = asyncio.run(scenario())

    assert [p.spot_id2 for p in approved] == ["2"]
    assert [p.spot_id2 for p in pending] == ["3"]
