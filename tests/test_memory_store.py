import asyncio
from datetime import datetime, timezone

import pytest

from spotmerge.errors import ProposalNotPending, SpotNotFound
from spotmerge.schemas.merge import MergeProposal, MergeStatus
from spotmerge.store.memory import InMemoryBackend, KeyedLock

NOW = datetime(2024, 5, 1, tzinfo=timezone.utc)


def _proposal(proposal_id: str, a: str = "1", b: str = "2") -> MergeProposal:
    return MergeProposal(id=proposal_id, spot_id1=a, spot_id2=b, proposed_by="alice", created_at=NOW)


def test_keyed_lock_serializes_and_cleans_up() -> None:
    locks = KeyedLock()
    order: list[str] = []

    async def worker(name: str) -> None:
        await locks.acquire(["k"])
        try:
            order.append(f"{name}-in")
            await asyncio.sleep(0)
            order.append(f"{name}-out")
        finally:
            locks.release(["k"])

    async def scenario() -> None:
        await asyncio.gather(worker("a"), worker("b"))

    asyncio.run(scenario())

    assert order == ["a-in", "a-out", "b-in", "b-out"]
    assert locks.held() == []
    assert locks._locks == {}


def test_uncommitted_changes_are_rolled_back(make_spot) -> None:
    backend = InMemoryBackend([make_spot("1"), make_spot("2", 8)])

    async def scenario() -> None:
        async with backend.unit_of_work() as uow:
            await uow.lock("spot:1", "spot:2")
            await uow.spots.remove("2")
            await uow.proposals.create_if_absent(_proposal("merge_a"))

    asyncio.run(scenario())

    assert set(backend.spots) == {"1", "2"}
    assert backend.proposals == {}
    assert backend.pending_by_pair == {}
    assert backend.locks.held() == []


def test_lock_may_only_be_taken_once() -> None:
    backend = InMemoryBackend()

    async def scenario() -> None:
        async with backend.unit_of_work() as uow:
            await uow.lock("a")
            await uow.lock("b")

    with pytest.raises(RuntimeError):
        asyncio.run(scenario())
    assert backend.locks.held() == []


def test_pending_pair_is_unique_until_it_leaves_pending() -> None:
    backend = InMemoryBackend()

    async def scenario():
        async with backend.unit_of_work() as uow:
            first, created = await uow.proposals.create_if_absent(_proposal("merge_a"))
            again, created_again = await uow.proposals.create_if_absent(_proposal("merge_b", "2", "1"))
            await uow.proposals.save(
                MergeProposal(
                    id="merge_a", spot_id1="1", spot_id2="2", proposed_by="alice", created_at=NOW,
                    status=MergeStatus.CANCELLED,
                ),
                expected_status=MergeStatus.PENDING,
            )
            third, created_third = await uow.proposals.create_if_absent(_proposal("merge_c"))
            await uow.commit()
        return created, again.id, created_again, third.id, created_third

    assert asyncio.run(scenario()) == (True, "merge_a", False, "merge_c", True)


def test_save_is_compare_and_swap() -> None:
    backend = InMemoryBackend()

    async def scenario() -> None:
        async with backend.unit_of_work() as uow:
            proposal, _ = await uow.proposals.create_if_absent(_proposal("merge_a"))
            await uow.proposals.save(proposal, expected_status=MergeStatus.APPROVED)

    with pytest.raises(ProposalNotPending):
        asyncio.run(scenario())


def test_replace_and_remove_require_existing_spot(make_spot) -> None:
    backend = InMemoryBackend()

    async def scenario() -> None:
        async with backend.unit_of_work() as uow:
            await uow.spots.replace("9", make_spot("9"))

    with pytest.raises(SpotNotFound):
        asyncio.run(scenario())


def test_spots_listed_in_insertion_order(make_spot) -> None:
    backend = InMemoryBackend([make_spot("b"), make_spot("a"), make_spot("c")])

    async def scenario():
        async with backend.unit_of_work() as uow:
            return [s.id for s in await uow.spots.list()]

    assert asyncio.run(scenario()) == ["b", "a", "c"]
