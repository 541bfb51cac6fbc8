import asyncio

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from spotmerge.auth import SettingsModeratorPolicy
from spotmerge.db import init_models
from spotmerge.errors import ProposalNotPending, SelfMergeRejected
from spotmerge.notifications import LoggingNotifier
from spotmerge.schemas.merge import Identity, MergeStatus, VoteChoice
from spotmerge.service import SpotMergeService
from spotmerge.store.sql import SqlBackend

ALICE = Identity(user_id="alice")
BOB = Identity(user_id="bob")
MOD = Identity(user_id="mod")


async def _sql_service(spots, favorites=()):
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_models(engine)
    backend = SqlBackend(async_sessionmaker(engine, expire_on_commit=False))
    async with backend.unit_of_work() as uow:
        for spot in spots:
            await uow.spots.add(spot)
        for owner_id, spot_id in favorites:
            await uow.references.add(owner_id, spot_id)
        await uow.commit()
    service = SpotMergeService(
        backend.unit_of_work,
        moderators=SettingsModeratorPolicy(["mod"]),
        notifier=LoggingNotifier(),
    )
    return engine, backend, service


def test_sql_backend_full_workflow(make_spot) -> None:
    spots = [
        make_spot("1", 0, country="FR", ratings={"safety": 4.0}, total_reviews=1),
        make_spot("2", 8, country="FR", description="Bus stop behind the petrol station"),
        make_spot("3", 800, from_label="Grenoble", to_label="Turin"),
    ]
    favorites = [("alice", "2"), ("bob", "1"), ("bob", "2")]

    async def scenario():
        engine, backend, service = await _sql_service(spots, favorites)
        try:
            pairs = await service.scan_all()
            first = await service.propose("1", "2", ALICE)
            again = await service.propose("2", "1", BOB)
            await service.vote(first.id, BOB, VoteChoice.APPROVE)
            voted = await service.vote(first.id, BOB, VoteChoice.REJECT)
            await service.approve(first.id, MOD)
            with pytest.raises(ProposalNotPending):
                await service.vote(first.id, ALICE, VoteChoice.APPROVE)
            merged = await service.execute_proposal(first.id, MOD)
            with pytest.raises(SelfMergeRejected):
                await service.propose("2", "1", ALICE)

            async with backend.unit_of_work() as uow:
                remaining = [s.id for s in await uow.spots.list()]
                alice_favs = await uow.references.list_for_owner("alice")
                bob_favs = await uow.references.list_for_owner("bob")

            return {
                "pairs": [(p.primary.id, p.duplicate.id) for p in pairs],
                "first": first,
                "again": again,
                "voted": voted,
                "merged": merged,
                "final": await service.get_proposal(first.id),
                "canonical": await service.resolve("2"),
                "remaining": remaining,
                "alice": alice_favs,
                "bob": bob_favs,
                "history": await service.list_history(),
                "redirects": await service.list_redirects(),
                "stats": await service.get_stats(),
            }
        finally:
            await engine.dispose()

    result = asyncio.run(scenario())

    assert result["pairs"] == [("1", "2")]
    assert result["again"].id == result["first"].id
    assert result["first"].distance_m == 8
    assert result["voted"].votes.reject == frozenset({"bob"})
    assert result["voted"].votes.approve == frozenset()
    assert result["final"].status == MergeStatus.EXECUTED
    assert result["final"].approved_by == "mod"
    assert result["final"].votes.reject == frozenset({"bob"})
    assert result["merged"].id == "1"
    assert result["merged"].description == "Bus stop behind the petrol station"
    assert result["merged"].merged_from == ("2",)
    assert result["canonical"] == "1"
    assert result["remaining"] == ["1", "3"]
    assert result["alice"] == ["1"]
    assert result["bob"] == ["1"]
    assert len(result["history"]) == 1
    assert result["history"][0].absorbed_snapshot.description == "Bus stop behind the petrol station"
    assert (result["history"][0].moved_references, result["history"][0].deduped_references) == (1, 1)
    assert [(r.from_spot_id, r.to_spot_id, r.merge_id) for r in result["redirects"]] == [
        ("2", "1", result["first"].id)
    ]
    assert result["stats"]["executed"] == 1
    assert result["stats"]["total_proposed"] == 1


def test_sql_rollback_leaves_tables_untouched(make_spot) -> None:
    async def scenario():
        engine, backend, service = await _sql_service([make_spot("1"), make_spot("2", 8)])
        try:
            async with backend.unit_of_work() as uow:
                await uow.spots.remove("2")
            async with backend.unit_of_work() as uow:
                return [s.id for s in await uow.spots.list()]
        finally:
            await engine.dispose()

    assert asyncio.run(scenario()) == ["1", "2"]


def test_sql_cancelled_pair_can_be_proposed_again(make_spot) -> None:
    async def scenario():
        engine, backend, service = await _sql_service([make_spot("1"), make_spot("2", 8)])
        try:
            first = await service.propose("1", "2", ALICE)
            await service.cancel(first.id, ALICE)
            second = await service.propose("2", "1", BOB)
            counts = await service.get_stats()
            return first, second, counts
        finally:
            await engine.dispose()

    first, second, counts = asyncio.run(scenario())

    assert second.id != first.id
    assert second.spot_id1 == "2"
    assert counts["cancelled"] == 1
    assert counts["pending"] == 1


def test_sql_direct_merge_closes_open_proposals_on_the_pair(make_spot) -> None:
    async def scenario():
        engine, backend, service = await _sql_service([make_spot("1"), make_spot("2", 8)])
        try:
            approved = await service.propose("1", "2", ALICE)
            await service.approve(approved.id, MOD)
            pending = await service.propose("2", "1", BOB)
            await service.execute("1", "2", actor=MOD)
            return await service.get_proposal(approved.id), await service.get_proposal(pending.id)
        finally:
            await engine.dispose()

    approved, pending = asyncio.run(scenario())

    assert approved.status == MergeStatus.EXECUTED
    assert approved.executed_by == "mod"
    assert pending.status == MergeStatus.CANCELLED
    assert pending.cancelled_by == "mod"
