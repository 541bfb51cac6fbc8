"""SQLAlchemy (asyncio) storage backend.

One unit of work is one database transaction. Per-key locks are
transaction-scoped advisory locks on PostgreSQL; the pending-pair check is
an `INSERT ... ON CONFLICT DO NOTHING` against a partial unique index and
status changes are compare-and-swap updates.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timezone

from sqlalchemy import delete, func, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from spotmerge.core.geo import Coordinates
from spotmerge.db import async_session_factory
from spotmerge.errors import ProposalNotFound, ProposalNotPending, SpotNotFound
from spotmerge.models.merge import MergeHistoryRow, MergeProposalRow, MergeVoteRow, SpotRedirectRow
from spotmerge.models.spot import FavoriteRow, SpotRow
from spotmerge.schemas.merge import (
    MergeHistoryRecord,
    MergeProposal,
    MergeStatus,
    RedirectEntry,
    VoteChoice,
    VoteSets,
)
from spotmerge.schemas.spot import Spot, normalize_spot_id
from spotmerge.store.base import UnitOfWork

logger = logging.getLogger(__name__)

PENDING_WHERE = text("status = 'pending'")


def _dialect_name(session: AsyncSession) -> str:
    return session.bind.dialect.name


# ── Row <-> record mapping ──


def spot_from_row(row: SpotRow) -> Spot:
    coordinates = None
    if row.lat is not None and row.lng is not None:
        coordinates = Coordinates(row.lat, row.lng)
    return Spot(
        id=row.id,
        coordinates=coordinates,
        from_label=row.from_label,
        to_label=row.to_label,
        country=row.country,
        ratings=row.ratings_json or {},
        global_rating=row.global_rating or 0.0,
        total_reviews=row.total_reviews or 0,
        description=row.description,
        photo_url=row.photo_url,
        checkins=row.checkins or 0,
        avg_wait_time=row.avg_wait_time,
        created_at=row.created_at,
        last_used=row.last_used_at,
        verified=bool(row.verified),
        source=row.source,
        merged_from=row.merged_from_json,
        merged_at=row.merged_at,
    )


def apply_spot(row: SpotRow, spot: Spot) -> SpotRow:
    row.lat = spot.coordinates.lat if spot.coordinates else None
    row.lng = spot.coordinates.lng if spot.coordinates else None
    row.from_label = spot.from_label
    row.to_label = spot.to_label
    row.country = spot.country
    row.ratings_json = dict(spot.ratings) or None
    row.global_rating = spot.global_rating
    row.total_reviews = spot.total_reviews
    row.description = spot.description
    row.photo_url = spot.photo_url
    row.checkins = spot.checkins
    row.avg_wait_time = spot.avg_wait_time
    row.verified = spot.verified
    row.source = spot.source
    row.merged_from_json = list(spot.merged_from) or None
    row.merged_at = spot.merged_at
    row.last_used_at = spot.last_used
    if spot.created_at is not None:
        row.created_at = spot.created_at
    return row


def _proposal_columns(proposal: MergeProposal) -> dict:
    return {
        "spot_id1": proposal.spot_id1,
        "spot_id2": proposal.spot_id2,
        "pair_key": proposal.pair_key,
        "status": proposal.status.value,
        "proposed_by": proposal.proposed_by,
        "proposed_by_name": proposal.proposed_by_name,
        "reason": proposal.reason,
        "spot1_name": proposal.spot1_name,
        "spot2_name": proposal.spot2_name,
        "distance_m": proposal.distance_m,
        "name_similarity": proposal.name_similarity,
        "approved_by": proposal.approved_by,
        "approved_at": proposal.approved_at,
        "rejected_by": proposal.rejected_by,
        "rejected_at": proposal.rejected_at,
        "rejection_reason": proposal.rejection_reason,
        "cancelled_by": proposal.cancelled_by,
        "cancelled_at": proposal.cancelled_at,
        "executed_by": proposal.executed_by,
        "executed_at": proposal.executed_at,
        "created_at": proposal.created_at,
    }


def proposal_from_row(row: MergeProposalRow, votes: list[MergeVoteRow]) -> MergeProposal:
    return MergeProposal(
        id=row.id,
        spot_id1=row.spot_id1,
        spot_id2=row.spot_id2,
        status=MergeStatus(row.status),
        proposed_by=row.proposed_by,
        proposed_by_name=row.proposed_by_name,
        reason=row.reason or "",
        spot1_name=row.spot1_name or "",
        spot2_name=row.spot2_name or "",
        distance_m=row.distance_m,
        name_similarity=int(row.name_similarity or 0),
        created_at=row.created_at,
        votes=VoteSets(
            approve=frozenset(v.voter_id for v in votes if v.choice == VoteChoice.APPROVE.value),
            reject=frozenset(v.voter_id for v in votes if v.choice == VoteChoice.REJECT.value),
        ),
        approved_by=row.approved_by,
        approved_at=row.approved_at,
        rejected_by=row.rejected_by,
        rejected_at=row.rejected_at,
        rejection_reason=row.rejection_reason,
        cancelled_by=row.cancelled_by,
        cancelled_at=row.cancelled_at,
        executed_by=row.executed_by,
        executed_at=row.executed_at,
    )


def history_from_row(row: MergeHistoryRow) -> MergeHistoryRecord:
    return MergeHistoryRecord(
        survivor_id=row.survivor_id,
        absorbed_id=row.absorbed_id,
        survivor_snapshot=Spot.model_validate(row.survivor_snapshot),
        absorbed_snapshot=Spot.model_validate(row.absorbed_snapshot),
        consolidated=Spot.model_validate(row.consolidated),
        executed_at=row.executed_at,
        merge_id=row.merge_id,
        executed_by=row.executed_by,
        moved_references=int(row.moved_references or 0),
        deduped_references=int(row.deduped_references or 0),
    )


# ── Repositories ──


class SqlSpotRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_id(self, spot_id: str) -> Spot | None:
        row = await self._session.get(SpotRow, normalize_spot_id(spot_id))
        return spot_from_row(row) if row else None

    async def list(self) -> list[Spot]:
        rows = (
            await self._session.execute(select(SpotRow).order_by(SpotRow.created_at.asc(), SpotRow.id.asc()))
        ).scalars().all()
        return [spot_from_row(row) for row in rows]

    async def add(self, spot: Spot) -> None:
        row = apply_spot(SpotRow(id=spot.id), spot)
        if row.created_at is None:
            row.created_at = datetime.now(timezone.utc)
        self._session.add(row)
        await self._session.flush()

    async def replace(self, spot_id: str, spot: Spot) -> None:
        spot_id = normalize_spot_id(spot_id)
        if spot.id != spot_id:
            raise ValueError(f"Cannot replace spot {spot_id} with a record for {spot.id}")
        row = await self._session.get(SpotRow, spot_id)
        if row is None:
            raise SpotNotFound(spot_id)
        apply_spot(row, spot)
        await self._session.flush()

    async def remove(self, spot_id: str) -> None:
        spot_id = normalize_spot_id(spot_id)
        row = await self._session.get(SpotRow, spot_id)
        if row is None:
            raise SpotNotFound(spot_id)
        await self._session.delete(row)
        await self._session.flush()


class SqlFavoritesMigrator:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add(self, owner_id: str, spot_id: str) -> None:
        self._session.add(FavoriteRow(owner_id=owner_id, spot_id=normalize_spot_id(spot_id)))
        await self._session.flush()

    async def list_for_owner(self, owner_id: str) -> list[str]:
        rows = (
            await self._session.execute(
                select(FavoriteRow.spot_id).where(FavoriteRow.owner_id == owner_id).order_by(FavoriteRow.id.asc())
            )
        ).scalars().all()
        return list(rows)

    async def migrate(self, absorbed_id: str, survivor_id: str) -> tuple[int, int]:
        owners_with_survivor = set(
            (
                await self._session.execute(
                    select(FavoriteRow.owner_id).where(FavoriteRow.spot_id == survivor_id)
                )
            ).scalars().all()
        )
        rows = (
            await self._session.execute(select(FavoriteRow).where(FavoriteRow.spot_id == absorbed_id))
        ).scalars().all()

        moved = 0
        deduped = 0
        for row in rows:
            if row.owner_id in owners_with_survivor:
                await self._session.delete(row)
                deduped += 1
                continue
            row.spot_id = survivor_id
            moved += 1
        await self._session.flush()
        return moved, deduped


class SqlProposalStore:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def _votes_for(self, proposal_ids: list[str]) -> dict[str, list[MergeVoteRow]]:
        by_proposal: dict[str, list[MergeVoteRow]] = defaultdict(list)
        if not proposal_ids:
            return by_proposal
        rows = (
            await self._session.execute(select(MergeVoteRow).where(MergeVoteRow.proposal_id.in_(proposal_ids)))
        ).scalars().all()
        for row in rows:
            by_proposal[row.proposal_id].append(row)
        return by_proposal

    async def _pending_for_pair(self, key: str) -> MergeProposalRow | None:
        return (
            await self._session.execute(
                select(MergeProposalRow)
                .where(
                    MergeProposalRow.pair_key == key,
                    MergeProposalRow.status == MergeStatus.PENDING.value,
                )
                .execution_options(populate_existing=True)
                .limit(1)
            )
        ).scalar()

    async def create_if_absent(self, proposal: MergeProposal) -> tuple[MergeProposal, bool]:
        values = {"id": proposal.id, **_proposal_columns(proposal)}
        dialect = _dialect_name(self._session)
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert as dialect_insert
        elif dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert as dialect_insert
        else:
            dialect_insert = None

        if dialect_insert is not None:
            stmt = (
                dialect_insert(MergeProposalRow.__table__)
                .values(**values)
                .on_conflict_do_nothing(index_elements=["pair_key"], index_where=PENDING_WHERE)
            )
            await self._session.execute(stmt)
        elif await self._pending_for_pair(proposal.pair_key) is None:
            # Callers hold the pair lock, so check-then-insert is safe here.
            self._session.add(MergeProposalRow(**values))
            await self._session.flush()

        row = await self._pending_for_pair(proposal.pair_key)
        if row is None:
            raise RuntimeError(f"Pending proposal for {proposal.pair_key} vanished during insert")
        created = row.id == proposal.id
        if created and (proposal.votes.approve or proposal.votes.reject):
            await self._sync_votes(proposal)
        votes = await self._votes_for([row.id])
        return proposal_from_row(row, votes[row.id]), created

    async def get(self, proposal_id: str) -> MergeProposal | None:
        row = await self._session.get(MergeProposalRow, proposal_id, populate_existing=True)
        if row is None:
            return None
        votes = await self._votes_for([row.id])
        return proposal_from_row(row, votes[row.id])

    async def save(self, proposal: MergeProposal, *, expected_status: MergeStatus) -> MergeProposal:
        expected = MergeStatus(expected_status).value
        columns = _proposal_columns(proposal)
        columns.pop("created_at")
        result = await self._session.execute(
            update(MergeProposalRow)
            .where(MergeProposalRow.id == proposal.id, MergeProposalRow.status == expected)
            .values(**columns)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            current = await self._session.get(MergeProposalRow, proposal.id, populate_existing=True)
            if current is None:
                raise ProposalNotFound(proposal.id)
            raise ProposalNotPending(proposal.id, current.status, expected)
        await self._sync_votes(proposal)
        return proposal

    async def _sync_votes(self, proposal: MergeProposal) -> None:
        wanted: dict[str, str] = {voter: VoteChoice.APPROVE.value for voter in proposal.votes.approve}
        wanted.update({voter: VoteChoice.REJECT.value for voter in proposal.votes.reject})
        existing = {row.voter_id: row for row in (await self._votes_for([proposal.id]))[proposal.id]}
        now = datetime.now(timezone.utc)

        stale = [voter for voter in existing if voter not in wanted]
        if stale:
            await self._session.execute(
                delete(MergeVoteRow).where(
                    MergeVoteRow.proposal_id == proposal.id,
                    MergeVoteRow.voter_id.in_(stale),
                )
            )
        for voter, choice in wanted.items():
            row = existing.get(voter)
            if row is None:
                self._session.add(
                    MergeVoteRow(proposal_id=proposal.id, voter_id=voter, choice=choice, voted_at=now)
                )
            elif row.choice != choice:
                row.choice = choice
                row.voted_at = now
        await self._session.flush()

    async def list(self, status: MergeStatus | None = None) -> list[MergeProposal]:
        stmt = select(MergeProposalRow).order_by(MergeProposalRow.created_at.asc(), MergeProposalRow.id.asc())
        if status is not None:
            stmt = stmt.where(MergeProposalRow.status == MergeStatus(status).value)
        rows = (await self._session.execute(stmt.execution_options(populate_existing=True))).scalars().all()
        votes = await self._votes_for([row.id for row in rows])
        return [proposal_from_row(row, votes[row.id]) for row in rows]

    async def list_for_pair(self, key: str) -> list[MergeProposal]:
        stmt = (
            select(MergeProposalRow)
            .where(MergeProposalRow.pair_key == key)
            .order_by(MergeProposalRow.created_at.asc(), MergeProposalRow.id.asc())
        )
        rows = (await self._session.execute(stmt.execution_options(populate_existing=True))).scalars().all()
        votes = await self._votes_for([row.id for row in rows])
        return [proposal_from_row(row, votes[row.id]) for row in rows]

    async def count_by_status(self) -> dict[str, int]:
        counts = {status.value: 0 for status in MergeStatus}
        rows = (
            await self._session.execute(
                select(MergeProposalRow.status, func.count()).group_by(MergeProposalRow.status)
            )
        ).all()
        for status, count in rows:
            counts[str(status)] = int(count)
        return counts

    async def get_redirect(self, spot_id: str) -> str | None:
        row = await self._session.get(SpotRedirectRow, normalize_spot_id(spot_id))
        return row.to_spot_id if row else None

    async def add_redirect(self, entry: RedirectEntry) -> None:
        existing = await self._session.get(SpotRedirectRow, entry.from_spot_id)
        if existing is not None:
            raise ValueError(f"Spot {entry.from_spot_id} already redirects to {existing.to_spot_id}")
        self._session.add(
            SpotRedirectRow(
                from_spot_id=entry.from_spot_id,
                to_spot_id=entry.to_spot_id,
                merge_id=entry.merge_id,
                created_at=entry.created_at,
            )
        )
        await self._session.flush()

    async def list_redirects(self) -> list[RedirectEntry]:
        rows = (
            await self._session.execute(
                select(SpotRedirectRow).order_by(SpotRedirectRow.created_at.asc(), SpotRedirectRow.from_spot_id.asc())
            )
        ).scalars().all()
        return [
            RedirectEntry(
                from_spot_id=row.from_spot_id,
                to_spot_id=row.to_spot_id,
                created_at=row.created_at,
                merge_id=row.merge_id,
            )
            for row in rows
        ]

    async def append_history(self, record: MergeHistoryRecord) -> None:
        self._session.add(
            MergeHistoryRow(
                survivor_id=record.survivor_id,
                absorbed_id=record.absorbed_id,
                merge_id=record.merge_id,
                survivor_snapshot=record.survivor_snapshot.model_dump(mode="json"),
                absorbed_snapshot=record.absorbed_snapshot.model_dump(mode="json"),
                consolidated=record.consolidated.model_dump(mode="json"),
                executed_by=record.executed_by,
                moved_references=record.moved_references,
                deduped_references=record.deduped_references,
                executed_at=record.executed_at,
            )
        )
        await self._session.flush()

    async def list_history(self, limit: int | None = None) -> list[MergeHistoryRecord]:
        stmt = select(MergeHistoryRow).order_by(MergeHistoryRow.id.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        rows = (await self._session.execute(stmt)).scalars().all()
        return [history_from_row(row) for row in rows]

    async def count_history(self) -> int:
        return int((await self._session.execute(select(func.count()).select_from(MergeHistoryRow))).scalar() or 0)


# ── Unit of work ──


class SqlUnitOfWork(UnitOfWork):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        super().__init__()
        self._session_factory = session_factory
        self.session: AsyncSession | None = None

    async def _begin(self) -> None:
        self.session = self._session_factory()
        self.spots = SqlSpotRepository(self.session)
        self.references = SqlFavoritesMigrator(self.session)
        self.proposals = SqlProposalStore(self.session)

    async def _acquire(self, keys: list[str]) -> None:
        if _dialect_name(self.session) != "postgresql":
            return
        for key in keys:
            await self.session.execute(select(func.pg_advisory_xact_lock(func.hashtext(key))))

    async def _commit(self) -> None:
        await self.session.commit()

    async def _rollback(self) -> None:
        await self.session.rollback()

    async def _end(self) -> None:
        if self.session is not None:
            await self.session.close()
            self.session = None


class SqlBackend:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or async_session_factory

    def unit_of_work(self) -> SqlUnitOfWork:
        return SqlUnitOfWork(self._session_factory)
