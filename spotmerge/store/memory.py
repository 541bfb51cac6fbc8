"""Single-process storage backend.

Per-key `asyncio.Lock`s give the mutual exclusion, an undo journal gives
all-or-nothing commits.
"""
from __future__ import annotations

import asyncio
import itertools
from collections import defaultdict
from typing import Callable, Iterable

from spotmerge.errors import ProposalNotFound, ProposalNotPending, SpotNotFound
from spotmerge.schemas.merge import MergeHistoryRecord, MergeProposal, MergeStatus, RedirectEntry
from spotmerge.schemas.spot import Spot, normalize_spot_id
from spotmerge.store.base import UnitOfWork


class KeyedLock:
    """Lazily created locks, dropped again once nobody holds or awaits them."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = defaultdict(int)

    async def acquire(self, keys: list[str]) -> None:
        acquired: list[str] = []
        try:
            for key in keys:
                lock = self._locks.setdefault(key, asyncio.Lock())
                self._users[key] += 1
                try:
                    await lock.acquire()
                except BaseException:
                    self._drop(key)
                    raise
                acquired.append(key)
        except BaseException:
            self.release(acquired)
            raise

    def release(self, keys: list[str]) -> None:
        for key in reversed(keys):
            self._locks[key].release()
            self._drop(key)

    def _drop(self, key: str) -> None:
        self._users[key] -= 1
        if self._users[key] <= 0:
            self._users.pop(key, None)
            self._locks.pop(key, None)

    def held(self) -> list[str]:
        return sorted(key for key, lock in self._locks.items() if lock.locked())


class InMemoryBackend:
    """Shared state for every unit of work created from it."""

    def __init__(
        self,
        spots: Iterable[Spot] = (),
        favorites: dict[str, Iterable[str]] | None = None,
    ) -> None:
        self.spots: dict[str, Spot] = {}
        self.spot_order: dict[str, int] = {}
        self._seq = itertools.count()
        self.favorites: dict[str, list[str]] = {}
        self.proposals: dict[str, MergeProposal] = {}
        self.pending_by_pair: dict[str, str] = {}
        self.redirects: dict[str, RedirectEntry] = {}
        self.history: list[MergeHistoryRecord] = []
        self.locks = KeyedLock()
        for spot in spots:
            self.add_spot(spot)
        for owner_id, spot_ids in (favorites or {}).items():
            self.favorites[str(owner_id)] = [normalize_spot_id(s) for s in spot_ids]

    def add_spot(self, spot: Spot) -> None:
        self.spots[spot.id] = spot
        self.spot_order.setdefault(spot.id, next(self._seq))

    def unit_of_work(self) -> InMemoryUnitOfWork:
        return InMemoryUnitOfWork(self)


Undo = Callable[[], None]


class InMemorySpotRepository:
    def __init__(self, backend: InMemoryBackend, journal: list[Undo]) -> None:
        self._backend = backend
        self._journal = journal

    async def get_by_id(self, spot_id: str) -> Spot | None:
        return self._backend.spots.get(normalize_spot_id(spot_id))

    async def list(self) -> list[Spot]:
        order = self._backend.spot_order
        return sorted(self._backend.spots.values(), key=lambda s: order.get(s.id, 0))

    async def replace(self, spot_id: str, spot: Spot) -> None:
        spot_id = normalize_spot_id(spot_id)
        spots = self._backend.spots
        if spot_id not in spots:
            raise SpotNotFound(spot_id)
        if spot.id != spot_id:
            raise ValueError(f"Cannot replace spot {spot_id} with a record for {spot.id}")
        previous = spots[spot_id]
        spots[spot_id] = spot
        self._journal.append(lambda: spots.__setitem__(spot_id, previous))

    async def remove(self, spot_id: str) -> None:
        spot_id = normalize_spot_id(spot_id)
        spots = self._backend.spots
        if spot_id not in spots:
            raise SpotNotFound(spot_id)
        previous = spots.pop(spot_id)
        self._journal.append(lambda: spots.__setitem__(spot_id, previous))


class InMemoryFavoritesMigrator:
    def __init__(self, backend: InMemoryBackend, journal: list[Undo]) -> None:
        self._backend = backend
        self._journal = journal

    async def migrate(self, absorbed_id: str, survivor_id: str) -> tuple[int, int]:
        moved = 0
        deduped = 0
        favorites = self._backend.favorites
        for owner_id, spot_ids in favorites.items():
            if absorbed_id not in spot_ids:
                continue
            previous = list(spot_ids)
            if survivor_id in spot_ids:
                rewritten = [s for s in spot_ids if s != absorbed_id]
                deduped += 1
            else:
                rewritten = [survivor_id if s == absorbed_id else s for s in spot_ids]
                moved += 1
            favorites[owner_id] = rewritten
            self._journal.append(lambda o=owner_id, p=previous: favorites.__setitem__(o, p))
        return moved, deduped


class InMemoryProposalStore:
    def __init__(self, backend: InMemoryBackend, journal: list[Undo]) -> None:
        self._backend = backend
        self._journal = journal

    async def create_if_absent(self, proposal: MergeProposal) -> tuple[MergeProposal, bool]:
        backend = self._backend
        existing_id = backend.pending_by_pair.get(proposal.pair_key)
        if existing_id is not None:
            existing = backend.proposals[existing_id]
            if existing.status == MergeStatus.PENDING:
                return existing, False
        if proposal.id in backend.proposals:
            raise ValueError(f"Merge proposal {proposal.id} already exists")

        backend.proposals[proposal.id] = proposal
        backend.pending_by_pair[proposal.pair_key] = proposal.id

        def undo() -> None:
            backend.proposals.pop(proposal.id, None)
            if backend.pending_by_pair.get(proposal.pair_key) == proposal.id:
                del backend.pending_by_pair[proposal.pair_key]
                if existing_id is not None:
                    backend.pending_by_pair[proposal.pair_key] = existing_id

        self._journal.append(undo)
        return proposal, True

    async def get(self, proposal_id: str) -> MergeProposal | None:
        return self._backend.proposals.get(proposal_id)

    async def save(self, proposal: MergeProposal, *, expected_status: MergeStatus) -> MergeProposal:
        backend = self._backend
        current = backend.proposals.get(proposal.id)
        if current is None:
            raise ProposalNotFound(proposal.id)
        if current.status != expected_status:
            raise ProposalNotPending(proposal.id, current.status.value, MergeStatus(expected_status).value)

        backend.proposals[proposal.id] = proposal
        key = proposal.pair_key
        released = proposal.status != MergeStatus.PENDING and backend.pending_by_pair.get(key) == proposal.id
        if released:
            del backend.pending_by_pair[key]

        def undo() -> None:
            backend.proposals[proposal.id] = current
            if released:
                backend.pending_by_pair[key] = proposal.id

        self._journal.append(undo)
        return proposal

    async def list(self, status: MergeStatus | None = None) -> list[MergeProposal]:
        proposals = sorted(self._backend.proposals.values(), key=lambda p: (p.created_at, p.id))
        if status is None:
            return proposals
        return [p for p in proposals if p.status == MergeStatus(status)]

    async def list_for_pair(self, key: str) -> list[MergeProposal]:
        return [p for p in await self.list() if p.pair_key == key]

    async def count_by_status(self) -> dict[str, int]:
        counts = {status.value: 0 for status in MergeStatus}
        for proposal in self._backend.proposals.values():
            counts[proposal.status.value] += 1
        return counts

    async def get_redirect(self, spot_id: str) -> str | None:
        entry = self._backend.redirects.get(normalize_spot_id(spot_id))
        return entry.to_spot_id if entry else None

    async def add_redirect(self, entry: RedirectEntry) -> None:
        redirects = self._backend.redirects
        if entry.from_spot_id in redirects:
            raise ValueError(
                f"Spot {entry.from_spot_id} already redirects to {redirects[entry.from_spot_id].to_spot_id}"
            )
        redirects[entry.from_spot_id] = entry
        self._journal.append(lambda: redirects.pop(entry.from_spot_id, None))

    async def list_redirects(self) -> list[RedirectEntry]:
        return sorted(self._backend.redirects.values(), key=lambda r: (r.created_at, r.from_spot_id))

    async def append_history(self, record: MergeHistoryRecord) -> None:
        history = self._backend.history
        history.append(record)
        self._journal.append(lambda: history.remove(record))

    async def list_history(self, limit: int | None = None) -> list[MergeHistoryRecord]:
        newest_first = list(reversed(self._backend.history))
        return newest_first[:limit] if limit is not None else newest_first

    async def count_history(self) -> int:
        return len(self._backend.history)


class InMemoryUnitOfWork(UnitOfWork):
    def __init__(self, backend: InMemoryBackend) -> None:
        super().__init__()
        self._backend = backend
        self._journal: list[Undo] = []
        self._held: list[str] = []

    async def _begin(self) -> None:
        self._journal = []
        self._held = []
        self.spots = InMemorySpotRepository(self._backend, self._journal)
        self.references = InMemoryFavoritesMigrator(self._backend, self._journal)
        self.proposals = InMemoryProposalStore(self._backend, self._journal)

    async def _acquire(self, keys: list[str]) -> None:
        await self._backend.locks.acquire(keys)
        self._held = keys

    async def _commit(self) -> None:
        self._journal.clear()

    async def _rollback(self) -> None:
        while self._journal:
            self._journal.pop()()

    async def _end(self) -> None:
        held, self._held = self._held, []
        if held:
            self._backend.locks.release(held)
