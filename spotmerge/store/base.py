"""Storage ports used by the merge core.

Every mutation happens inside a `UnitOfWork`: callers take their per-key
locks once, read and write through the bound repositories, then `commit()`.
Leaving the block without committing rolls everything back.
"""
from __future__ import annotations

import abc
from typing import Callable, Protocol

from spotmerge.schemas.merge import MergeHistoryRecord, MergeProposal, MergeStatus, RedirectEntry
from spotmerge.schemas.spot import Spot


def spot_lock_key(spot_id: str) -> str:
    return f"spot:{spot_id}"


def proposal_lock_key(proposal_id: str) -> str:
    return f"proposal:{proposal_id}"


def pair_lock_key(key: str) -> str:
    return f"pair:{key}"


class SpotRepository(Protocol):
    async def get_by_id(self, spot_id: str) -> Spot | None: ...

    async def list(self) -> list[Spot]: ...

    async def replace(self, spot_id: str, spot: Spot) -> None: ...

    async def remove(self, spot_id: str) -> None: ...


class ReferenceMigrator(Protocol):
    async def migrate(self, absorbed_id: str, survivor_id: str) -> tuple[int, int]:
        """Rewrite references to `absorbed_id`; returns `(moved, deduped)`."""
        ...


class ProposalStore(Protocol):
    async def create_if_absent(self, proposal: MergeProposal) -> tuple[MergeProposal, bool]:
        """Insert unless a pending proposal covers the same pair.

        Returns the stored proposal and whether it was created.
        """
        ...

    async def get(self, proposal_id: str) -> MergeProposal | None: ...

    async def save(self, proposal: MergeProposal, *, expected_status: MergeStatus) -> MergeProposal:
        """Compare-and-swap on status; raises `ProposalNotPending` on mismatch."""
        ...

    async def list(self, status: MergeStatus | None = None) -> list[MergeProposal]: ...

    async def list_for_pair(self, key: str) -> list[MergeProposal]: ...

    async def count_by_status(self) -> dict[str, int]: ...

    async def get_redirect(self, spot_id: str) -> str | None: ...

    async def add_redirect(self, entry: RedirectEntry) -> None: ...

    async def list_redirects(self) -> list[RedirectEntry]: ...

    async def append_history(self, record: MergeHistoryRecord) -> None: ...

    async def list_history(self, limit: int | None = None) -> list[MergeHistoryRecord]: ...

    async def count_history(self) -> int: ...


class UnitOfWork(abc.ABC):
    spots: SpotRepository
    references: ReferenceMigrator
    proposals: ProposalStore

    def __init__(self) -> None:
        self._committed = False
        self._locked = False

    async def __aenter__(self) -> UnitOfWork:
        self._committed = False
        self._locked = False
        await self._begin()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            if exc_type is not None or not self._committed:
                await self._rollback()
        finally:
            await self._end()

    async def lock(self, *keys: str) -> None:
        """Take exclusive per-key locks until the unit of work ends.

        All keys must be requested in a single call so acquisition order
        stays global (sorted).
        """
        if self._locked:
            raise RuntimeError("UnitOfWork.lock() may only be called once")
        self._locked = True
        await self._acquire(sorted(set(keys)))

    async def commit(self) -> None:
        await self._commit()
        self._committed = True

    @abc.abstractmethod
    async def _begin(self) -> None: ...

    @abc.abstractmethod
    async def _acquire(self, keys: list[str]) -> None: ...

    @abc.abstractmethod
    async def _commit(self) -> None: ...

    @abc.abstractmethod
    async def _rollback(self) -> None: ...

    @abc.abstractmethod
    async def _end(self) -> None: ...


UnitOfWorkFactory = Callable[[], UnitOfWork]
