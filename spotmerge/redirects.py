"""Redirect resolution for spot ids absorbed by merges.

The redirect graph must stay acyclic: resolution fails closed on a cycle or
an over-long chain, and `ensure_acyclic` refuses writes that would create one.
"""
from __future__ import annotations

import logging

from spotmerge.config import settings
from spotmerge.errors import RedirectChainTooLong, RedirectCycleDetected
from spotmerge.metrics import REDIRECT_FAILURES_TOTAL
from spotmerge.schemas.spot import normalize_spot_id
from spotmerge.store.base import ProposalStore

logger = logging.getLogger(__name__)


class RedirectResolver:
    def __init__(self, store: ProposalStore, max_hops: int | None = None) -> None:
        self._store = store
        self.max_hops = int(max_hops if max_hops is not None else settings.REDIRECT_MAX_HOPS)

    async def resolve(self, spot_id: str | int) -> str:
        """Follow redirects from `spot_id` to its canonical id."""
        current = normalize_spot_id(spot_id)
        visited = [current]
        seen = {current}
        for _ in range(self.max_hops):
            target = await self._store.get_redirect(current)
            if target is None:
                return current
            if target in seen:
                REDIRECT_FAILURES_TOTAL.labels(reason="cycle").inc()
                logger.error("Redirect cycle detected from %s: %s", spot_id, visited + [target])
                raise RedirectCycleDetected(str(spot_id), visited + [target])
            visited.append(target)
            seen.add(target)
            current = target

        if await self._store.get_redirect(current) is None:
            return current
        REDIRECT_FAILURES_TOTAL.labels(reason="too_long").inc()
        logger.error("Redirect chain from %s exceeds %s hops", spot_id, self.max_hops)
        raise RedirectChainTooLong(str(spot_id), self.max_hops)

    async def ensure_acyclic(self, from_spot_id: str, to_spot_id: str) -> None:
        """Refuse `from -> to` if `from` already redirects or `to` leads back to `from`."""
        from_id = normalize_spot_id(from_spot_id)
        to_id = normalize_spot_id(to_spot_id)
        existing = await self._store.get_redirect(from_id)
        if existing is not None:
            raise RedirectCycleDetected(from_id, [from_id, existing])
        if from_id == to_id or await self.resolve(to_id) == from_id:
            REDIRECT_FAILURES_TOTAL.labels(reason="cycle_refused").inc()
            raise RedirectCycleDetected(from_id, [from_id, to_id, from_id])
