"""Periodic duplicate sweep that auto-proposes merges."""
from __future__ import annotations

import asyncio
import logging

from spotmerge.celery_app import celery
from spotmerge.config import settings
from spotmerge.db import engine
from spotmerge.dedup import DuplicatePair
from spotmerge.dependencies import build_service
from spotmerge.errors import SelfMergeRejected, SpotNotFound
from spotmerge.schemas.merge import Identity
from spotmerge.scoring.confidence import describe_reasons
from spotmerge.service import SpotMergeService

logger = logging.getLogger(__name__)


@celery.task(name="spotmerge.workers.duplicate_scan.run_duplicate_scan")
def run_duplicate_scan() -> dict[str, int]:
    return asyncio.run(_run_duplicate_scan())


def scanner_identity() -> Identity:
    return Identity(user_id=settings.SCANNER_USER_ID, display_name="Duplicate scanner")


def _auto_reason(pair: DuplicatePair) -> str:
    reason = f"Auto-detected duplicate ({pair.confidence}% confidence, {round(pair.distance_m)} m)"
    details = describe_reasons(pair.reasons)
    return f"{reason}: {', '.join(details)}" if details else reason


async def _run_duplicate_scan(service: SpotMergeService | None = None) -> dict[str, int]:
    owns_service = service is None
    service = service or build_service(settings)
    scanner = scanner_identity()
    proposed = 0
    skipped = 0
    try:
        pairs = await service.scan_all()
        for pair in pairs:
            try:
                await service.propose(
                    pair.primary.id,
                    pair.duplicate.id,
                    scanner,
                    reason=_auto_reason(pair),
                )
            except (SpotNotFound, SelfMergeRejected) as exc:
                # The pool changed since the sweep read it; next run re-evaluates.
                skipped += 1
                logger.warning(
                    "Skipping duplicate pair %s / %s: %s",
                    pair.primary.id,
                    pair.duplicate.id,
                    exc,
                    extra={"code": exc.code},
                )
                continue
            proposed += 1
    finally:
        if owns_service and settings.STORAGE_BACKEND == "sql":
            await engine.dispose()

    logger.info(
        "Duplicate scan complete: %s pairs, %s proposed, %s skipped",
        len(pairs),
        proposed,
        skipped,
    )
    return {"pairs": len(pairs), "proposed": proposed, "skipped": skipped}
