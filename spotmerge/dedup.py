"""Duplicate spot detection.

`detect_duplicates` ranks the candidates of one spot against a pool,
`scan_for_duplicates` sweeps a whole collection and emits disjoint pairs
that can be fed to the merge workflow. Both are read-only.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Sequence, Tuple

from spotmerge.core.geo import haversine_distance_m
from spotmerge.core.text_similarity import name_similarity
from spotmerge.metrics import DUPLICATE_CANDIDATES_OBS, SCAN_PAIRS_TOTAL
from spotmerge.schemas.spot import Spot
from spotmerge.scoring.confidence import calculate_confidence_breakdown, metadata_bonuses

logger = logging.getLogger(__name__)

DEFAULT_RADIUS_M = 50.0
DEFAULT_MIN_CONFIDENCE = 70
NAME_SIMILARITY_THRESHOLD = 0.5
CLOSE_DISTANCE_M = 20.0


@dataclass(frozen=True, slots=True)
class DuplicateCandidate:
    spot: Spot
    distance_m: float
    name_similarity: float
    confidence: int
    reasons: Tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class DuplicatePair:
    primary: Spot
    duplicate: Spot
    distance_m: float
    name_similarity: float
    confidence: int
    reasons: Tuple[str, ...] = ()


def label_similarity(spot_a: Spot, spot_b: Spot) -> float:
    """Average similarity of the paired origin and destination labels."""
    from_similarity = name_similarity(spot_a.from_label, spot_b.from_label)
    to_similarity = name_similarity(spot_a.to_label, spot_b.to_label)
    return (from_similarity + to_similarity) / 2


def _check_radius(radius_m: float) -> float:
    radius = float(radius_m)
    if radius <= 0:
        raise ValueError(f"Detection radius must be positive, got {radius_m}")
    return radius


def detect_duplicates(
    spot: Spot,
    pool: Iterable[Spot],
    radius_m: float = DEFAULT_RADIUS_M,
) -> List[DuplicateCandidate]:
    """Rank the likely duplicates of `spot` found in `pool`.

    A candidate must lie within `radius_m` and either have similar labels or
    be closer than 20 m. Ordered by confidence (desc) then distance (asc).
    """
    radius = _check_radius(radius_m)
    if spot.coordinates is None:
        return []

    candidates: list[DuplicateCandidate] = []
    for other in pool:
        if other.id == spot.id or other.coordinates is None:
            continue
        distance = haversine_distance_m(spot.coordinates, other.coordinates)
        if distance > radius:
            continue
        similarity = label_similarity(spot, other)
        if similarity < NAME_SIMILARITY_THRESHOLD and distance >= CLOSE_DISTANCE_M:
            continue
        breakdown = calculate_confidence_breakdown(distance, similarity, metadata_bonuses(spot, other))
        candidates.append(
            DuplicateCandidate(
                spot=other,
                distance_m=distance,
                name_similarity=similarity,
                confidence=breakdown["score"],
                reasons=tuple(breakdown["reasons"]),
            )
        )

    candidates.sort(key=lambda c: (-c.confidence, c.distance_m, c.spot.id))
    return candidates


def scan_for_duplicates(
    spots: Sequence[Spot],
    radius_m: float = DEFAULT_RADIUS_M,
    min_confidence: int = DEFAULT_MIN_CONFIDENCE,
) -> List[DuplicatePair]:
    """Sweep `spots` in input order and emit disjoint duplicate pairs.

    Both members of an emitted pair are claimed for the rest of the sweep,
    so a chain A-B, B-C yields only A-B. Each primary emits at most its best
    qualifying candidate.
    """
    radius = _check_radius(radius_m)
    processed: set[str] = set()
    pairs: list[DuplicatePair] = []

    for spot in spots:
        if spot.id in processed or spot.coordinates is None:
            continue
        remaining = [other for other in spots if other.id not in processed]
        for candidate in detect_duplicates(spot, remaining, radius):
            DUPLICATE_CANDIDATES_OBS.labels(origin="scan").observe(candidate.confidence)
            if candidate.confidence < min_confidence:
                continue
            pairs.append(
                DuplicatePair(
                    primary=spot,
                    duplicate=candidate.spot,
                    distance_m=candidate.distance_m,
                    name_similarity=candidate.name_similarity,
                    confidence=candidate.confidence,
                    reasons=candidate.reasons,
                )
            )
            processed.add(candidate.spot.id)
            break
        processed.add(spot.id)

    SCAN_PAIRS_TOTAL.inc(len(pairs))
    logger.info("Duplicate sweep over %s spots emitted %s pairs", len(spots), len(pairs))
    return pairs
