"""Duplicate confidence score.

Distance and name similarity carry up to 40 points each; shared metadata
adds small bonuses. The result is an integer in [0, 100] and must be stable
for identical inputs, since auto-proposal thresholds depend on it.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List

from spotmerge.core.text_similarity import name_similarity
from spotmerge.schemas.spot import Spot

# Stable reason codes, exposed with detection results
REASONS = {
    "DUP_DISTANCE_VERY_CLOSE": "Less than 10 m apart",
    "DUP_DISTANCE_CLOSE": "Less than 20 m apart",
    "DUP_DISTANCE_NEAR": "Less than 50 m apart",
    "DUP_NAME_MATCH": "Labels are similar",
    "DUP_SAME_REGION": "Same administrative region",
    "DUP_SAME_SOURCE": "Same import source",
    "DUP_SIMILAR_DESCRIPTION": "Descriptions are similar",
}

DISTANCE_STEPS = (
    (10.0, 40),
    (20.0, 35),
    (30.0, 25),
    (50.0, 15),
)
NAME_WEIGHT = 40
SAME_REGION_BONUS = 10
SAME_SOURCE_BONUS = 5
DESCRIPTION_BONUS = 5
DESCRIPTION_SIMILARITY_THRESHOLD = 0.5


@dataclass(frozen=True, slots=True)
class MetadataBonuses:
    same_region: bool = False
    same_source: bool = False
    similar_description: bool = False


def describe_reasons(codes: Iterable[str]) -> List[str]:
    return [REASONS.get(code, code) for code in codes]


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def distance_points(distance_m: float) -> int:
    for limit, points in DISTANCE_STEPS:
        if distance_m < limit:
            return points
    return 0


def metadata_bonuses(spot_a: Spot, spot_b: Spot) -> MetadataBonuses:
    """Region and source only count when both spots carry a value."""
    same_region = bool(spot_a.country and spot_b.country and spot_a.country == spot_b.country)
    same_source = bool(spot_a.source and spot_b.source and spot_a.source == spot_b.source)
    similar_description = bool(
        spot_a.description
        and spot_b.description
        and name_similarity(spot_a.description, spot_b.description) > DESCRIPTION_SIMILARITY_THRESHOLD
    )
    return MetadataBonuses(
        same_region=same_region,
        same_source=same_source,
        similar_description=similar_description,
    )


def calculate_confidence_breakdown(
    distance_m: float,
    similarity: float,
    bonuses: MetadataBonuses | None = None,
) -> Dict[str, Any]:
    bonuses = bonuses or MetadataBonuses()
    reasons = []

    dist_pts = distance_points(float(distance_m))
    if dist_pts >= 40:
        reasons.append("DUP_DISTANCE_VERY_CLOSE")
    elif dist_pts >= 35:
        reasons.append("DUP_DISTANCE_CLOSE")
    elif dist_pts > 0:
        reasons.append("DUP_DISTANCE_NEAR")

    similarity = max(0.0, min(1.0, float(similarity)))
    name_pts = round_half_up(similarity * NAME_WEIGHT)
    if similarity >= 0.5:
        reasons.append("DUP_NAME_MATCH")

    bonus_pts = 0
    if bonuses.same_region:
        bonus_pts += SAME_REGION_BONUS
        reasons.append("DUP_SAME_REGION")
    if bonuses.same_source:
        bonus_pts += SAME_SOURCE_BONUS
        reasons.append("DUP_SAME_SOURCE")
    if bonuses.similar_description:
        bonus_pts += DESCRIPTION_BONUS
        reasons.append("DUP_SIMILAR_DESCRIPTION")

    score = max(0, min(100, dist_pts + name_pts + bonus_pts))
    return {
        "score": score,
        "reasons": reasons,
    }


def calculate_confidence(
    distance_m: float,
    similarity: float,
    bonuses: MetadataBonuses | None = None,
) -> int:
    return calculate_confidence_breakdown(distance_m, similarity, bonuses)["score"]
