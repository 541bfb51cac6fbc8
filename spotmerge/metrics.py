"""Prometheus metrics for duplicate detection and the merge workflow."""
from __future__ import annotations

from prometheus_client import Counter, Histogram


DUPLICATE_CANDIDATES_OBS = Histogram(
    "spotmerge_duplicate_candidate_confidence",
    "Confidence of detected duplicate candidates",
    ["origin"],
    buckets=(0, 10, 20, 30, 40, 50, 60, 70, 80, 90, 100),
)

SCAN_PAIRS_TOTAL = Counter(
    "spotmerge_scan_pairs_total",
    "Duplicate pairs emitted by batch sweeps",
)

MERGE_PROPOSALS_TOTAL = Counter(
    "spotmerge_merge_proposals_total",
    "Merge proposals by outcome (created / reused)",
    ["outcome"],
)

MERGE_VOTES_TOTAL = Counter(
    "spotmerge_merge_votes_total",
    "Votes cast on merge proposals",
    ["choice"],
)

MERGE_TRANSITIONS_TOTAL = Counter(
    "spotmerge_merge_transitions_total",
    "Merge proposal state transitions",
    ["from_status", "to_status"],
)

SPOT_MERGES_TOTAL = Counter(
    "spotmerge_spot_merges_total",
    "Executed spot merges",
    ["origin"],
)

MIGRATED_REFERENCES_TOTAL = Counter(
    "spotmerge_migrated_references_total",
    "External references rewritten during merges",
    ["outcome"],
)

REDIRECT_FAILURES_TOTAL = Counter(
    "spotmerge_redirect_failures_total",
    "Redirect resolutions that failed closed",
    ["reason"],
)

NOTIFICATION_FAILURES_TOTAL = Counter(
    "spotmerge_notification_failures_total",
    "Notifications that could not be handed over",
    ["event_type"],
)
