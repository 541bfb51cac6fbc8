"""Typed failures surfaced to callers of the merge core.

None of these are retried internally; retry policy belongs to the caller.
"""
from __future__ import annotations


class SpotMergeError(Exception):
    """Base class. `code` is stable and safe to expose over the API."""

    code = "SPOT_MERGE_ERROR"
    http_status = 400


class InvalidCoordinate(SpotMergeError, ValueError):
    code = "INVALID_COORDINATE"
    http_status = 422


class SpotNotFound(SpotMergeError):
    code = "SPOT_NOT_FOUND"
    http_status = 404

    def __init__(self, spot_id: str) -> None:
        super().__init__(f"Spot {spot_id} not found")
        self.spot_id = spot_id


class SelfMergeRejected(SpotMergeError):
    code = "SELF_MERGE_REJECTED"
    http_status = 409

    def __init__(self, canonical_id: str) -> None:
        super().__init__(f"Both spots resolve to {canonical_id}")
        self.canonical_id = canonical_id


class ProposalNotFound(SpotMergeError):
    code = "PROPOSAL_NOT_FOUND"
    http_status = 404

    def __init__(self, proposal_id: str) -> None:
        super().__init__(f"Merge proposal {proposal_id} not found")
        self.proposal_id = proposal_id


class ProposalNotPending(SpotMergeError):
    """Transition attempted from a terminal or otherwise wrong state."""

    code = "PROPOSAL_NOT_PENDING"
    http_status = 409

    def __init__(self, proposal_id: str, status: str, expected: str = "pending") -> None:
        super().__init__(f"Merge proposal {proposal_id} is {status}, expected {expected}")
        self.proposal_id = proposal_id
        self.status = status
        self.expected = expected


class ProposalPairMismatch(SpotMergeError):
    code = "PROPOSAL_PAIR_MISMATCH"
    http_status = 409


class PermissionDenied(SpotMergeError):
    code = "PERMISSION_DENIED"
    http_status = 403


class RedirectError(SpotMergeError):
    http_status = 500


class RedirectCycleDetected(RedirectError):
    code = "REDIRECT_CYCLE_DETECTED"

    def __init__(self, spot_id: str, chain: list[str]) -> None:
        super().__init__(f"Redirect cycle reached from {spot_id}: {' -> '.join(chain)}")
        self.spot_id = spot_id
        self.chain = chain


class RedirectChainTooLong(RedirectError):
    code = "REDIRECT_CHAIN_TOO_LONG"

    def __init__(self, spot_id: str, max_hops: int) -> None:
        super().__init__(f"Redirect chain from {spot_id} exceeds {max_hops} hops")
        self.spot_id = spot_id
        self.max_hops = max_hops
