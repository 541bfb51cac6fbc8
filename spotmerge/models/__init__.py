"""Models package: re-export all ORM classes for metadata discovery."""
from spotmerge.models.spot import FavoriteRow, SpotRow  # noqa: F401
from spotmerge.models.merge import (  # noqa: F401
    MergeHistoryRow,
    MergeProposalRow,
    MergeVoteRow,
    SpotRedirectRow,
)
