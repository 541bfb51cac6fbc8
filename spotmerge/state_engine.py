"""Merge proposal state machine and action gating.

pending -> approved | rejected | cancelled
approved -> executed
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from spotmerge.errors import PermissionDenied, ProposalNotPending
from spotmerge.schemas.merge import Identity, MergeProposal, MergeStatus

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[MergeStatus, frozenset[MergeStatus]] = {
    MergeStatus.PENDING: frozenset({MergeStatus.APPROVED, MergeStatus.REJECTED, MergeStatus.CANCELLED}),
    MergeStatus.APPROVED: frozenset({MergeStatus.EXECUTED}),
    MergeStatus.REJECTED: frozenset(),
    MergeStatus.EXECUTED: frozenset(),
    MergeStatus.CANCELLED: frozenset(),
}

# action -> (required status, moderator only)
ACTIONS: dict[str, tuple[MergeStatus, bool]] = {
    "VOTE": (MergeStatus.PENDING, False),
    "APPROVE": (MergeStatus.PENDING, True),
    "REJECT": (MergeStatus.PENDING, True),
    "CANCEL": (MergeStatus.PENDING, False),
    "EXECUTE": (MergeStatus.APPROVED, False),
}


def can_transition(current: MergeStatus | str, new: MergeStatus | str) -> bool:
    return MergeStatus(new) in ALLOWED_TRANSITIONS[MergeStatus(current)]


def action_gating_decision(
    proposal: MergeProposal,
    *,
    action: str,
    actor: Identity,
    is_moderator: bool,
) -> tuple[bool, str | None]:
    """Returns `(allowed, reason_code_if_blocked)`.

    Permission is checked before state so a non-moderator learns nothing
    about proposals they cannot act on.
    """
    action = str(action or "").upper()
    if action not in ACTIONS:
        return False, "ACTION_UNKNOWN"
    required_status, moderator_only = ACTIONS[action]

    if moderator_only and not is_moderator:
        return False, "ACTION_BLOCKED_NOT_MODERATOR"
    if action == "CANCEL" and not is_moderator and actor.user_id != proposal.proposed_by:
        return False, "ACTION_BLOCKED_NOT_PROPOSER"
    if proposal.status != required_status:
        return False, f"ACTION_BLOCKED_{proposal.status.value.upper()}"
    return True, None


def ensure_action_allowed(
    proposal: MergeProposal,
    *,
    action: str,
    actor: Identity,
    is_moderator: bool,
) -> None:
    """Raise the typed error matching `action_gating_decision`."""
    allowed, reason = action_gating_decision(
        proposal, action=action, actor=actor, is_moderator=is_moderator
    )
    if allowed:
        return
    if reason in {"ACTION_BLOCKED_NOT_MODERATOR", "ACTION_BLOCKED_NOT_PROPOSER"}:
        raise PermissionDenied(f"{actor.user_id} may not {action.lower()} proposal {proposal.id} ({reason})")
    if reason == "ACTION_UNKNOWN":
        raise ValueError(f"Unknown merge action {action!r}")
    required_status, _ = ACTIONS[action.upper()]
    raise ProposalNotPending(proposal.id, proposal.status.value, required_status.value)


def transition_proposal(
    proposal: MergeProposal,
    new_status: MergeStatus,
    *,
    actor: Identity | None = None,
    reason: str | None = None,
    now_utc: Optional[datetime] = None,
) -> MergeProposal:
    """Return a copy of `proposal` moved to `new_status` with its audit fields set."""
    if not can_transition(proposal.status, new_status):
        raise ProposalNotPending(proposal.id, proposal.status.value)

    now = now_utc or datetime.now(timezone.utc)
    actor_id = actor.user_id if actor else None
    changes: dict = {"status": new_status}
    if new_status == MergeStatus.APPROVED:
        changes.update(approved_by=actor_id, approved_at=now)
    elif new_status == MergeStatus.REJECTED:
        changes.update(rejected_by=actor_id, rejected_at=now, rejection_reason=reason or "")
    elif new_status == MergeStatus.CANCELLED:
        changes.update(cancelled_by=actor_id, cancelled_at=now)
    elif new_status == MergeStatus.EXECUTED:
        changes.update(executed_by=actor_id, executed_at=now)

    logger.debug("Proposal %s: %s -> %s", proposal.id, proposal.status.value, new_status.value)
    return proposal.model_copy(update=changes)
