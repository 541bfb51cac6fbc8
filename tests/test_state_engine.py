from datetime import datetime, timezone

import pytest

from spotmerge.errors import PermissionDenied, ProposalNotPending
from spotmerge.schemas.merge import Identity, MergeProposal, MergeStatus
from spotmerge.state_engine import (
    action_gating_decision,
    can_transition,
    ensure_action_allowed,
    transition_proposal,
)

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
ALICE = Identity(user_id="alice")
BOB = Identity(user_id="bob")


def _proposal(status: MergeStatus = MergeStatus.PENDING) -> MergeProposal:
    return MergeProposal(
        id="merge_test",
        spot_id1="1",
        spot_id2="2",
        proposed_by="alice",
        created_at=NOW,
        status=status,
    )


def test_allowed_transitions() -> None:
    assert can_transition(MergeStatus.PENDING, MergeStatus.APPROVED)
    assert can_transition("pending", "cancelled")
    assert can_transition(MergeStatus.APPROVED, MergeStatus.EXECUTED)
    assert not can_transition(MergeStatus.PENDING, MergeStatus.EXECUTED)
    assert not can_transition(MergeStatus.REJECTED, MergeStatus.PENDING)
    assert not can_transition(MergeStatus.EXECUTED, MergeStatus.APPROVED)
    assert not can_transition(MergeStatus.APPROVED, MergeStatus.CANCELLED)


def test_unknown_status_value_is_rejected() -> None:
    with pytest.raises(ValueError):
        can_transition("MergeStatus.APPROVED", MergeStatus.EXECUTED)


def test_gating_blocks_non_moderator_approval() -> None:
    allowed, reason = action_gating_decision(_proposal(), action="APPROVE", actor=BOB, is_moderator=False)
    assert allowed is False
    assert reason == "ACTION_BLOCKED_NOT_MODERATOR"


def test_gating_checks_permission_before_state() -> None:
    allowed, reason = action_gating_decision(
        _proposal(MergeStatus.REJECTED), action="REJECT", actor=BOB, is_moderator=False
    )
    assert (allowed, reason) == (False, "ACTION_BLOCKED_NOT_MODERATOR")


def test_gating_blocks_votes_on_terminal_proposals() -> None:
    allowed, reason = action_gating_decision(
        _proposal(MergeStatus.REJECTED), action="vote", actor=BOB, is_moderator=False
    )
    assert allowed is False
    assert reason == "ACTION_BLOCKED_REJECTED"


def test_cancel_allowed_for_proposer_or_moderator_only() -> None:
    assert action_gating_decision(_proposal(), action="CANCEL", actor=ALICE, is_moderator=False) == (True, None)
    assert action_gating_decision(_proposal(), action="CANCEL", actor=BOB, is_moderator=True) == (True, None)
    assert action_gating_decision(_proposal(), action="CANCEL", actor=BOB, is_moderator=False) == (
        False,
        "ACTION_BLOCKED_NOT_PROPOSER",
    )


def test_unknown_action_is_blocked() -> None:
    assert action_gating_decision(_proposal(), action="SPLIT", actor=ALICE, is_moderator=True) == (
        False,
        "ACTION_UNKNOWN",
    )


def test_ensure_action_allowed_raises_typed_errors() -> None:
    with pytest.raises(PermissionDenied):
        ensure_action_allowed(_proposal(), action="APPROVE", actor=BOB, is_moderator=False)
    with pytest.raises(ProposalNotPending) as excinfo:
        ensure_action_allowed(_proposal(MergeStatus.CANCELLED), action="VOTE", actor=BOB, is_moderator=False)
    assert excinfo.value.status == "cancelled"


def test_transition_sets_audit_fields() -> None:
    rejected = transition_proposal(
        _proposal(), MergeStatus.REJECTED, actor=Identity(user_id="mod"), reason="different exits", now_utc=NOW
    )
    assert rejected.status == MergeStatus.REJECTED
    assert rejected.rejected_by == "mod"
    assert rejected.rejected_at == NOW
    assert rejected.rejection_reason == "different exits"
    assert rejected.is_terminal


def test_transition_refuses_leaving_terminal_state() -> None:
    with pytest.raises(ProposalNotPending):
        transition_proposal(_proposal(MergeStatus.EXECUTED), MergeStatus.APPROVED)
