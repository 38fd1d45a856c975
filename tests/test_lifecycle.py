import pytest

from grant_service.app.errors import ConflictError
from grant_service.app.lifecycle import (
    GrantStatus,
    RequestStatus,
    ensure_grant_transition,
    ensure_transition,
    parse_request_status,
    status_for_approvals,
)


def test_status_for_approvals_with_default_threshold():
    assert status_for_approvals(0, 2) is RequestStatus.PENDING
    assert status_for_approvals(1, 2) is RequestStatus.PARTIALLY_APPROVED
    assert status_for_approvals(2, 2) is RequestStatus.APPROVED
    assert status_for_approvals(3, 2) is RequestStatus.APPROVED


def test_single_approval_threshold_skips_partial_state():
    assert status_for_approvals(1, 1) is RequestStatus.APPROVED


def test_partial_state_accumulates_below_higher_threshold():
    assert status_for_approvals(2, 3) is RequestStatus.PARTIALLY_APPROVED
    ensure_transition(RequestStatus.PARTIALLY_APPROVED, RequestStatus.PARTIALLY_APPROVED)


@pytest.mark.parametrize(
    "current,target",
    [
        (RequestStatus.PENDING, RequestStatus.PARTIALLY_APPROVED),
        (RequestStatus.PENDING, RequestStatus.APPROVED),
        (RequestStatus.PENDING, RequestStatus.REJECTED),
        (RequestStatus.PARTIALLY_APPROVED, RequestStatus.APPROVED),
        (RequestStatus.PARTIALLY_APPROVED, RequestStatus.REJECTED),
        (RequestStatus.APPROVED, RequestStatus.REVOKED),
    ],
)
def test_allowed_transitions(current, target):
    ensure_transition(current, target)


@pytest.mark.parametrize(
    "current,target",
    [
        (RequestStatus.APPROVED, RequestStatus.PENDING),
        (RequestStatus.APPROVED, RequestStatus.REJECTED),
        (RequestStatus.REJECTED, RequestStatus.APPROVED),
        (RequestStatus.REJECTED, RequestStatus.PENDING),
        (RequestStatus.REVOKED, RequestStatus.APPROVED),
        (RequestStatus.PARTIALLY_APPROVED, RequestStatus.PENDING),
        (RequestStatus.PENDING, RequestStatus.REVOKED),
    ],
)
def test_forbidden_transitions_raise_conflict(current, target):
    with pytest.raises(ConflictError):
        ensure_transition(current, target)


def test_terminal_statuses():
    assert RequestStatus.APPROVED.is_terminal
    assert RequestStatus.REJECTED.is_terminal
    assert RequestStatus.REVOKED.is_terminal
    assert not RequestStatus.PENDING.is_terminal
    assert not RequestStatus.PARTIALLY_APPROVED.is_terminal


def test_grant_can_only_be_revoked_once():
    ensure_grant_transition(GrantStatus.ACTIVE, GrantStatus.REVOKED)
    with pytest.raises(ConflictError):
        ensure_grant_transition(GrantStatus.REVOKED, GrantStatus.REVOKED)


def test_unknown_stored_status_is_not_a_transition_source():
    with pytest.raises(ConflictError):
        parse_request_status("ON_HOLD")
    assert parse_request_status("PENDING") is RequestStatus.PENDING
