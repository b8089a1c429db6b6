import pytest

from services.loan_service.status import (
    ALLOWED_TRANSITIONS,
    OPEN_STATUSES,
    STATUS_PRIORITY,
    TERMINAL_STATUSES,
    LoanStatus,
    can_transition,
    check_transition,
)
from services.shared.errors import InvalidState


def test_every_status_is_either_open_or_terminal():
    assert OPEN_STATUSES | TERMINAL_STATUSES == set(LoanStatus)
    assert not OPEN_STATUSES & TERMINAL_STATUSES


@pytest.mark.parametrize("status", sorted(TERMINAL_STATUSES))
def test_terminal_statuses_have_no_way_out(status):
    assert ALLOWED_TRANSITIONS.get(status, frozenset()) == frozenset()
    for target in LoanStatus:
        assert not can_transition(status, target)


def test_overdue_cannot_go_back_to_active_or_renewed():
    assert not can_transition(LoanStatus.OVERDUE, LoanStatus.ACTIVE)
    assert not can_transition(LoanStatus.OVERDUE, LoanStatus.RENEWED)
    assert can_transition(LoanStatus.OVERDUE, LoanStatus.RETURNED_LATE)


def test_check_transition_raises_invalid_state():
    check_transition(LoanStatus.ACTIVE, LoanStatus.RENEWED)
    with pytest.raises(InvalidState):
        check_transition(LoanStatus.RETURNED, LoanStatus.ACTIVE)


def test_priority_puts_lost_first_and_cancelled_last():
    ordered = sorted(LoanStatus, key=STATUS_PRIORITY.get, reverse=True)
    assert ordered[0] == LoanStatus.LOST
    assert ordered[-1] == LoanStatus.CANCELLED
    assert set(STATUS_PRIORITY) == set(LoanStatus)
