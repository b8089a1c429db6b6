from enum import Enum

from services.shared.errors import InvalidState


class LoanStatus(str, Enum):
    ACTIVE = "ACTIVE"
    OVERDUE = "OVERDUE"
    RENEWED = "RENEWED"
    RETURNED = "RETURNED"
    RETURNED_LATE = "RETURNED_LATE"
    CANCELLED = "CANCELLED"
    LOST = "LOST"
    DAMAGED = "DAMAGED"


# The borrower still holds the copy.
OPEN_STATUSES = frozenset({LoanStatus.ACTIVE, LoanStatus.OVERDUE, LoanStatus.RENEWED})

TERMINAL_STATUSES = frozenset(
    {
        LoanStatus.RETURNED,
        LoanStatus.RETURNED_LATE,
        LoanStatus.CANCELLED,
        LoanStatus.LOST,
        LoanStatus.DAMAGED,
    }
)

ALLOWED_TRANSITIONS: dict[LoanStatus, frozenset[LoanStatus]] = {
    LoanStatus.ACTIVE: frozenset(
        {
            LoanStatus.OVERDUE,
            LoanStatus.RETURNED,
            LoanStatus.RENEWED,
            LoanStatus.CANCELLED,
            LoanStatus.LOST,
            LoanStatus.DAMAGED,
        }
    ),
    LoanStatus.OVERDUE: frozenset(
        {LoanStatus.RETURNED_LATE, LoanStatus.LOST, LoanStatus.DAMAGED, LoanStatus.CANCELLED}
    ),
    LoanStatus.RENEWED: frozenset(
        {
            LoanStatus.RETURNED,
            LoanStatus.OVERDUE,
            LoanStatus.CANCELLED,
            LoanStatus.LOST,
            LoanStatus.DAMAGED,
        }
    ),
}

# Higher means more urgent for staff; used to order reports.
STATUS_PRIORITY: dict[LoanStatus, int] = {
    LoanStatus.LOST: 10,
    LoanStatus.DAMAGED: 9,
    LoanStatus.OVERDUE: 8,
    LoanStatus.RETURNED_LATE: 6,
    LoanStatus.ACTIVE: 5,
    LoanStatus.RENEWED: 4,
    LoanStatus.RETURNED: 2,
    LoanStatus.CANCELLED: 1,
}


def can_transition(current: LoanStatus, target: LoanStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def check_transition(current: LoanStatus, target: LoanStatus) -> None:
    if not can_transition(current, target):
        raise InvalidState(f"Loan cannot move from {current.value} to {target.value}")
