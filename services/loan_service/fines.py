"""Monetary penalties for late loans.

``calculate_fine`` is the only place fines are computed. The persisting
transitions on the loan call it once, at return time; everything else here is
a read-only projection for reports and never writes back to a loan, so an
estimate can drift from day to day until the copy actually comes back.
"""

from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Optional

from pydantic import BaseModel

if TYPE_CHECKING:
    from services.loan_service.models import Loan


CENTS = Decimal("0.01")


def to_money(amount) -> Decimal:
    return Decimal(amount).quantize(CENTS, rounding=ROUND_HALF_UP)


def days_late(due_date: date, as_of: date) -> int:
    return max(0, (as_of - due_date).days)


def calculate_fine(due_date: date, as_of: date, rate_per_day: Decimal) -> Decimal:
    return to_money(days_late(due_date, as_of) * Decimal(rate_per_day))


class FineEstimate(BaseModel):
    loan_id: int
    borrower_id: int
    title_id: int
    due_date: date
    as_of: date
    days_overdue: int
    estimated_fine: Decimal


def estimate_fine(loan: "Loan", as_of: date, rate_per_day: Decimal) -> Decimal:
    """Fine the loan would owe if it came back on ``as_of``.

    Loans that already carry a recorded fine report that amount instead, so the
    estimate never doubles a fine written by a return, loss or damage.
    """
    if loan.fine_amount and loan.fine_amount > 0:
        return to_money(loan.fine_amount)
    if loan.returned_at is not None:
        as_of = loan.returned_at.date()
    return calculate_fine(loan.due_date, as_of, rate_per_day)


def fine_estimate(loan: "Loan", as_of: date, rate_per_day: Decimal) -> Optional[FineEstimate]:
    amount = estimate_fine(loan, as_of, rate_per_day)
    if amount <= 0:
        return None
    return FineEstimate(
        loan_id=loan.id,
        borrower_id=loan.borrower_id,
        title_id=loan.title_id,
        due_date=loan.due_date,
        as_of=as_of,
        days_overdue=days_late(loan.due_date, as_of),
        estimated_fine=amount,
    )
