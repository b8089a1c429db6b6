from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel
from sqlmodel import Field, SQLModel

from services.loan_service.fines import calculate_fine, to_money
from services.loan_service.policy import LoanPolicy
from services.loan_service.status import OPEN_STATUSES, LoanStatus, check_transition
from services.shared.clock import utcnow
from services.shared.errors import InvalidState, PolicyViolation, ValidationError


NOTE_SEPARATOR = " | "


class Loan(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    borrower_id: int = Field(index=True)
    title_id: int = Field(index=True)
    loan_date: date
    due_date: date = Field(index=True)
    returned_at: Optional[datetime] = Field(default=None, index=True)
    status: LoanStatus = Field(default=LoanStatus.ACTIVE, index=True)
    renewals: int = Field(default=0, ge=0)
    fine_amount: Decimal = Field(default=Decimal("0.00"), max_digits=10, decimal_places=2)
    fine_paid: bool = Field(default=True)
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    def is_overdue(self, today: date) -> bool:
        return self.returned_at is None and today > self.due_date

    def has_unpaid_fine(self) -> bool:
        return self.fine_amount > 0 and not self.fine_paid

    def _require_open(self, action: str) -> None:
        if not self.is_open():
            raise InvalidState(f"Loan {self.id} is {self.status.value} and cannot be {action}")

    def _move_to(self, target: LoanStatus) -> None:
        check_transition(self.status, target)
        self.status = target
        self.updated_at = utcnow()

    def _close(self, target: LoanStatus, when: datetime) -> None:
        self._move_to(target)
        self.returned_at = when

    def _charge(self, amount: Decimal) -> None:
        self.fine_amount = to_money(amount)
        self.fine_paid = self.fine_amount == 0

    def append_note(self, text: str) -> None:
        text = (text or "").strip()
        if not text:
            raise ValidationError("note text is required")
        self.notes = f"{self.notes}{NOTE_SEPARATOR}{text}" if self.notes else text
        self.updated_at = utcnow()

    def renew(self, policy: LoanPolicy, today: date) -> None:
        self._require_open("renewed")
        if self.renewals >= policy.max_renewals:
            raise PolicyViolation(
                f"Loan {self.id} already reached the limit of {policy.max_renewals} renewals"
            )
        if self.status == LoanStatus.OVERDUE or self.is_overdue(today):
            raise PolicyViolation(f"Loan {self.id} is overdue and cannot be renewed")
        if not self.fine_paid:
            raise PolicyViolation(f"Loan {self.id} has an unpaid fine")
        if self.status != LoanStatus.RENEWED:
            self._move_to(LoanStatus.RENEWED)
        self.due_date = self.due_date + timedelta(days=policy.renewal_days)
        self.renewals += 1
        self.updated_at = utcnow()

    def process_return(self, when: datetime, policy: LoanPolicy) -> None:
        self._require_open("returned")
        returned_on = when.date()
        if returned_on > self.due_date:
            # A late return realises the overdue state even if no sweep ran yet.
            if self.status != LoanStatus.OVERDUE:
                self._move_to(LoanStatus.OVERDUE)
            self._close(LoanStatus.RETURNED_LATE, when)
            self._charge(calculate_fine(self.due_date, returned_on, policy.daily_fine_rate))
        elif self.status == LoanStatus.OVERDUE:
            self._close(LoanStatus.RETURNED_LATE, when)
            self._charge(Decimal("0"))
        else:
            self._close(LoanStatus.RETURNED, when)
            self._charge(Decimal("0"))

    def mark_lost(self, price: Optional[Decimal], policy: LoanPolicy, when: datetime) -> None:
        self._require_open("marked as lost")
        self._close(LoanStatus.LOST, when)
        self._charge(price if price is not None else policy.lost_fallback_fine)

    def mark_damaged(
        self,
        description: str,
        price: Optional[Decimal],
        policy: LoanPolicy,
        when: datetime,
    ) -> None:
        self._require_open("marked as damaged")
        self._close(LoanStatus.DAMAGED, when)
        if price is not None:
            self._charge(Decimal(price) * policy.damage_fine_ratio)
        else:
            self._charge(policy.damaged_fallback_fine)
        self.append_note(f"DAMAGED: {description}")

    def cancel(self, reason: str, when: datetime) -> None:
        self._require_open("cancelled")
        self._close(LoanStatus.CANCELLED, when)
        self.append_note(f"CANCELLED: {reason}")

    def pay_fine(self) -> None:
        if not self.has_unpaid_fine():
            raise InvalidState(f"Loan {self.id} has no outstanding fine")
        self.fine_paid = True
        self.updated_at = utcnow()


class LoanCreate(BaseModel):
    borrower_id: int
    title_id: int


class LoanRead(BaseModel):
    id: int
    borrower_id: int
    title_id: int
    loan_date: date
    due_date: date
    returned_at: Optional[datetime]
    status: LoanStatus
    renewals: int
    fine_amount: Decimal
    fine_paid: bool
    notes: Optional[str]

    model_config = {"from_attributes": True}


class ReturnRequest(BaseModel):
    returned_at: Optional[datetime] = None


class DamageReport(BaseModel):
    description: str


class CancelRequest(BaseModel):
    reason: str


class NoteRequest(BaseModel):
    text: str
