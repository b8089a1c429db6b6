"""Lending rules: who may borrow what, and how a loan moves to its end.

The engine is the only writer of loans. Copy counts belong to the catalog
provider, which may be the local ledger or a remote catalog service, so loan
creation runs as reserve -> persist -> compensate rather than as a single
database transaction.
"""

import logging
import os
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Callable, Iterator, Optional

from pydantic import BaseModel
from sqlalchemy import extract, func
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from services.catalog_service.ledger import InventoryLedger
from services.loan_service import maintenance
from services.loan_service.fines import FineEstimate, fine_estimate, to_money
from services.loan_service.models import Loan
from services.loan_service.policy import LoanPolicy
from services.loan_service.providers import (
    CatalogProvider,
    HttpCatalogClient,
    HttpIdentityClient,
    IdentityProvider,
)
from services.loan_service.status import OPEN_STATUSES, STATUS_PRIORITY, LoanStatus
from services.member_service.directory import MemberDirectory
from services.shared.clock import utcnow
from services.shared.db import create_db, make_engine
from services.shared.errors import LendingError, NotFound, PolicyViolation, ValidationError
from services.shared.locks import LockRegistry


logger = logging.getLogger("loan-service")

DEFAULT_DB_URL = "sqlite:///./services/loan_service/loan.db"


class StatusCount(BaseModel):
    status: LoanStatus
    count: int


class MonthCount(BaseModel):
    year: int
    month: int
    count: int


class BorrowerCount(BaseModel):
    borrower_id: int
    loan_count: int


def _require_id(value, name: str) -> int:
    if value is None or isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} is required and must be an integer")
    if value <= 0:
        raise ValidationError(f"{name} must be positive")
    return value


def _require_text(value: Optional[str], name: str) -> str:
    if value is None or not value.strip():
        raise ValidationError(f"{name} is required")
    return value.strip()


def _require_range(start: Optional[date], end: Optional[date]) -> None:
    if start is None or end is None:
        raise ValidationError("start and end dates are required")
    if start > end:
        raise ValidationError("start date cannot be after end date")


def _open(query):
    return query.where(Loan.status.in_(tuple(OPEN_STATUSES)), Loan.returned_at.is_(None))


class LoanPolicyEngine:
    def __init__(
        self,
        db: Engine,
        identity: IdentityProvider,
        catalog: CatalogProvider,
        policy: Optional[LoanPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.identity = identity
        self.catalog = catalog
        self.policy = policy or LoanPolicy()
        self.clock = clock
        self.locks = LockRegistry()

    @classmethod
    def from_env(cls) -> "LoanPolicyEngine":
        """Wire the engine the way the deployed loan service runs it.

        Without CATALOG_SERVICE_URL / MEMBER_SERVICE_URL the catalog ledger and
        member directory live in the loan database itself.
        """
        db = make_engine(os.getenv("LOAN_DB_URL", DEFAULT_DB_URL))
        create_db(db)
        catalog_url = os.getenv("CATALOG_SERVICE_URL")
        member_url = os.getenv("MEMBER_SERVICE_URL")
        catalog = HttpCatalogClient(catalog_url) if catalog_url else InventoryLedger(db)
        identity = HttpIdentityClient(member_url) if member_url else MemberDirectory(db)
        return cls(db, identity=identity, catalog=catalog, policy=LoanPolicy.from_env())

    def today(self) -> date:
        return self.clock().date()

    # --- loan creation ---

    def create_loan(self, borrower_id: int, title_id: int) -> Loan:
        _require_id(borrower_id, "borrower_id")
        _require_id(title_id, "title_id")

        with self.locks.hold(("borrower", borrower_id)):
            self._check_eligibility(borrower_id, title_id)

            self.catalog.reserve(title_id)
            loan_id = None
            try:
                loan = self._persist_new_loan(borrower_id, title_id)
                loan_id = loan.id
                self.catalog.record_loan(title_id)
            except Exception:
                self._undo_creation(title_id, loan_id)
                raise

        logger.info(
            "Loan %s created: borrower=%s title=%s due=%s",
            loan.id,
            borrower_id,
            title_id,
            loan.due_date,
        )
        return loan

    def _check_eligibility(self, borrower_id: int, title_id: int) -> None:
        member = self.identity.lookup(borrower_id)
        if not member.active:
            raise PolicyViolation(f"Borrower {borrower_id} is not active")

        title = self.catalog.lookup(title_id)
        if not title.active:
            raise PolicyViolation(f"Title {title_id} is not active")
        if title.available_copies <= 0:
            raise PolicyViolation(f"No copies of title {title_id} are available")

        with Session(self.db) as session:
            open_loans = session.exec(_open(select(Loan)).where(Loan.borrower_id == borrower_id)).all()
            if len(open_loans) >= self.policy.max_loans_per_user:
                raise PolicyViolation(
                    f"Borrower {borrower_id} already holds the maximum of "
                    f"{self.policy.max_loans_per_user} loans"
                )
            if member.has_unpaid_fine or self._has_unpaid_fines(session, borrower_id):
                raise PolicyViolation(f"Borrower {borrower_id} has unpaid fines")
            if any(loan.title_id == title_id for loan in open_loans):
                raise PolicyViolation(f"Borrower {borrower_id} already holds title {title_id}")

    def _has_unpaid_fines(self, session: Session, borrower_id: int) -> bool:
        query = select(Loan.id).where(
            Loan.borrower_id == borrower_id,
            Loan.fine_amount > 0,
            Loan.fine_paid == False,  # noqa: E712
        )
        return session.exec(query).first() is not None

    def _persist_new_loan(self, borrower_id: int, title_id: int) -> Loan:
        today = self.today()
        loan = Loan(
            borrower_id=borrower_id,
            title_id=title_id,
            loan_date=today,
            due_date=today + timedelta(days=self.policy.loan_period_days),
            status=LoanStatus.ACTIVE,
            renewals=0,
            fine_amount=Decimal("0.00"),
            fine_paid=True,
        )
        with Session(self.db) as session:
            session.add(loan)
            session.commit()
            session.refresh(loan)
        return loan

    def _undo_creation(self, title_id: int, loan_id: Optional[int]) -> None:
        logger.warning("Loan creation for title %s failed, releasing the reserved copy", title_id)
        if loan_id is not None:
            try:
                with Session(self.db) as session:
                    loan = session.get(Loan, loan_id)
                    if loan is not None:
                        session.delete(loan)
                        session.commit()
            except Exception:
                logger.exception("Could not remove half-created loan %s", loan_id)
        try:
            self.catalog.release(title_id)
        except Exception:
            logger.exception("Could not release reserved copy of title %s", title_id)

    # --- transitions on an existing loan ---

    @contextmanager
    def _locked_loan(self, loan_id: int) -> Iterator[tuple[Session, Loan]]:
        _require_id(loan_id, "loan_id")
        with self.locks.hold(("loan", loan_id)):
            with Session(self.db) as session:
                loan = session.exec(select(Loan).where(Loan.id == loan_id).with_for_update()).first()
                if loan is None:
                    raise NotFound(f"Loan {loan_id} not found")
                yield session, loan

    @staticmethod
    def _save(session: Session, loan: Loan) -> None:
        session.add(loan)
        session.commit()
        session.refresh(loan)

    def _save_and_release(self, session: Session, loan: Loan) -> None:
        # Release only after the closed loan is committed.
        self._save(session, loan)
        try:
            self.catalog.release(loan.title_id)
        except Exception:
            logger.exception(
                "Loan %s is closed but its copy of title %s was not released",
                loan.id,
                loan.title_id,
            )
            raise

    def _price_of(self, title_id: int) -> Optional[Decimal]:
        return self.catalog.lookup(title_id).price

    def renew_loan(self, loan_id: int) -> Loan:
        with self._locked_loan(loan_id) as (session, loan):
            loan.renew(self.policy, self.today())
            self._save(session, loan)
        logger.info("Loan %s renewed until %s (%s renewals)", loan_id, loan.due_date, loan.renewals)
        return loan

    def process_return(self, loan_id: int, returned_at: Optional[datetime] = None) -> Loan:
        when = returned_at or self.clock()
        with self._locked_loan(loan_id) as (session, loan):
            loan.process_return(when, self.policy)
            self._save_and_release(session, loan)
        logger.info("Loan %s returned as %s, fine %s", loan_id, loan.status.value, loan.fine_amount)
        return loan

    def mark_lost(self, loan_id: int) -> Loan:
        with self._locked_loan(loan_id) as (session, loan):
            price = self._price_of(loan.title_id)
            loan.mark_lost(price, self.policy, self.clock())
            # The copy is gone: it stays out of availability until stock is resized.
            self._save(session, loan)
        logger.info("Loan %s marked lost, fine %s", loan_id, loan.fine_amount)
        return loan

    def mark_damaged(self, loan_id: int, description: str) -> Loan:
        description = _require_text(description, "description")
        with self._locked_loan(loan_id) as (session, loan):
            price = self._price_of(loan.title_id)
            loan.mark_damaged(description, price, self.policy, self.clock())
            self._save_and_release(session, loan)
        logger.info("Loan %s marked damaged, fine %s", loan_id, loan.fine_amount)
        return loan

    def cancel_loan(self, loan_id: int, reason: str) -> Loan:
        reason = _require_text(reason, "reason")
        with self._locked_loan(loan_id) as (session, loan):
            loan.cancel(reason, self.clock())
            self._save_and_release(session, loan)
        logger.info("Loan %s cancelled", loan_id)
        return loan

    def pay_fine(self, loan_id: int) -> Loan:
        with self._locked_loan(loan_id) as (session, loan):
            loan.pay_fine()
            self._save(session, loan)
        logger.info("Fine of %s paid on loan %s", loan.fine_amount, loan_id)
        return loan

    def add_note(self, loan_id: int, text: str) -> Loan:
        text = _require_text(text, "text")
        with self._locked_loan(loan_id) as (session, loan):
            loan.append_note(text)
            self._save(session, loan)
        return loan

    def update_overdue_loans(self) -> int:
        return maintenance.update_overdue_loans(self.db, self.today(), self.locks)

    # --- queries ---

    def get_loan(self, loan_id: int) -> Loan:
        _require_id(loan_id, "loan_id")
        with Session(self.db) as session:
            loan = session.get(Loan, loan_id)
        if loan is None:
            raise NotFound(f"Loan {loan_id} not found")
        return loan

    def _all(self, query) -> list[Loan]:
        with Session(self.db) as session:
            return list(session.exec(query).all())

    def list_loans(
        self,
        borrower_id: Optional[int] = None,
        status: Optional[LoanStatus] = None,
    ) -> list[Loan]:
        query = select(Loan)
        if borrower_id is not None:
            query = query.where(Loan.borrower_id == borrower_id)
        if status is not None:
            query = query.where(Loan.status == status)
        return self._all(query.order_by(Loan.loan_date.desc(), Loan.id.desc()))

    def find_overdue_loans(self) -> list[Loan]:
        query = _open(select(Loan)).where(Loan.due_date < self.today())
        return self._all(query.order_by(Loan.due_date, Loan.id))

    def find_loans_due_soon(self, days: int) -> list[Loan]:
        if days is None or isinstance(days, bool) or not isinstance(days, int) or days < 1:
            raise ValidationError("days must be an integer of at least 1")
        today = self.today()
        query = _open(select(Loan)).where(
            Loan.due_date >= today,
            Loan.due_date <= today + timedelta(days=days),
        )
        return self._all(query.order_by(Loan.due_date, Loan.id))

    def find_loans_due_today(self) -> list[Loan]:
        query = _open(select(Loan)).where(Loan.due_date == self.today())
        return self._all(query.order_by(Loan.id))

    def find_loans_with_unpaid_fines(self) -> list[Loan]:
        query = select(Loan).where(Loan.fine_amount > 0, Loan.fine_paid == False)  # noqa: E712
        return self._all(query.order_by(Loan.id))

    def calculate_total_unpaid_fines(self) -> Decimal:
        total = sum((loan.fine_amount for loan in self.find_loans_with_unpaid_fines()), Decimal("0"))
        return to_money(total)

    def find_active_loans_for_user(self, user_id: int) -> list[Loan]:
        self.identity.lookup(_require_id(user_id, "user_id"))
        query = _open(select(Loan)).where(Loan.borrower_id == user_id)
        return self._all(query.order_by(Loan.due_date, Loan.id))

    def find_overdue_loans_for_user(self, user_id: int) -> list[Loan]:
        self.identity.lookup(_require_id(user_id, "user_id"))
        query = _open(select(Loan)).where(Loan.borrower_id == user_id, Loan.due_date < self.today())
        return self._all(query.order_by(Loan.due_date, Loan.id))

    def find_loan_history_for_user(self, user_id: int, offset: int = 0, limit: int = 50) -> list[Loan]:
        self.identity.lookup(_require_id(user_id, "user_id"))
        if offset < 0 or limit < 1:
            raise ValidationError("offset must be >= 0 and limit >= 1")
        query = (
            select(Loan)
            .where(Loan.borrower_id == user_id)
            .order_by(Loan.loan_date.desc(), Loan.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return self._all(query)

    def find_loans_by_date_range(self, start: date, end: date) -> list[Loan]:
        _require_range(start, end)
        query = select(Loan).where(Loan.loan_date >= start, Loan.loan_date <= end)
        return self._all(query.order_by(Loan.loan_date, Loan.id))

    def can_user_borrow(self, user_id: int) -> bool:
        """Pre-check for UIs; never raises for unknown or malformed ids."""
        try:
            member = self.identity.lookup(_require_id(user_id, "user_id"))
        except LendingError:
            return False
        if not member.active or member.has_unpaid_fine:
            return False
        with Session(self.db) as session:
            open_count = session.exec(
                _open(select(func.count(Loan.id))).where(Loan.borrower_id == user_id)
            ).one()
            if open_count >= self.policy.max_loans_per_user:
                return False
            return not self._has_unpaid_fines(session, user_id)

    def loan_statistics_by_status(self) -> list[StatusCount]:
        with Session(self.db) as session:
            rows = session.exec(select(Loan.status, func.count(Loan.id)).group_by(Loan.status)).all()
        counts = {status: count for status, count in rows}
        ordered = sorted(LoanStatus, key=lambda status: STATUS_PRIORITY[status], reverse=True)
        return [StatusCount(status=status, count=counts.get(status, 0)) for status in ordered]

    def overdue_report(self, as_of: Optional[date] = None) -> list[FineEstimate]:
        """Fines the overdue loans would owe on ``as_of``; nothing is written."""
        as_of = as_of or self.today()
        loans = self._all(_open(select(Loan)).where(Loan.due_date < as_of).order_by(Loan.due_date, Loan.id))
        estimates = [fine_estimate(loan, as_of, self.policy.daily_fine_rate) for loan in loans]
        return sorted(
            (estimate for estimate in estimates if estimate is not None),
            key=lambda estimate: estimate.estimated_fine,
            reverse=True,
        )

    # --- reports ---

    def loan_statistics_by_month(self) -> list[MonthCount]:
        year = extract("year", Loan.loan_date)
        month = extract("month", Loan.loan_date)
        with Session(self.db) as session:
            rows = session.exec(
                select(year, month, func.count(Loan.id)).group_by(year, month).order_by(year, month)
            ).all()
        return [MonthCount(year=int(y), month=int(m), count=count) for y, m, count in rows]

    def find_most_active_users(self, limit: int = 10) -> list[BorrowerCount]:
        if limit < 1:
            raise ValidationError("limit must be at least 1")
        loans = func.count(Loan.id)
        query = (
            select(Loan.borrower_id, loans)
            .group_by(Loan.borrower_id)
            .order_by(loans.desc(), Loan.borrower_id)
            .limit(limit)
        )
        with Session(self.db) as session:
            rows = session.exec(query).all()
        return [BorrowerCount(borrower_id=borrower_id, loan_count=count) for borrower_id, count in rows]

    def calculate_average_loan_duration(self) -> float:
        """Mean days a copy stays out; loans still out count up to today."""
        today = self.today()
        loans = self._all(select(Loan))
        if not loans:
            return 0.0
        days = [
            ((loan.returned_at.date() if loan.returned_at else today) - loan.loan_date).days
            for loan in loans
        ]
        return sum(days) / len(days)

    def find_renewed_loans(self) -> list[Loan]:
        return self._all(select(Loan).where(Loan.renewals > 0).order_by(Loan.id))

    def find_loans_with_multiple_renewals(self, min_renewals: int) -> list[Loan]:
        if min_renewals < 1:
            raise ValidationError("min_renewals must be at least 1")
        query = select(Loan).where(Loan.renewals >= min_renewals)
        return self._all(query.order_by(Loan.renewals.desc(), Loan.id))

    def find_loans_with_notes(self) -> list[Loan]:
        query = select(Loan).where(Loan.notes.is_not(None), Loan.notes != "")
        return self._all(query.order_by(Loan.id))

    def find_most_recent_loan_for_user(self, user_id: int) -> Optional[Loan]:
        self.identity.lookup(_require_id(user_id, "user_id"))
        return self._latest(select(Loan).where(Loan.borrower_id == user_id))

    def find_most_recent_loan_for_title(self, title_id: int) -> Optional[Loan]:
        self.catalog.lookup(_require_id(title_id, "title_id"))
        return self._latest(select(Loan).where(Loan.title_id == title_id))

    def _latest(self, query) -> Optional[Loan]:
        with Session(self.db) as session:
            return session.exec(query.order_by(Loan.loan_date.desc(), Loan.id.desc())).first()

    def find_user_loans_in_period(self, user_id: int, start: date, end: date) -> list[Loan]:
        self.identity.lookup(_require_id(user_id, "user_id"))
        _require_range(start, end)
        query = select(Loan).where(
            Loan.borrower_id == user_id,
            Loan.loan_date >= start,
            Loan.loan_date <= end,
        )
        return self._all(query.order_by(Loan.loan_date, Loan.id))

    def count_active_loans(self) -> int:
        with Session(self.db) as session:
            return session.exec(select(func.count(Loan.id)).where(Loan.returned_at.is_(None))).one()

    def count_total_loans(self) -> int:
        with Session(self.db) as session:
            return session.exec(select(func.count(Loan.id))).one()

    def policy_settings(self) -> LoanPolicy:
        return self.policy
