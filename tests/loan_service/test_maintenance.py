from datetime import date, datetime
from pathlib import Path

import pytest
from sqlmodel import Session

from services.loan_service import maintenance
from services.loan_service.models import Loan
from services.loan_service.status import LoanStatus
from services.shared.locks import LockRegistry
from tests.utils import sqlite_engine

TODAY = date(2024, 4, 1)


@pytest.fixture()
def db(tmp_path: Path):
    return sqlite_engine(tmp_path / "sweep.db")


def insert_loan(db, due_date: date, status: LoanStatus = LoanStatus.ACTIVE, **fields) -> int:
    loan = Loan(
        borrower_id=fields.pop("borrower_id", 1),
        title_id=fields.pop("title_id", 1),
        loan_date=date(2024, 3, 1),
        due_date=due_date,
        status=status,
        **fields,
    )
    with Session(db) as session:
        session.add(loan)
        session.commit()
        return loan.id


def status_of(db, loan_id: int) -> LoanStatus:
    with Session(db) as session:
        return session.get(Loan, loan_id).status


def test_sweep_flags_only_open_loans_past_due(db):
    late = insert_loan(db, date(2024, 3, 20))
    renewed = insert_loan(db, date(2024, 3, 31), status=LoanStatus.RENEWED)
    due_today = insert_loan(db, TODAY)
    returned = insert_loan(db, date(2024, 3, 10), status=LoanStatus.RETURNED)

    assert maintenance.update_overdue_loans(db, TODAY, LockRegistry()) == 2

    assert status_of(db, late) == LoanStatus.OVERDUE
    assert status_of(db, renewed) == LoanStatus.OVERDUE
    assert status_of(db, due_today) == LoanStatus.ACTIVE
    assert status_of(db, returned) == LoanStatus.RETURNED


def test_second_sweep_changes_nothing(db):
    insert_loan(db, date(2024, 3, 20))
    locks = LockRegistry()

    assert maintenance.update_overdue_loans(db, TODAY, locks) == 1
    assert maintenance.update_overdue_loans(db, TODAY, locks) == 0


def test_one_bad_loan_does_not_stop_the_sweep(db, monkeypatch, caplog):
    first = insert_loan(db, date(2024, 3, 20))
    broken = insert_loan(db, date(2024, 3, 21))
    last = insert_loan(db, date(2024, 3, 22))
    original = maintenance.flag_overdue

    def flaky(db, loan_id, today, locks):
        if loan_id == broken:
            raise RuntimeError("row locked")
        return original(db, loan_id, today, locks)

    monkeypatch.setattr(maintenance, "flag_overdue", flaky)

    assert maintenance.update_overdue_loans(db, TODAY, LockRegistry()) == 2
    assert status_of(db, first) == LoanStatus.OVERDUE
    assert status_of(db, broken) == LoanStatus.ACTIVE
    assert status_of(db, last) == LoanStatus.OVERDUE
    assert f"Could not mark loan {broken} as overdue" in caplog.text


def test_sweep_does_not_charge_fines(db):
    loan_id = insert_loan(db, date(2024, 3, 1))

    maintenance.update_overdue_loans(db, TODAY, LockRegistry())

    with Session(db) as session:
        loan = session.get(Loan, loan_id)
    assert loan.status == LoanStatus.OVERDUE
    assert loan.fine_amount == 0
    assert loan.fine_paid is True


def test_flag_skips_loan_closed_after_the_scan(db):
    loan_id = insert_loan(db, date(2024, 3, 20))
    assert maintenance.overdue_candidates(db, TODAY) == [loan_id]

    with Session(db) as session:
        loan = session.get(Loan, loan_id)
        loan.status = LoanStatus.RETURNED_LATE
        loan.returned_at = datetime(2024, 3, 31, 12, 0)
        session.add(loan)
        session.commit()

    assert maintenance.flag_overdue(db, loan_id, TODAY, LockRegistry()) is False
    assert status_of(db, loan_id) == LoanStatus.RETURNED_LATE
