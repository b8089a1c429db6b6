"""Periodic upkeep of stored loan statuses.

The sweep only refreshes the cached OVERDUE status. It does not charge a fine:
the fine is fixed when the copy comes back, or estimated read-only for reports.

The sweep usually runs in a Celery worker whose locks are not shared with the
web process, so each flip is one conditional UPDATE: a loan closed after the
candidate scan no longer matches the WHERE clause and is left alone.
"""

import logging
from datetime import date

from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from services.loan_service.models import Loan
from services.loan_service.status import LoanStatus
from services.shared.clock import utcnow
from services.shared.locks import LockRegistry


logger = logging.getLogger("loan-maintenance")

SWEEPABLE_STATUSES = (LoanStatus.ACTIVE, LoanStatus.RENEWED)


def _still_overdue(today: date):
    return (
        Loan.status.in_(SWEEPABLE_STATUSES),
        Loan.returned_at.is_(None),
        Loan.due_date < today,
    )


def overdue_candidates(db: Engine, today: date) -> list[int]:
    with Session(db) as session:
        query = select(Loan.id).where(*_still_overdue(today)).order_by(Loan.id)
        return list(session.exec(query).all())


def flag_overdue(db: Engine, loan_id: int, today: date, locks: LockRegistry) -> bool:
    with locks.hold(("loan", loan_id)):
        with Session(db) as session:
            result = session.exec(
                update(Loan)
                .where(Loan.id == loan_id, *_still_overdue(today))
                .values(status=LoanStatus.OVERDUE, updated_at=utcnow())
            )
            session.commit()
            return result.rowcount == 1


def update_overdue_loans(db: Engine, today: date, locks: LockRegistry) -> int:
    candidates = overdue_candidates(db, today)
    transitioned = 0
    for loan_id in candidates:
        try:
            if flag_overdue(db, loan_id, today, locks):
                transitioned += 1
        except Exception:
            logger.exception("Could not mark loan %s as overdue", loan_id)
    logger.info(
        "Overdue sweep for %s moved %s of %s candidate loans to OVERDUE",
        today,
        transitioned,
        len(candidates),
    )
    return transitioned
