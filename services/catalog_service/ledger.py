"""Copy-count bookkeeping for catalog titles.

Every counter change is a single conditional UPDATE so that concurrent
callers racing for the last copy cannot both win: the WHERE clause carries
the guard and the affected row count tells whether the guard held.
"""

import logging
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel
from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlmodel import Field, Session, SQLModel, select

from services.shared.errors import InvalidState, NotFound, PolicyViolation, ValidationError


logger = logging.getLogger("catalog-service")


class Title(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    author: str = ""
    price: Optional[Decimal] = Field(default=None, max_digits=10, decimal_places=2)
    total_copies: int = Field(default=1, ge=0)
    available_copies: int = Field(default=1, ge=0)
    active: bool = Field(default=True)
    loan_count: int = Field(default=0)

    @property
    def loaned_copies(self) -> int:
        return self.total_copies - self.available_copies

    def is_loanable(self) -> bool:
        return self.active and self.available_copies > 0


class TitleSnapshot(BaseModel):
    id: int
    active: bool
    price: Optional[Decimal] = None
    total_copies: int
    available_copies: int
    loan_count: int = 0

    @property
    def loaned_copies(self) -> int:
        return self.total_copies - self.available_copies

    def is_loanable(self) -> bool:
        return self.active and self.available_copies > 0


def snapshot(title: Title) -> TitleSnapshot:
    return TitleSnapshot(
        id=title.id,
        active=title.active,
        price=title.price,
        total_copies=title.total_copies,
        available_copies=title.available_copies,
        loan_count=title.loan_count,
    )


class InventoryLedger:
    """Owns ``0 <= available_copies <= total_copies`` for every title."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def add_title(
        self,
        name: str,
        author: str = "",
        total_copies: int = 1,
        price: Optional[Decimal] = None,
    ) -> Title:
        if total_copies is None or total_copies < 0:
            raise ValidationError("total_copies must be zero or more")
        if price is not None and Decimal(price) < 0:
            raise ValidationError("price cannot be negative")
        title = Title(
            name=name,
            author=author,
            price=price,
            total_copies=total_copies,
            available_copies=total_copies,
        )
        with Session(self.engine) as session:
            session.add(title)
            session.commit()
            session.refresh(title)
        logger.info("Title %s added with %s copies", title.id, total_copies)
        return title

    def get(self, title_id: int) -> Title:
        with Session(self.engine) as session:
            title = session.get(Title, title_id)
        if title is None:
            raise NotFound(f"Title {title_id} not found")
        return title

    def lookup(self, title_id: int) -> TitleSnapshot:
        return snapshot(self.get(title_id))

    def list_titles(self) -> list[Title]:
        with Session(self.engine) as session:
            return list(session.exec(select(Title).order_by(Title.id)).all())

    def most_borrowed(self, limit: int = 10) -> list[Title]:
        if limit < 1:
            raise ValidationError("limit must be at least 1")
        with Session(self.engine) as session:
            query = select(Title).order_by(Title.loan_count.desc(), Title.id).limit(limit)
            return list(session.exec(query).all())

    def _apply(self, statement) -> int:
        with Session(self.engine) as session:
            result = session.exec(statement)
            session.commit()
            return result.rowcount

    def reserve(self, title_id: int) -> TitleSnapshot:
        changed = self._apply(
            update(Title)
            .where(Title.id == title_id, Title.active == True, Title.available_copies > 0)  # noqa: E712
            .values(available_copies=Title.available_copies - 1)
        )
        if not changed:
            title = self.get(title_id)
            if not title.active:
                raise PolicyViolation(f"Title {title_id} is not active")
            raise PolicyViolation(f"No copies of title {title_id} are available")
        logger.info("Reserved a copy of title %s", title_id)
        return self.lookup(title_id)

    def release(self, title_id: int) -> TitleSnapshot:
        changed = self._apply(
            update(Title)
            .where(Title.id == title_id, Title.available_copies < Title.total_copies)
            .values(available_copies=Title.available_copies + 1)
        )
        if not changed:
            self.get(title_id)
            raise InvalidState(f"Every copy of title {title_id} is already available")
        logger.info("Released a copy of title %s", title_id)
        return self.lookup(title_id)

    def resize(self, title_id: int, new_total: int) -> TitleSnapshot:
        if new_total is None or new_total < 0:
            raise ValidationError("total_copies must be zero or more")
        loaned = Title.total_copies - Title.available_copies
        changed = self._apply(
            update(Title)
            .where(Title.id == title_id, loaned <= new_total)
            .values(available_copies=new_total - loaned, total_copies=new_total)
        )
        if not changed:
            title = self.get(title_id)
            raise PolicyViolation(
                f"Cannot reduce title {title_id} to {new_total} copies: "
                f"{title.loaned_copies} are on loan"
            )
        logger.info("Title %s resized to %s copies", title_id, new_total)
        return self.lookup(title_id)

    def record_loan(self, title_id: int) -> TitleSnapshot:
        changed = self._apply(
            update(Title).where(Title.id == title_id).values(loan_count=Title.loan_count + 1)
        )
        if not changed:
            raise NotFound(f"Title {title_id} not found")
        return self.lookup(title_id)

    def set_active(self, title_id: int, active: bool) -> TitleSnapshot:
        with Session(self.engine) as session:
            title = session.get(Title, title_id)
            if title is None:
                raise NotFound(f"Title {title_id} not found")
            if not active and title.loaned_copies > 0:
                raise PolicyViolation(
                    f"Cannot deactivate title {title_id}: {title.loaned_copies} copies are on loan"
                )
            title.active = active
            session.add(title)
            session.commit()
            session.refresh(title)
            logger.info("Title %s active=%s", title_id, active)
            return snapshot(title)
