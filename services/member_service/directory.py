import logging
from datetime import datetime
from typing import Optional

from pydantic import BaseModel
from sqlalchemy.engine import Engine
from sqlmodel import Field, Session, SQLModel

from services.shared.clock import utcnow
from services.shared.errors import NotFound, ValidationError


logger = logging.getLogger("member-service")


class Member(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    email: str = Field(index=True)
    active: bool = Field(default=True)
    fine_hold: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utcnow)


class MemberStatus(BaseModel):
    """What the lending core needs to know about a borrower."""

    id: int
    active: bool
    has_unpaid_fine: bool = False


class MemberDirectory:
    def __init__(self, engine: Engine):
        self.engine = engine

    def register(self, name: str, email: str) -> Member:
        if not name or not email:
            raise ValidationError("name and email are required")
        member = Member(name=name, email=email)
        with Session(self.engine) as session:
            session.add(member)
            session.commit()
            session.refresh(member)
        logger.info("Member %s registered", member.id)
        return member

    def get(self, member_id: int) -> Member:
        with Session(self.engine) as session:
            member = session.get(Member, member_id)
        if member is None:
            raise NotFound(f"Member {member_id} not found")
        return member

    def lookup(self, member_id: int) -> MemberStatus:
        member = self.get(member_id)
        return MemberStatus(id=member.id, active=member.active, has_unpaid_fine=member.fine_hold)

    def _update(self, member_id: int, **changes) -> Member:
        with Session(self.engine) as session:
            member = session.get(Member, member_id)
            if member is None:
                raise NotFound(f"Member {member_id} not found")
            for key, value in changes.items():
                setattr(member, key, value)
            session.add(member)
            session.commit()
            session.refresh(member)
        logger.info("Member %s updated: %s", member_id, changes)
        return member

    def set_active(self, member_id: int, active: bool) -> Member:
        return self._update(member_id, active=active)

    def set_fine_hold(self, member_id: int, fine_hold: bool) -> Member:
        return self._update(member_id, fine_hold=fine_hold)
