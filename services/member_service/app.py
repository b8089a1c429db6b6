import os
from datetime import datetime

from fastapi import FastAPI
from pydantic import BaseModel, Field as PydanticField

from services.member_service.directory import MemberDirectory, MemberStatus
from services.shared.db import create_db, make_engine
from services.shared.errors import LendingError, lending_error_handler


DATABASE_URL = os.getenv("MEMBER_DB_URL", "sqlite:///./services/member_service/member.db")

engine = make_engine(DATABASE_URL)
directory = MemberDirectory(engine)
app = FastAPI(title="Member Service", version="1.0.0")
app.add_exception_handler(LendingError, lending_error_handler)


class MemberCreate(BaseModel):
    name: str = PydanticField(min_length=1, max_length=100)
    email: str


class MemberRead(BaseModel):
    id: int
    name: str
    email: str
    active: bool
    fine_hold: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class FlagRequest(BaseModel):
    value: bool


# --- startup ---
@app.on_event("startup")
def on_startup():
    create_db(engine)


# --- routes ---
@app.get("/health")
def health():
    return {"status": "ok", "service": "member"}


@app.post("/members/", response_model=MemberRead, status_code=201)
def register_member(payload: MemberCreate):
    return directory.register(payload.name, payload.email)


@app.get("/members/{member_id}", response_model=MemberRead)
def read_member(member_id: int):
    return directory.get(member_id)


@app.get("/members/{member_id}/status", response_model=MemberStatus)
def member_status(member_id: int):
    return directory.lookup(member_id)


@app.put("/members/{member_id}/active", response_model=MemberRead)
def set_member_active(member_id: int, payload: FlagRequest):
    return directory.set_active(member_id, payload.value)


@app.put("/members/{member_id}/fine-hold", response_model=MemberRead)
def set_member_fine_hold(member_id: int, payload: FlagRequest):
    return directory.set_fine_hold(member_id, payload.value)
