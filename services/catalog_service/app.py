import os
from decimal import Decimal
from typing import Optional

from fastapi import FastAPI, Query, status
from pydantic import BaseModel, Field as PydanticField

from services.catalog_service.ledger import InventoryLedger, Title, TitleSnapshot, snapshot
from services.shared.db import create_db, make_engine
from services.shared.errors import LendingError, lending_error_handler


DATABASE_URL = os.getenv("CATALOG_DB_URL", "sqlite:///./services/catalog_service/catalog.db")

engine = make_engine(DATABASE_URL)
ledger = InventoryLedger(engine)
app = FastAPI(title="Catalog Service", version="1.0.0")
app.add_exception_handler(LendingError, lending_error_handler)


class TitlePayload(BaseModel):
    name: str = PydanticField(min_length=1)
    author: str = ""
    total_copies: int = PydanticField(default=1, ge=0)
    price: Optional[Decimal] = PydanticField(default=None, ge=0)


class CopiesRequest(BaseModel):
    total_copies: int


class ActiveRequest(BaseModel):
    active: bool


@app.on_event("startup")
def startup_event():
    create_db(engine)


@app.get("/health")
def health():
    return {"status": "ok", "service": "catalog"}


@app.get("/titles/", response_model=list[Title])
def list_titles():
    return ledger.list_titles()


@app.post("/titles/", response_model=Title, status_code=status.HTTP_201_CREATED)
def create_title(payload: TitlePayload):
    return ledger.add_title(
        name=payload.name,
        author=payload.author,
        total_copies=payload.total_copies,
        price=payload.price,
    )


@app.get("/titles/popular", response_model=list[Title])
def popular_titles(limit: int = Query(default=10, ge=1, le=100)):
    return ledger.most_borrowed(limit)


@app.get("/titles/{title_id}", response_model=TitleSnapshot)
def read_title(title_id: int):
    return snapshot(ledger.get(title_id))


@app.post("/titles/{title_id}/reserve", response_model=TitleSnapshot)
def reserve_copy(title_id: int):
    return ledger.reserve(title_id)


@app.post("/titles/{title_id}/release", response_model=TitleSnapshot)
def release_copy(title_id: int):
    return ledger.release(title_id)


@app.post("/titles/{title_id}/loan-count", response_model=TitleSnapshot)
def record_loan(title_id: int):
    return ledger.record_loan(title_id)


@app.put("/titles/{title_id}/copies", response_model=TitleSnapshot)
def resize_title(title_id: int, payload: CopiesRequest):
    return ledger.resize(title_id, payload.total_copies)


@app.put("/titles/{title_id}/active", response_model=TitleSnapshot)
def set_title_active(title_id: int, payload: ActiveRequest):
    return ledger.set_active(title_id, payload.active)
