import json
from datetime import datetime
from decimal import Decimal
from pathlib import Path

import httpx
import pytest

from services.catalog_service.ledger import InventoryLedger
from services.loan_service.engine import LoanPolicyEngine
from services.loan_service.providers import HttpCatalogClient, HttpIdentityClient
from services.loan_service.status import LoanStatus
from services.member_service.directory import MemberDirectory
from services.shared.errors import (
    InvalidState,
    LendingError,
    NotFound,
    PolicyViolation,
    ProviderUnavailable,
)
from tests.utils import FixedClock, sqlite_engine


def snapshot_json(**overrides) -> dict:
    data = {
        "id": 1,
        "active": True,
        "price": "12.50",
        "total_copies": 2,
        "available_copies": 1,
        "loan_count": 4,
    }
    data.update(overrides)
    return data


def catalog_with(handler) -> HttpCatalogClient:
    return HttpCatalogClient("http://catalog", transport=httpx.MockTransport(handler))


def test_catalog_client_reads_snapshots():
    seen: list[tuple[str, str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.url.path))
        return httpx.Response(200, json=snapshot_json())

    client = catalog_with(handler)
    snap = client.lookup(1)
    client.reserve(1)
    client.release(1)
    client.record_loan(1)

    assert snap.price == Decimal("12.50")
    assert snap.available_copies == 1
    assert seen == [
        ("GET", "/titles/1"),
        ("POST", "/titles/1/reserve"),
        ("POST", "/titles/1/release"),
        ("POST", "/titles/1/loan-count"),
    ]


def test_catalog_client_sends_new_total_on_resize():
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json=snapshot_json(total_copies=5, available_copies=4))

    assert catalog_with(handler).resize(1, 5).total_copies == 5
    assert bodies == [{"total_copies": 5}]


@pytest.mark.parametrize(
    "status_code,error",
    [(404, NotFound), (409, InvalidState), (400, PolicyViolation), (502, ProviderUnavailable)],
)
def test_remote_errors_keep_their_kind(status_code, error):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json={"detail": "nope", "error": "Whatever"})

    with pytest.raises(error) as excinfo:
        catalog_with(handler).reserve(1)
    assert excinfo.value.message == "nope"


def test_unreachable_service_is_provider_unavailable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = HttpIdentityClient("http://members", transport=httpx.MockTransport(handler))
    with pytest.raises(ProviderUnavailable):
        client.lookup(1)


def test_identity_client_reads_member_status():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/members/3/status"
        return httpx.Response(200, json={"id": 3, "active": True, "has_unpaid_fine": True})

    client = HttpIdentityClient("http://members/", transport=httpx.MockTransport(handler))
    status = client.lookup(3)
    assert status.active is True
    assert status.has_unpaid_fine is True
    client.close()


def serve(ledger: InventoryLedger, directory: MemberDirectory):
    """Answer provider calls from local stores, the way the real services would."""

    def handler(request: httpx.Request) -> httpx.Response:
        parts = request.url.path.strip("/").split("/")
        try:
            if parts[0] == "members":
                payload = directory.lookup(int(parts[1])).model_dump()
            elif len(parts) == 2:
                payload = ledger.lookup(int(parts[1])).model_dump(mode="json")
            else:
                action = {
                    "reserve": ledger.reserve,
                    "release": ledger.release,
                    "loan-count": ledger.record_loan,
                }[parts[2]]
                payload = action(int(parts[1])).model_dump(mode="json")
        except LendingError as exc:
            return httpx.Response(exc.status_code, json={"detail": exc.message})
        return httpx.Response(200, json=payload)

    return httpx.MockTransport(handler)


def test_engine_lends_through_remote_providers(tmp_path: Path):
    remote = sqlite_engine(tmp_path / "remote.db")
    ledger = InventoryLedger(remote)
    directory = MemberDirectory(remote)
    title = ledger.add_title("Dune", total_copies=1, price=Decimal("10.00"))
    alice = directory.register("alice", "alice@example.org")
    bob = directory.register("bob", "bob@example.org")
    transport = serve(ledger, directory)

    lending = LoanPolicyEngine(
        sqlite_engine(tmp_path / "loans.db"),
        identity=HttpIdentityClient("http://members", transport=transport),
        catalog=HttpCatalogClient("http://catalog", transport=transport),
        clock=FixedClock(datetime(2024, 3, 1, 9, 0)),
    )

    loan = lending.create_loan(alice.id, title.id)
    assert ledger.lookup(title.id).available_copies == 0
    assert ledger.lookup(title.id).loan_count == 1

    with pytest.raises(PolicyViolation):
        lending.create_loan(bob.id, title.id)

    damaged = lending.mark_damaged(loan.id, "coffee stain")
    assert damaged.status == LoanStatus.DAMAGED
    assert damaged.fine_amount == Decimal("5.00")
    assert ledger.lookup(title.id).available_copies == 1
