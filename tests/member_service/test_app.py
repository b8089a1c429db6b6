from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from tests.utils import configure_sqlite_env, reload_module


@pytest.fixture()
def member_client(tmp_path: Path):
    configure_sqlite_env("MEMBER_DB_URL", tmp_path / "member.db")
    module = reload_module("services.member_service.app")
    with TestClient(module.app) as client:
        yield client


def test_register_and_lookup_status(member_client: TestClient):
    resp = member_client.post("/members/", json={"name": "Alice", "email": "alice@example.org"})
    assert resp.status_code == 201
    member = resp.json()
    assert member["active"] is True

    status_resp = member_client.get(f"/members/{member['id']}/status")
    assert status_resp.json() == {"id": member["id"], "active": True, "has_unpaid_fine": False}

    member_client.put(f"/members/{member['id']}/fine-hold", json={"value": True})
    member_client.put(f"/members/{member['id']}/active", json={"value": False})
    status_resp = member_client.get(f"/members/{member['id']}/status")
    assert status_resp.json() == {"id": member["id"], "active": False, "has_unpaid_fine": True}

    assert member_client.get(f"/members/{member['id']}").json()["email"] == "alice@example.org"


def test_unknown_member(member_client: TestClient):
    missing = member_client.get("/members/404/status")
    assert missing.status_code == 404
    assert missing.json()["error"] == "NotFound"
    assert member_client.put("/members/404/active", json={"value": True}).status_code == 404
    assert member_client.post("/members/", json={"name": "", "email": "x@example.org"}).status_code == 422
