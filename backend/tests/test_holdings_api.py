from __future__ import annotations

import uuid

from fastapi.testclient import TestClient

from portfoliolab.main import app


client = TestClient(app)


def test_health_endpoint() -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "portfoliolab"}


def test_holdings_crud_roundtrip() -> None:
    """Create, list, update and delete a holding lot via the API."""

    user_id = f"user-{uuid.uuid4()}"
    payload = {
        "user_id": user_id,
        "symbol": " aapl ",
        "company_name": "Apple Inc.",
        "quantity": 10,
        "average_cost": 150.0,
        "category": "Tech",
    }

    created = client.post("/api/v1/holdings", json=payload)
    assert created.status_code == 201, created.text
    holding = created.json()
    holding_id = holding["id"]
    assert holding["symbol"] == "AAPL"
    assert holding["category"] == "Tech"
    assert holding["last_price"] is None

    listed = client.get("/api/v1/holdings", params={"user_id": user_id})
    assert listed.status_code == 200
    assert [h["id"] for h in listed.json()] == [holding_id]

    updated = client.put(
        f"/api/v1/holdings/{holding_id}",
        params={"user_id": user_id},
        json={"quantity": 12, "notes": "added on dip"},
    )
    assert updated.status_code == 200, updated.text
    body = updated.json()
    assert body["quantity"] == 12
    assert body["notes"] == "added on dip"
    # Fields not in the payload are untouched.
    assert body["average_cost"] == 150.0

    deleted = client.delete(f"/api/v1/holdings/{holding_id}", params={"user_id": user_id})
    assert deleted.status_code == 204

    assert client.get("/api/v1/holdings", params={"user_id": user_id}).json() == []


def test_holdings_are_scoped_to_owner_and_validated() -> None:
    owner = f"user-{uuid.uuid4()}"
    created = client.post(
        "/api/v1/holdings",
        json={"user_id": owner, "symbol": "TLT", "quantity": 5, "average_cost": 90.0},
    )
    holding_id = created.json()["id"]

    foreign = client.put(
        f"/api/v1/holdings/{holding_id}",
        params={"user_id": "intruder"},
        json={"quantity": 1},
    )
    assert foreign.status_code == 404

    missing = client.delete("/api/v1/holdings/999999999")
    assert missing.status_code == 404

    invalid = client.post(
        "/api/v1/holdings",
        json={"user_id": owner, "symbol": "BAD", "quantity": 0, "average_cost": 1.0},
    )
    assert invalid.status_code == 422
