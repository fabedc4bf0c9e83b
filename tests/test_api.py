from datetime import date

import pytest
from fastapi.testclient import TestClient

import models  # noqa: F401
from database import Base, make_engine, make_sessionmaker
from main import app, get_db


@pytest.fixture
def client():
    engine = make_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(engine)
    SessionLocal = make_sessionmaker(engine)

    def override_get_db():
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    # not used as a context manager, so the bill scheduler never starts
    yield TestClient(app)
    app.dependency_overrides.clear()


def create_accounts(client):
    checking = client.post(
        "/api/accounts",
        json={"name": "CK1", "type": "CHECKING", "balance_cents": 100_000},
    ).json()["account"]
    card = client.post(
        "/api/accounts",
        json={"name": "CC1", "type": "CREDIT", "closing_day": 3, "due_day": 10},
    ).json()["account"]
    return checking, card


def test_account_endpoints(client) -> None:
    resp = client.post(
        "/api/accounts/hybrid",
        json={"name": "Nubank", "balance_cents": 5_000, "closing_day": 2, "due_day": 9},
    )
    assert resp.status_code == 201
    names = [a["name"] for a in resp.json()["accounts"]]
    assert names == ["Nubank", "Nubank - Card"]

    items = client.get("/api/accounts").json()["items"]
    assert len(items) == 2

    checking_id = resp.json()["accounts"][0]["id"]
    resp = client.put(
        f"/api/accounts/{checking_id}/balance", json={"balance_cents": 7_500}
    )
    assert resp.json()["account"]["balance_cents"] == 7_500

    resp = client.patch(f"/api/accounts/{checking_id}", json={"name": "Main"})
    assert resp.json() == {
        "ok": True,
        "account": {
            "id": checking_id,
            "name": "Main",
            "type": "CHECKING",
            "balance_cents": 7_500,
            "closing_day": None,
            "due_day": None,
        },
    }

    assert client.delete(f"/api/accounts/{checking_id}").json() == {"ok": True}
    assert client.get("/api/accounts").json()["items"][0]["name"] == "Nubank - Card"


def test_insufficient_funds_returns_conflict(client) -> None:
    checking, _ = create_accounts(client)
    resp = client.post(
        "/api/transactions",
        json={
            "account_id": checking["id"],
            "type": "EXPENSE",
            "payment_method": "DEBIT",
            "description": "TV",
            "amount_cents": 200_000,
            "date": "2026-03-10",
        },
    )
    assert resp.status_code == 409
    assert resp.json() == {
        "ok": False,
        "error": 'Insufficient funds in "CK1". Available: 1,000.00.',
        "partial": False,
    }


def test_unknown_rows_return_not_found(client) -> None:
    resp = client.delete("/api/transactions/999")
    assert resp.status_code == 404
    assert resp.json()["error"] == "Transaction not found"

    resp = client.post("/api/bills/999/pay", json={"source_account_id": 1})
    assert resp.status_code == 404


def test_validation_error_returns_bad_request(client) -> None:
    checking, _ = create_accounts(client)
    resp = client.post(
        "/api/transactions",
        json={
            "account_id": checking["id"],
            "type": "TRANSFER",
            "payment_method": "PIX",
            "description": "Move",
            "amount_cents": 100,
            "date": "2026-03-10",
        },
    )
    assert resp.status_code == 400
    assert resp.json()["error"] == "Transfers need a destination account"


def test_bill_payment_flow(client) -> None:
    checking, card = create_accounts(client)
    resp = client.post(
        "/api/transactions",
        json={
            "account_id": card["id"],
            "type": "EXPENSE",
            "payment_method": "CREDIT",
            "description": "Flight",
            "amount_cents": 30_000,
            "date": "2026-03-10",
            "total_installments": 3,
        },
    )
    assert resp.status_code == 201
    assert resp.json()["transaction"]["description"] == "Flight (1/3)"

    bills = client.get("/api/bills").json()["items"]
    assert [(b["month"], b["total_amount_cents"]) for b in bills] == [
        (5, 10_000),
        (4, 10_000),
        (3, 10_000),
    ]
    march = bills[-1]
    assert march["due_date"] == date(2026, 3, 10).isoformat()

    resp = client.post(
        f"/api/bills/{march['id']}/pay", json={"source_account_id": checking["id"]}
    )
    assert resp.status_code == 200
    transfer = resp.json()["transfer"]
    assert transfer["paid_bill_id"] == march["id"]
    assert transfer["amount_cents"] == 10_000

    resp = client.delete(f"/api/bills/{march['id']}")
    assert resp.status_code == 400

    resp = client.post(f"/api/bills/{march['id']}/revert")
    assert resp.json()["bill"]["status"] == "CLOSED"

    accounts = {a["name"]: a for a in client.get("/api/accounts").json()["items"]}
    assert accounts["CK1"]["balance_cents"] == 100_000
    assert accounts["CC1"]["balance_cents"] == 0


def test_transactions_listing_and_paging(client) -> None:
    checking, _ = create_accounts(client)
    for day in (1, 2, 3):
        client.post(
            "/api/transactions",
            json={
                "account_id": checking["id"],
                "type": "EXPENSE",
                "payment_method": "PIX",
                "description": f"Coffee {day}",
                "amount_cents": 500,
                "date": f"2026-03-0{day}",
            },
        )

    resp = client.get("/api/transactions", params={"limit": 2})
    body = resp.json()
    assert [t["description"] for t in body["items"]] == ["Coffee 3", "Coffee 2"]
    assert body["has_more"] is True

    resp = client.get("/api/transactions", params={"limit": 2, "page": 2})
    assert [t["description"] for t in resp.json()["items"]] == ["Coffee 1"]
    assert resp.json()["has_more"] is False

    resp = client.get(
        "/api/transactions",
        params={"period": "custom", "start": "2026-03-02", "end": "2026-03-02"},
    )
    assert [t["description"] for t in resp.json()["items"]] == ["Coffee 2"]

    resp = client.get("/api/transactions", params={"period": "fortnight"})
    assert resp.status_code == 400


def test_category_endpoints(client) -> None:
    resp = client.post(
        "/api/categories", json={"name": "Food", "type": "EXPENSE", "color": "#00aa11"}
    )
    assert resp.status_code == 201
    category_id = resp.json()["category"]["id"]

    resp = client.patch(f"/api/categories/{category_id}", json={"name": "Dining"})
    assert resp.json()["category"]["name"] == "Dining"

    assert client.delete(f"/api/categories/{category_id}").json() == {"ok": True}
    assert client.get("/api/categories").json()["items"] == []


def test_bad_paging_params_fall_back_to_defaults(client) -> None:
    resp = client.get("/api/transactions", params={"page": "abc", "limit": "lots"})
    assert resp.status_code == 200
    body = resp.json()
    assert (body["page"], body["limit"], body["items"]) == (1, 50, [])


def test_analytics_and_forecast_endpoints(client) -> None:
    checking, _ = create_accounts(client)

    resp = client.get("/api/analytics")
    assert resp.status_code == 200
    body = resp.json()
    assert body["month"] == {"income_cents": 0, "expense_cents": 0, "balance_cents": 0}
    assert body["categories"] == []
    assert len(body["series"]) == 6

    resp = client.get("/api/forecast")
    assert resp.status_code == 200
    body = resp.json()
    assert body["current_cash_cents"] == 100_000
    assert [m["projected_balance_cents"] for m in body["months"]] == [
        100_000,
        100_000,
        100_000,
    ]
    assert body["has_negative"] is False
