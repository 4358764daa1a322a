from datetime import date
from decimal import Decimal

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from config import Settings
from database import Base
from main import app, get_store
from schemas import BudgetSummary
from services import BudgetStore

TODAY = date(2026, 1, 20)


class MisalignedLedger:
    def fetch_budget_summary(self, start, end):
        return BudgetSummary(aligned=False)


def _client() -> TestClient:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    settings = Settings(
        database_url="sqlite://",
        timezone="UTC",
        csrf_secret="test-secret",
        ledger_base_url="https://ledger.test/v2",
        ledger_token=None,
        ledger_timeout_secs=1.0,
        sync_lookback_days=7,
        sync_settle_secs=0,
        sync_interval_minutes=60,
        paycheck_minimum_amount=Decimal("1000"),
        alerts_enabled=True,
        alert_threshold=Decimal("0.8"),
    )
    budget_store = BudgetStore(
        sessionmaker(bind=engine, expire_on_commit=False),
        settings=settings,
        client_factory=lambda token: MisalignedLedger(),
        clock=lambda: TODAY,
    )
    budget_store.load()
    app.dependency_overrides[get_store] = lambda: budget_store
    return TestClient(app)


def _csrf(client: TestClient) -> dict:
    token = client.get("/api/csrf-token").json()["token"]
    return {"X-CSRF-Token": token}


def test_mutations_require_csrf_header() -> None:
    client = _client()
    response = client.post(
        "/api/transactions",
        json={"payee": "Coffee", "amount": "-5", "date": "2026-01-10"},
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid CSRF token"


def test_manual_transaction_shows_in_period_and_summary() -> None:
    client = _client()
    headers = _csrf(client)

    created = client.post(
        "/api/transactions",
        json={"payee": "Coffee", "amount": "-5.25", "date": "2026-01-10"},
        headers=headers,
    )
    assert created.status_code == 200
    assert created.json()["id"].startswith("MANUAL-")

    listing = client.get("/api/transactions", params={"on": "2026-01-10"}).json()
    assert listing["period"] == "2026-01-01"
    assert [item["payee"] for item in listing["items"]] == ["Coffee"]

    summary = client.get("/api/summary").json()
    assert Decimal(summary["ending_balance"]) == Decimal("-5.25")
    assert summary["relation"] == "current"


def test_invalid_payload_is_bad_request() -> None:
    client = _client()
    response = client.post(
        "/api/transactions",
        json={"payee": "   ", "amount": "abc", "date": "2026-01-10"},
        headers=_csrf(client),
    )
    assert response.status_code == 400


def test_unknown_transaction_is_not_found() -> None:
    client = _client()
    response = client.post("/api/transactions/nope/hide", headers=_csrf(client))
    assert response.status_code == 404


def test_budget_update_and_category_listing() -> None:
    client = _client()
    headers = _csrf(client)

    response = client.put(
        "/api/budgets", json={"category": "Dining", "amount": "150"}, headers=headers
    )
    assert response.json() == {"ok": True, "period": "2026-01-01"}

    items = client.get("/api/categories").json()["items"]
    dining = next(item for item in items if item["name"] == "Dining")
    assert Decimal(dining["budget"]) == Decimal("150")


def test_connect_with_misaligned_period_conflicts() -> None:
    client = _client()
    response = client.post(
        "/api/connect",
        json={
            "token": "tok",
            "initial_balance": "100",
            "import_start": "2025-12-01",
            "period_start": "2026-01-03",
            "period_end": "2026-02-02",
        },
        headers=_csrf(client),
    )
    assert response.status_code == 409


def test_report_range_validation() -> None:
    client = _client()
    response = client.get(
        "/api/reports", params={"start": "2026-02-01", "end": "2026-01-01"}
    )
    assert response.status_code == 400
