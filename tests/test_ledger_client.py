import io
import json
from datetime import date
from decimal import Decimal
from urllib.error import HTTPError, URLError

import pytest

import ledger_client
from ledger_client import LedgerClient, LedgerError


class FakeResponse:
    def __init__(self, status: int, body) -> None:
        self.status = status
        self._payload = json.dumps(body).encode("utf-8")

    def read(self) -> bytes:
        return self._payload

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        return None


def _serve(monkeypatch, status: int, body, requests=None) -> None:
    def fake_urlopen(req, timeout=None):
        if requests is not None:
            requests.append((req, timeout))
        if status >= 400:
            payload = io.BytesIO(json.dumps(body).encode("utf-8"))
            raise HTTPError(req.full_url, status, "error", hdrs=None, fp=payload)
        return FakeResponse(status, body)

    monkeypatch.setattr(ledger_client, "urlopen", fake_urlopen)


def _client() -> LedgerClient:
    return LedgerClient("secret", base_url="https://ledger.test/v2", timeout=3)


def test_missing_token_is_rejected() -> None:
    with pytest.raises(LedgerError):
        LedgerClient("")


def test_transactions_invert_sign_and_map_fields(monkeypatch) -> None:
    requests = []
    _serve(
        monkeypatch,
        200,
        {
            "transactions": [
                {
                    "id": 11,
                    "date": "2026-01-18",
                    "amount": "42.10",
                    "payee": "MARKET",
                    "notes": "weekly shop",
                    "category_id": 2,
                    "created_at": "2026-01-18T15:00:00Z",
                    "is_pending": False,
                    "external_id": "ext-11",
                    "pending_transaction_external_id": "ext-p",
                },
                {"id": 12, "date": "2026-01-16", "amount": "-2000.00"},
            ]
        },
        requests,
    )

    transactions, errors = _client().fetch_transactions(
        date(2026, 1, 13), date(2026, 1, 20)
    )

    assert errors == []
    market, pay = transactions
    assert market.id == "11"
    assert market.amount == Decimal("-42.10")
    assert market.memo == "weekly shop"
    assert market.supersedes_external_id == "ext-p"
    assert pay.amount == Decimal("2000.00")
    assert pay.created_at.date() == date(2026, 1, 16)

    req, timeout = requests[0]
    assert timeout == 3
    assert req.get_header("Authorization") == "Bearer secret"
    assert "start_date=2026-01-13" in req.full_url
    assert "end_date=2026-01-20" in req.full_url


def test_pending_duplicate_in_batch_is_dropped(monkeypatch) -> None:
    _serve(
        monkeypatch,
        200,
        {
            "transactions": [
                {
                    "id": "p-1",
                    "date": "2026-01-17",
                    "amount": "9.99",
                    "is_pending": True,
                    "external_id": "ext-1",
                },
                {
                    "id": 21,
                    "date": "2026-01-18",
                    "amount": "9.99",
                    "external_id": "ext-1",
                },
            ]
        },
    )

    transactions, _ = _client().fetch_transactions(date(2026, 1, 13))

    assert [t.id for t in transactions] == ["21"]


def test_error_body_is_partial_failure(monkeypatch) -> None:
    _serve(monkeypatch, 400, {"error": ["start_date is invalid", "too many"]})

    transactions, errors = _client().fetch_transactions(date(2026, 1, 13))

    assert transactions == []
    assert errors == ["start_date is invalid, too many"]


def test_server_error_without_body_raises(monkeypatch) -> None:
    _serve(monkeypatch, 500, ["oops"])

    with pytest.raises(LedgerError, match="API Error: 500"):
        _client().fetch_transactions(date(2026, 1, 13))


def test_unreachable_ledger_raises(monkeypatch) -> None:
    def fake_urlopen(req, timeout=None):
        raise URLError("no route")

    monkeypatch.setattr(ledger_client, "urlopen", fake_urlopen)

    with pytest.raises(LedgerError):
        _client().fetch_categories()


def test_categories_flatten_children(monkeypatch) -> None:
    _serve(
        monkeypatch,
        200,
        {
            "categories": [
                {
                    "id": 1,
                    "name": "Food",
                    "children": [{"id": 2, "name": "Groceries"}],
                },
                {"id": 3, "name": "Paycheck", "is_income": True},
            ]
        },
    )

    categories = _client().fetch_categories()

    assert [(c.id, c.parent_id) for c in categories] == [(1, None), (2, 1), (3, None)]
    assert categories[2].is_income


def test_malformed_categories_raise(monkeypatch) -> None:
    _serve(monkeypatch, 200, {"unexpected": []})

    with pytest.raises(LedgerError):
        _client().fetch_categories()


def test_budget_summary(monkeypatch) -> None:
    _serve(
        monkeypatch,
        200,
        {
            "aligned": True,
            "categories": [
                {"category_id": 2, "totals": {"budgeted": 300.5}},
                {"category_id": 3, "totals": {}},
            ],
        },
    )

    summary = _client().fetch_budget_summary(date(2026, 1, 1), date(2026, 1, 31))

    assert summary.aligned
    assert summary.budgeted == {2: Decimal("300.50")}


def test_payee_update_failure_uses_error_text(monkeypatch) -> None:
    requests = []
    _serve(monkeypatch, 404, {"error": "Transaction not found"}, requests)

    with pytest.raises(LedgerError, match="Transaction not found"):
        _client().push_payee_update("77", "Market")

    req, _ = requests[0]
    assert req.get_method() == "PUT"
    assert req.full_url.endswith("/transactions/77")
    assert json.loads(req.data) == {"payee": "Market"}


def test_account_refresh_accepts_accepted_status(monkeypatch) -> None:
    _serve(monkeypatch, 202, {})
    _client().trigger_account_sync()
