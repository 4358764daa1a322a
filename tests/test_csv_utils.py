import csv
from datetime import date, datetime, timezone
from decimal import Decimal
from io import StringIO

from csv_utils import export_transactions, sanitize_csv_value
from schemas import Transaction


def test_sanitize_prefixes_formula_like_values() -> None:
    assert sanitize_csv_value("=SUM(A1)") == "\t=SUM(A1)"
    assert sanitize_csv_value("https://evil") == "\thttps://evil"
    assert sanitize_csv_value("Coffee") == "Coffee"
    assert sanitize_csv_value("   ") == ""


def test_export_uses_resolved_category_and_payee() -> None:
    txn = Transaction(
        id="1",
        date=date(2026, 1, 18),
        amount=Decimal("-42.1"),
        payee="CHECKCARD 0118 MARKET",
        memo="=cmd",
        created_at=datetime(2026, 1, 18, tzinfo=timezone.utc),
        is_pending=True,
    )

    text = export_transactions(
        [txn],
        category_for=lambda t: "Groceries",
        payee_for=lambda t: t.display_payee,
    )

    rows = list(csv.reader(StringIO(text)))
    assert rows[0] == ["Date", "Payee", "Amount", "Category", "Memo", "Pending"]
    assert rows[1] == ["2026-01-18", "MARKET", "-42.10", "Groceries", "\t=cmd", "1"]
