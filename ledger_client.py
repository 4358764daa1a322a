from __future__ import annotations

import json
import logging
from datetime import date, datetime, time, timezone
from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation
from typing import Any, Optional, Sequence
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urlencode
from urllib.request import Request, urlopen

from pydantic import ValidationError

from config import get_settings
from periods import local_today
from schemas import BudgetSummary, Category, Transaction

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")


class LedgerError(RuntimeError):
    """Transport, auth or decoding failure talking to the remote ledger."""


def _error_text(payload: bytes) -> Optional[str]:
    try:
        body = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    if not isinstance(body, dict):
        return None
    error = body.get("error")
    if isinstance(error, str):
        return error
    if isinstance(error, list):
        return ", ".join(str(item) for item in error)
    return None


def dedupe_pending(batch: Sequence[Transaction]) -> list[Transaction]:
    """Drop pending entries whose posted counterpart is in the same batch."""
    posted_refs: set[str] = set()
    for txn in batch:
        if txn.is_pending:
            continue
        if txn.external_id:
            posted_refs.add(txn.external_id)
        if txn.supersedes_external_id:
            posted_refs.add(txn.supersedes_external_id)

    by_id: dict[str, Transaction] = {}
    for txn in batch:
        if txn.is_pending and (
            txn.id in posted_refs or (txn.external_id and txn.external_id in posted_refs)
        ):
            continue
        by_id[txn.id] = txn
    return list(by_id.values())


def _parse_category_tree(items: list[dict[str, Any]]) -> list[Category]:
    flat: list[Category] = []
    for item in items:
        flat.append(Category.model_validate(item))
        for child in item.get("children") or []:
            child_data = dict(child)
            child_data.setdefault("parent_id", item.get("id"))
            flat.append(Category.model_validate(child_data))
    return flat


def _parse_transaction(raw: dict[str, Any]) -> Transaction:
    txn_date = date.fromisoformat(str(raw["date"]))
    try:
        amount = Decimal(str(raw.get("amount") or "0"))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount for transaction {raw.get('id')}") from exc
    external_id = raw.get("external_id")
    superseded = raw.get("pending_transaction_external_id")
    return Transaction(
        id=str(raw["id"]),
        date=txn_date,
        # The ledger reports expenses as positive amounts.
        amount=-amount,
        payee=raw.get("payee") or "",
        memo=raw.get("notes") or "",
        category_id=raw.get("category_id"),
        created_at=raw.get("created_at")
        or datetime.combine(txn_date, time(), tzinfo=timezone.utc),
        is_pending=bool(raw.get("is_pending") or False),
        external_id=str(external_id) if external_id is not None else None,
        supersedes_external_id=str(superseded) if superseded is not None else None,
    )


class LedgerClient:
    def __init__(
        self,
        token: str,
        *,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        settings = get_settings()
        if not token:
            raise LedgerError("Missing ledger token")
        self.token = token
        self.base_url = (base_url or settings.ledger_base_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.ledger_timeout_secs

    def _send(
        self,
        method: str,
        path: str,
        *,
        query: Optional[dict[str, str]] = None,
        body: Optional[dict[str, Any]] = None,
    ) -> tuple[int, bytes]:
        url = f"{self.base_url}/{path}"
        if query:
            url = f"{url}?{urlencode(query)}"
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/json",
        }
        data = None
        if body is not None:
            data = json.dumps(body).encode("utf-8")
            headers["Content-Type"] = "application/json"
        req = Request(url, data=data, headers=headers, method=method)
        logger.info(f"ledger_request: method={method} path={path}")
        try:
            with urlopen(req, timeout=self.timeout) as resp:
                return resp.status, resp.read()
        except HTTPError as exc:
            return exc.code, exc.read()
        except (URLError, TimeoutError) as exc:
            raise LedgerError(f"Failed to reach ledger for {path}") from exc

    @staticmethod
    def _json(payload: bytes, what: str) -> dict[str, Any]:
        try:
            body = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise LedgerError(f"Malformed {what} response") from exc
        if not isinstance(body, dict):
            raise LedgerError(f"Unexpected {what} response")
        return body

    def fetch_categories(self) -> list[Category]:
        status, payload = self._send("GET", "categories")
        if status != 200:
            raise LedgerError(f"API Error: {status}")
        body = self._json(payload, "categories")
        try:
            return _parse_category_tree(body["categories"])
        except (KeyError, TypeError, ValidationError) as exc:
            raise LedgerError("Unexpected categories response") from exc

    def fetch_budget_summary(self, start: date, end: date) -> BudgetSummary:
        status, payload = self._send(
            "GET",
            "summary",
            query={"start_date": start.isoformat(), "end_date": end.isoformat()},
        )
        if status != 200:
            raise LedgerError(f"API Error: {status}")
        body = self._json(payload, "summary")
        try:
            budgeted: dict[int, Decimal] = {}
            for item in body.get("categories") or []:
                amount = (item.get("totals") or {}).get("budgeted")
                if amount is None:
                    continue
                budgeted[int(item["category_id"])] = Decimal(str(amount)).quantize(
                    _CENT, rounding=ROUND_HALF_EVEN
                )
            return BudgetSummary(aligned=bool(body["aligned"]), budgeted=budgeted)
        except (KeyError, TypeError, ValueError, InvalidOperation) as exc:
            raise LedgerError("Unexpected summary response") from exc

    def trigger_account_sync(self) -> None:
        status, payload = self._send("POST", "plaid_accounts/fetch")
        if status not in (200, 202):
            message = _error_text(payload) or f"API Error: {status}"
            raise LedgerError(message)

    def fetch_transactions(
        self, start: date, end: Optional[date] = None
    ) -> tuple[list[Transaction], list[str]]:
        end = end or local_today()
        status, payload = self._send(
            "GET",
            "transactions",
            query={"start_date": start.isoformat(), "end_date": end.isoformat()},
        )
        if status != 200:
            message = _error_text(payload)
            if message is not None:
                return [], [message]
            raise LedgerError(f"API Error: {status}")
        body = self._json(payload, "transactions")
        try:
            batch = [_parse_transaction(raw) for raw in body["transactions"]]
        except (KeyError, TypeError, ValueError) as exc:
            raise LedgerError("Unexpected transactions response") from exc
        return dedupe_pending(batch), []

    def push_payee_update(self, transaction_id: str, payee: str) -> None:
        status, payload = self._send(
            "PUT",
            f"transactions/{quote(transaction_id, safe='')}",
            body={"payee": payee},
        )
        if not 200 <= status < 300:
            message = _error_text(payload) or f"API Error: {status}"
            raise LedgerError(message)
