import logging
from dataclasses import replace
from datetime import date
from decimal import Decimal
from typing import Any, Optional

from pydantic import TypeAdapter, ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from models import StoredKey, StoredValue
from schemas import Category, Transaction
from store import BudgetState, apply_categories, recompute

logger = logging.getLogger(__name__)

_ADAPTERS: dict[StoredKey, TypeAdapter] = {
    StoredKey.transactions: TypeAdapter(list[Transaction]),
    StoredKey.categories: TypeAdapter(list[Category]),
    StoredKey.category_order: TypeAdapter(list[str]),
    StoredKey.default_budgets: TypeAdapter(dict[str, Decimal]),
    StoredKey.period_budgets: TypeAdapter(dict[str, dict[str, Decimal]]),
    StoredKey.hidden_ids: TypeAdapter(list[str]),
    StoredKey.category_overrides: TypeAdapter(dict[str, str]),
    StoredKey.payee_renames: TypeAdapter(dict[str, str]),
    StoredKey.starting_balance: TypeAdapter(Decimal),
    StoredKey.history_start: TypeAdapter(Optional[date]),
    StoredKey.last_paycheck: TypeAdapter(Optional[date]),
    StoredKey.budget_start_day: TypeAdapter(int),
    StoredKey.alerted_keys: TypeAdapter(list[str]),
    StoredKey.ledger_token: TypeAdapter(Optional[str]),
}


class StateRepository:
    """Reads and writes ``BudgetState`` through the key-value table."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def load_raw(self, key: StoredKey) -> Optional[str]:
        row = self.session.get(StoredValue, key.value)
        return row.value if row else None

    def save_raw(self, key: StoredKey, value: str) -> None:
        row = self.session.get(StoredValue, key.value)
        if row is None:
            self.session.add(StoredValue(key=key.value, value=value))
        else:
            row.value = value

    def _decode(self, key: StoredKey, raw: Optional[str], default: Any) -> Any:
        if raw is None:
            return default
        try:
            return _ADAPTERS[key].validate_json(raw)
        except ValidationError as exc:
            logger.warning(
                f"state_load_fallback: key={key.value} errors={exc.error_count()}"
            )
            return default

    def load(
        self,
        *,
        paycheck_minimum: Decimal = Decimal("1000"),
        today: Optional[date] = None,
    ) -> BudgetState:
        rows = {
            row.key: row.value for row in self.session.scalars(select(StoredValue))
        }

        def value(key: StoredKey, default: Any) -> Any:
            return self._decode(key, rows.get(key.value), default)

        # Budgets and order first so the category refresh matches them
        # instead of initialising every category to zero.
        state = BudgetState(
            default_budgets=value(StoredKey.default_budgets, {}),
            period_budgets=value(StoredKey.period_budgets, {}),
            category_order=tuple(value(StoredKey.category_order, [])),
            category_overrides=value(StoredKey.category_overrides, {}),
            payee_renames=value(StoredKey.payee_renames, {}),
            starting_balance=value(StoredKey.starting_balance, Decimal("0")),
            history_start=value(StoredKey.history_start, None),
            last_paycheck=value(StoredKey.last_paycheck, None),
            budget_start_day=value(StoredKey.budget_start_day, 1),
            alerted_keys=frozenset(value(StoredKey.alerted_keys, [])),
            ledger_token=value(StoredKey.ledger_token, None),
            paycheck_minimum=paycheck_minimum,
        )
        state = apply_categories(state, value(StoredKey.categories, []))
        state = replace(
            state,
            transactions=tuple(value(StoredKey.transactions, [])),
            hidden_ids=frozenset(value(StoredKey.hidden_ids, [])),
        )
        return recompute(state, today)

    def save(self, state: BudgetState) -> None:
        payload: dict[StoredKey, Any] = {
            StoredKey.transactions: list(state.transactions),
            StoredKey.categories: list(state.categories.values()),
            StoredKey.category_order: list(state.category_order),
            StoredKey.default_budgets: dict(state.default_budgets),
            StoredKey.period_budgets: {
                key: dict(values) for key, values in state.period_budgets.items()
            },
            StoredKey.hidden_ids: sorted(state.hidden_ids),
            StoredKey.category_overrides: dict(state.category_overrides),
            StoredKey.payee_renames: dict(state.payee_renames),
            StoredKey.starting_balance: state.starting_balance,
            StoredKey.history_start: state.history_start,
            StoredKey.last_paycheck: state.last_paycheck,
            StoredKey.budget_start_day: state.budget_start_day,
            StoredKey.alerted_keys: sorted(state.alerted_keys),
            StoredKey.ledger_token: state.ledger_token,
        }
        for key, data in payload.items():
            self.save_raw(key, _ADAPTERS[key].dump_json(data).decode("utf-8"))
        self.session.flush()
