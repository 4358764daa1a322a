from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.orm import Session

import store
from database import Base
from models import StoredKey
from repository import StateRepository
from schemas import Category, Transaction
from store import BudgetState

TODAY = date(2026, 1, 20)


def _populated_state() -> BudgetState:
    state = BudgetState(
        default_budgets={"Groceries": Decimal("300.50")},
        starting_balance=Decimal("1234.56"),
        history_start=date(2025, 12, 1),
        ledger_token="tok",
    )
    state = store.refresh_categories(
        state,
        [
            Category(id=1, name="Paycheck", is_income=True),
            Category(id=2, name="Groceries", parent_id=9),
        ],
        TODAY,
    )
    state = store.add_transaction(
        state,
        Transaction(
            id="100",
            date=date(2026, 1, 16),
            amount=Decimal("2000"),
            category_id=1,
            created_at=datetime(2026, 1, 16, 8, tzinfo=timezone.utc),
        ),
        TODAY,
    )
    state = store.add_transaction(
        state,
        Transaction(
            id="MANUAL-1",
            date=date(2026, 1, 18),
            amount=Decimal("-12.34"),
            payee="Coffee",
            created_at=datetime(2026, 1, 18, 9, tzinfo=timezone.utc),
        ),
        TODAY,
    )
    state = store.update_budget(state, "Groceries", Decimal("275"), "2026-01-16")
    state = store.hide_transaction(state, "MANUAL-1", TODAY)
    state = store.override_category(state, "MANUAL-1", "Dining", TODAY)
    state = store.rename_payee(state, "100", "Employer")
    return store.record_alerts(state, ["2026-01-16|Groceries"])


def test_state_round_trips_through_stored_values() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    saved = _populated_state()

    with Session(engine) as session:
        StateRepository(session).save(saved)
        session.commit()

    with Session(engine) as session:
        loaded = StateRepository(session).load(today=TODAY)

    assert loaded.transactions == saved.transactions
    assert loaded.categories == saved.categories
    assert loaded.category_order == saved.category_order
    assert loaded.default_budgets == saved.default_budgets
    assert loaded.period_budgets == saved.period_budgets
    assert loaded.hidden_ids == {"MANUAL-1"}
    assert loaded.category_overrides == {"MANUAL-1": "Dining"}
    assert loaded.payee_renames == {"100": "Employer"}
    assert loaded.starting_balance == Decimal("1234.56")
    assert loaded.history_start == date(2025, 12, 1)
    assert loaded.last_paycheck == date(2026, 1, 16)
    assert loaded.budget_start_day == 16
    assert loaded.alerted_keys == {"2026-01-16|Groceries"}
    assert loaded.ledger_token == "tok"
    assert loaded.derived.paycheck_dates == (date(2026, 1, 16),)


def test_empty_store_loads_defaults() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        state = StateRepository(session).load(today=TODAY)

    assert state.transactions == ()
    assert state.starting_balance == Decimal("0")
    assert state.category_order == ("Uncategorized",)
    assert state.current_period().start == date(2026, 1, 1)


def test_corrupt_value_falls_back_without_losing_other_keys(caplog) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        repo = StateRepository(session)
        repo.save(_populated_state())
        repo.save_raw(StoredKey.transactions, "{not json")
        repo.save_raw(StoredKey.starting_balance, '"abc"')
        session.commit()

    with Session(engine) as session:
        state = StateRepository(session).load(today=TODAY)

    assert state.transactions == ()
    assert state.starting_balance == Decimal("0")
    assert state.default_budgets["Groceries"] == Decimal("275")
    assert "state_load_fallback: key=transactions" in caplog.text


def test_loaded_categories_keep_saved_budgets() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        repo = StateRepository(session)
        repo.save_raw(
            StoredKey.categories, '[{"id": 2, "name": "Groceries"}]'
        )
        repo.save_raw(StoredKey.default_budgets, '{"Groceries": "300"}')
        session.commit()

    with Session(engine) as session:
        state = StateRepository(session).load(today=TODAY)

    assert state.default_budgets["Groceries"] == Decimal("300")
    assert state.categories[2].name == "Groceries"
