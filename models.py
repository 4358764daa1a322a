from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from database import Base


class CategoryKind(str, Enum):
    income = "income"
    savings = "savings"
    expense = "expense"


class PeriodRelation(str, Enum):
    past = "past"
    current = "current"
    future = "future"


class StoredKey(str, Enum):
    transactions = "transactions"
    categories = "categories"
    category_order = "category_order"
    default_budgets = "default_budgets"
    period_budgets = "period_budgets"
    hidden_ids = "hidden_ids"
    category_overrides = "category_overrides"
    payee_renames = "payee_renames"
    starting_balance = "starting_balance"
    history_start = "history_start"
    last_paycheck = "last_paycheck"
    budget_start_day = "budget_start_day"
    alerted_keys = "alerted_keys"
    ledger_token = "ledger_token"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class StoredValue(Base, TimestampMixin):
    """One persisted record of budget state, JSON encoded."""

    __tablename__ = "stored_values"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
