"""Budget state and the transitions that mutate it.

``BudgetState`` is immutable. Each transition returns a new state, and any
transition that can change which transactions exist or how they are
categorised ends with a single :func:`recompute` so the paycheck dates and
the current period are never stale.
"""

from dataclasses import dataclass, field, replace
from datetime import date
from decimal import ROUND_HALF_EVEN, Decimal
from typing import Iterable, Mapping, Optional, Sequence

from models import CategoryKind
from paychecks import detect_paychecks
from periods import Period, PeriodResolver, local_today
from reconcile import ReconcileResult, reconcile, sort_transactions
from schemas import (
    UNCATEGORIZED,
    BudgetSummary,
    Category,
    Transaction,
    classify_category,
)

_CENT = Decimal("0.01")


class TransactionNotFound(ValueError):
    pass


@dataclass(frozen=True)
class DerivedCache:
    paycheck_dates: tuple[date, ...] = ()
    current_period: Optional[Period] = None
    today: Optional[date] = None


@dataclass(frozen=True)
class BudgetState:
    transactions: tuple[Transaction, ...] = ()
    categories: Mapping[int, Category] = field(default_factory=dict)
    category_order: tuple[str, ...] = ()
    default_budgets: Mapping[str, Decimal] = field(default_factory=dict)
    period_budgets: Mapping[str, Mapping[str, Decimal]] = field(default_factory=dict)
    hidden_ids: frozenset[str] = frozenset()
    category_overrides: Mapping[str, str] = field(default_factory=dict)
    payee_renames: Mapping[str, str] = field(default_factory=dict)
    starting_balance: Decimal = Decimal("0")
    history_start: Optional[date] = None
    last_paycheck: Optional[date] = None
    budget_start_day: int = 1
    alerted_keys: frozenset[str] = frozenset()
    ledger_token: Optional[str] = None
    paycheck_minimum: Decimal = Decimal("1000")
    derived: DerivedCache = DerivedCache()

    def category_name(self, txn: Transaction) -> str:
        override = self.category_overrides.get(txn.id)
        if override:
            return override
        if txn.category_id is not None:
            category = self.categories.get(txn.category_id)
            if category is not None:
                return category.name
        return UNCATEGORIZED

    def category_kinds(self) -> dict[str, CategoryKind]:
        kinds = {name: classify_category(name) for name in self.category_order}
        for category in self.categories.values():
            kinds[category.name] = category.kind
        return kinds

    def category_kind(self, name: str) -> CategoryKind:
        for category in self.categories.values():
            if category.name == name:
                return category.kind
        return classify_category(name)

    def budget_for(self, category: str, period_key: str) -> Decimal:
        period_entry = self.period_budgets.get(period_key, {})
        if category in period_entry:
            return period_entry[category]
        return self.default_budgets.get(category, Decimal("0"))

    def payee_for(self, txn: Transaction) -> str:
        return self.payee_renames.get(txn.id) or txn.display_payee

    def transaction(self, txn_id: str) -> Optional[Transaction]:
        for txn in self.transactions:
            if txn.id == txn_id:
                return txn
        return None

    def active_transactions(self) -> list[Transaction]:
        return [txn for txn in self.transactions if txn.id not in self.hidden_ids]

    @property
    def today(self) -> date:
        return self.derived.today or local_today()

    def resolver(self, today: Optional[date] = None) -> PeriodResolver:
        return PeriodResolver(
            self.derived.paycheck_dates,
            today=today or self.today,
            start_day=self.budget_start_day,
            anchor=self.last_paycheck,
        )

    def current_period(self) -> Period:
        if self.derived.current_period is not None:
            return self.derived.current_period
        return self.resolver().current_period()


def recompute(state: BudgetState, today: Optional[date] = None) -> BudgetState:
    today = today or state.today
    scan = detect_paychecks(
        state.transactions,
        state.category_name,
        minimum_amount=state.paycheck_minimum,
        previous_anchor=state.last_paycheck,
    )
    start_day = scan.start_day or state.budget_start_day
    resolver = PeriodResolver(
        scan.dates, today=today, start_day=start_day, anchor=scan.last_confirmed
    )
    return replace(
        state,
        last_paycheck=scan.last_confirmed,
        budget_start_day=start_day,
        derived=DerivedCache(
            paycheck_dates=scan.dates,
            current_period=resolver.current_period(),
            today=today,
        ),
    )


def apply_categories(
    state: BudgetState, categories: Iterable[Category]
) -> BudgetState:
    category_map = {category.id: category for category in categories}
    budgets = dict(state.default_budgets)
    order = list(state.category_order)
    names = [category.name for category in category_map.values()] + [UNCATEGORIZED]
    for name in names:
        budgets.setdefault(name, Decimal("0"))
        if name not in order:
            order.append(name)
    return replace(
        state,
        categories=category_map,
        default_budgets=budgets,
        category_order=tuple(order),
    )


def apply_budget_summary(state: BudgetState, summary: BudgetSummary) -> BudgetState:
    budgets = dict(state.default_budgets)
    for category_id, amount in summary.budgeted.items():
        category = state.categories.get(category_id)
        if category is None:
            continue
        budgets[category.name] = amount.quantize(_CENT, rounding=ROUND_HALF_EVEN)
    return replace(state, default_budgets=budgets)


def refresh_categories(
    state: BudgetState, categories: Iterable[Category], today: Optional[date] = None
) -> BudgetState:
    """Replace the category cache, giving every category a default budget."""
    return recompute(apply_categories(state, categories), today)


def apply_sync(
    state: BudgetState,
    *,
    categories: Optional[Iterable[Category]] = None,
    summary: Optional[BudgetSummary] = None,
    incoming: Optional[Sequence[Transaction]] = None,
    today: Optional[date] = None,
) -> tuple[BudgetState, Optional[ReconcileResult]]:
    """Apply everything one sync cycle fetched, recomputing once."""
    if categories is not None:
        state = apply_categories(state, categories)
    if summary is not None and summary.aligned:
        state = apply_budget_summary(state, summary)
    result = None
    if incoming is not None:
        result = reconcile(state.transactions, incoming)
        state = replace(
            state,
            transactions=result.transactions,
            hidden_ids=state.hidden_ids - result.removed_manual_ids,
        )
    return recompute(state, today), result


def add_transaction(
    state: BudgetState, txn: Transaction, today: Optional[date] = None
) -> BudgetState:
    if state.transaction(txn.id) is not None:
        raise ValueError(f"Transaction {txn.id} already exists")
    transactions = sort_transactions(state.transactions + (txn,))
    return recompute(replace(state, transactions=transactions), today)


def replace_transaction(
    state: BudgetState, txn: Transaction, today: Optional[date] = None
) -> BudgetState:
    if state.transaction(txn.id) is None:
        raise TransactionNotFound("Transaction not found")
    transactions = sort_transactions(
        txn if existing.id == txn.id else existing for existing in state.transactions
    )
    return recompute(replace(state, transactions=transactions), today)


def hide_transaction(
    state: BudgetState, txn_id: str, today: Optional[date] = None
) -> BudgetState:
    if state.transaction(txn_id) is None:
        raise TransactionNotFound("Transaction not found")
    return recompute(replace(state, hidden_ids=state.hidden_ids | {txn_id}), today)


def restore_transaction(
    state: BudgetState, txn_id: str, today: Optional[date] = None
) -> BudgetState:
    return recompute(replace(state, hidden_ids=state.hidden_ids - {txn_id}), today)


def override_category(
    state: BudgetState, txn_id: str, category: str, today: Optional[date] = None
) -> BudgetState:
    if state.transaction(txn_id) is None:
        raise TransactionNotFound("Transaction not found")
    overrides = dict(state.category_overrides)
    overrides[txn_id] = category
    return recompute(replace(state, category_overrides=overrides), today)


def rename_payee(state: BudgetState, txn_id: str, payee: str) -> BudgetState:
    renames = dict(state.payee_renames)
    renames[txn_id] = payee
    return replace(state, payee_renames=renames)


def update_budget(
    state: BudgetState, category: str, amount: Decimal, period_key: str
) -> BudgetState:
    """Set the default budget and the budget of one specific period."""
    defaults = dict(state.default_budgets)
    defaults[category] = amount
    period_budgets = {key: dict(values) for key, values in state.period_budgets.items()}
    period_budgets.setdefault(period_key, {})[category] = amount
    order = state.category_order
    if category not in order:
        order = order + (category,)
    return replace(
        state,
        default_budgets=defaults,
        period_budgets=period_budgets,
        category_order=order,
    )


def add_category(state: BudgetState, name: str, amount: Decimal) -> BudgetState:
    defaults = dict(state.default_budgets)
    defaults[name] = amount
    order = state.category_order
    if name not in order:
        order = order + (name,)
    return replace(state, default_budgets=defaults, category_order=order)


def remove_category(state: BudgetState, name: str) -> BudgetState:
    defaults = dict(state.default_budgets)
    defaults.pop(name, None)
    order = tuple(existing for existing in state.category_order if existing != name)
    return replace(state, default_budgets=defaults, category_order=order)


def move_category(state: BudgetState, name: str, position: int) -> BudgetState:
    if name not in state.category_order:
        raise ValueError(f"Unknown category: {name}")
    order = [existing for existing in state.category_order if existing != name]
    order.insert(min(position, len(order)), name)
    return replace(state, category_order=tuple(order))


def set_starting_balance(state: BudgetState, amount: Decimal) -> BudgetState:
    return replace(state, starting_balance=amount)


def set_history_start(state: BudgetState, start: Optional[date]) -> BudgetState:
    return replace(state, history_start=start)


def set_budget_start_day(
    state: BudgetState, day: int, today: Optional[date] = None
) -> BudgetState:
    if not 1 <= day <= 31:
        raise ValueError("Budget start day must be between 1 and 31")
    return recompute(replace(state, budget_start_day=day), today)


def record_alerts(state: BudgetState, keys: Iterable[str]) -> BudgetState:
    return replace(state, alerted_keys=state.alerted_keys | frozenset(keys))


def set_ledger_token(state: BudgetState, token: Optional[str]) -> BudgetState:
    return replace(state, ledger_token=token)
