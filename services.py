from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Iterable, Optional
from uuid import uuid4

from rapidfuzz.distance import Levenshtein
from sqlalchemy.orm import sessionmaker

import store
from config import Settings, get_settings
from database import SessionLocal, session_scope
from ledger_client import LedgerClient, LedgerError
from models import CategoryKind, PeriodRelation
from periods import Period, add_months, local_today
from reconcile import ReconcileResult
from repository import StateRepository
from schemas import (
    MANUAL_ID_PREFIX,
    UNCATEGORIZED,
    BudgetAlert,
    BudgetSummary,
    Category,
    CategoryLine,
    ConnectIn,
    ManualTransactionIn,
    PeriodSummary,
    ReportTotals,
    SyncResult,
    Transaction,
    classify_category,
)
from store import BudgetState, TransactionNotFound

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
# Upper bound on month steps when projecting balances into the future.
MAX_PROJECTION_MONTHS = 1200


class CategoryNotFound(ValueError):
    pass


class CategoryAmbiguous(ValueError):
    pass


class PeriodMisalignedError(ValueError):
    pass


class BudgetService:
    """Read-only aggregates over one snapshot of the budget state."""

    def __init__(self, state: BudgetState, today: Optional[date] = None) -> None:
        self.state = state
        self.today = today or state.today
        self.resolver = state.resolver(self.today)
        self._kinds = state.category_kinds()
        self._active = state.active_transactions()
        history_start = state.history_start
        self._balance_txns = [
            txn
            for txn in self._active
            if history_start is None or txn.date >= history_start
        ]

    # Periods

    def period_for(self, day: date) -> Period:
        return self.resolver.period_bounds(day)

    def current_period(self) -> Period:
        return self.resolver.current_period()

    def relation(self, period: Period) -> PeriodRelation:
        return self.resolver.relation(period)

    def is_future(self, period: Period) -> bool:
        return self.relation(period) == PeriodRelation.future

    def adjacent_period_date(self, day: date, steps: int) -> date:
        """A date inside the period ``steps`` periods away from ``day``'s."""
        paychecks = self.resolver.paycheck_dates
        if not paychecks:
            return add_months(day, steps)
        start = self.resolver.period_start(day)
        if start not in paychecks:
            return add_months(day, steps)
        index = paychecks.index(start) + steps
        if index < 0:
            return day
        if index >= len(paychecks):
            return add_months(day, 1)
        return paychecks[index]

    # Categories

    def kind(self, category: str) -> CategoryKind:
        kind = self._kinds.get(category)
        if kind is None:
            return classify_category(category)
        return kind

    def budget(self, category: str, period: Period) -> Decimal:
        return self.state.budget_for(category, period.key)

    def _budget_total(self, period: Period, kinds: Iterable[CategoryKind]) -> Decimal:
        wanted = set(kinds)
        return sum(
            (
                self.budget(name, period)
                for name in self.state.category_order
                if self.kind(name) in wanted
            ),
            ZERO,
        )

    def period_transactions(
        self, period: Period, category: Optional[str] = None
    ) -> list[Transaction]:
        txns = [txn for txn in self._active if period.contains(txn.date)]
        if category and category != "All":
            txns = [txn for txn in txns if self.state.category_name(txn) == category]
        return txns

    def spent(self, category: str, period: Period) -> Decimal:
        return sum(
            (
                -txn.amount
                for txn in self.period_transactions(period, category)
                if txn.amount < 0
            ),
            ZERO,
        )

    def received(self, category: str, period: Period) -> Decimal:
        return sum(
            (
                txn.amount
                for txn in self.period_transactions(period, category)
                if txn.amount > 0
            ),
            ZERO,
        )

    def category_progress(self, category: str, period: Period) -> Decimal:
        budget = self.budget(category, period)
        if budget <= 0:
            return ZERO
        return self.spent(category, period) / budget

    # Period totals

    def income(self, period: Period) -> Decimal:
        if self.is_future(period):
            return self._budget_total(period, [CategoryKind.income])
        return sum(
            (txn.amount for txn in self.period_transactions(period) if txn.amount > 0),
            ZERO,
        )

    def expenses(self, period: Period) -> Decimal:
        if self.is_future(period):
            return self._budget_total(period, [CategoryKind.expense])
        return sum(
            (
                -txn.amount
                for txn in self.period_transactions(period)
                if txn.amount < 0
                and self.kind(self.state.category_name(txn)) == CategoryKind.expense
            ),
            ZERO,
        )

    def savings(self, period: Period) -> Decimal:
        if self.is_future(period):
            return self._budget_total(period, [CategoryKind.savings])
        total = sum(
            (
                txn.amount
                for txn in self.period_transactions(period)
                if self.kind(self.state.category_name(txn)) == CategoryKind.savings
            ),
            ZERO,
        )
        return abs(total)

    def lifetime_savings(self, period: Period) -> Decimal:
        actual = abs(
            sum(
                (
                    txn.amount
                    for txn in self._active
                    if self.kind(self.state.category_name(txn)) == CategoryKind.savings
                ),
                ZERO,
            )
        )
        if not self.is_future(period):
            return actual
        current = self.current_period()
        for projected in self._months_between(current, period, inclusive=True):
            actual += self._budget_total(projected, [CategoryKind.savings])
        return actual

    def net_budget(self, period: Period) -> Decimal:
        income = self._budget_total(period, [CategoryKind.income])
        outflow = self._budget_total(
            period, [CategoryKind.expense, CategoryKind.savings]
        )
        return income - outflow

    # Balances

    def _months_between(
        self, current: Period, target: Period, *, inclusive: bool = False
    ) -> list[Period]:
        months: list[Period] = []
        for step in range(1, MAX_PROJECTION_MONTHS + 1):
            pointer = add_months(current.start, step)
            projected = self.period_for(pointer)
            if projected.start > target.start:
                break
            if projected.start == target.start and not inclusive:
                break
            if months and months[-1].start == projected.start:
                continue
            months.append(projected)
            if projected.start == target.start:
                break
        return months

    def _balance_before(self, day: date) -> Decimal:
        return self.state.starting_balance + sum(
            (txn.amount for txn in self._balance_txns if txn.date < day), ZERO
        )

    def running_balance(self) -> Decimal:
        return self.state.starting_balance + sum(
            (txn.amount for txn in self._balance_txns if txn.date <= self.today),
            ZERO,
        )

    def projected_end(self, period: Period) -> Decimal:
        """Balance at period end if the rest of the period's budget is honoured."""
        if period.end is None:
            return self.running_balance()

        actual = self.state.starting_balance + sum(
            (
                txn.amount
                for txn in self._balance_txns
                if txn.date <= self.today and txn.date < period.end
            ),
            ZERO,
        )
        adjustment = ZERO
        for name in self.state.category_order:
            budget = self.budget(name, period)
            if budget == 0:
                continue
            if self.kind(name) == CategoryKind.income:
                remaining = budget - self.received(name, period)
                if remaining > 0:
                    adjustment += remaining
            else:
                remaining = budget - self.spent(name, period)
                if remaining > 0:
                    adjustment -= remaining
        return actual + adjustment

    def beginning_balance(self, period: Period) -> Decimal:
        if not self.is_future(period):
            return self._balance_before(period.start)

        current = self.current_period()
        balance = self.projected_end(current)
        for projected in self._months_between(current, period):
            balance += self.net_budget(projected)
        return balance

    def ending_balance(self, period: Period) -> Decimal:
        beginning = self.beginning_balance(period)
        if self.is_future(period):
            return beginning + self.net_budget(period)
        return beginning + sum(
            (txn.amount for txn in self._balance_txns if period.contains(txn.date)),
            ZERO,
        )

    # Snapshots

    def category_lines(self, period: Period) -> list[CategoryLine]:
        lines: list[CategoryLine] = []
        for name in self.state.category_order:
            budget = self.budget(name, period)
            spent = self.spent(name, period)
            lines.append(
                CategoryLine(
                    name=name,
                    kind=self.kind(name),
                    budget=budget,
                    spent=spent,
                    received=self.received(name, period),
                    remaining=budget - spent,
                    progress=self.category_progress(name, period),
                )
            )
        return lines

    def summary(self, day: Optional[date] = None) -> PeriodSummary:
        period = self.period_for(day or self.today)
        return PeriodSummary(
            key=period.key,
            start=period.start,
            end=period.end,
            relation=self.relation(period),
            income=self.income(period),
            expenses=self.expenses(period),
            savings=self.savings(period),
            lifetime_savings=self.lifetime_savings(period),
            net_budget=self.net_budget(period),
            beginning_balance=self.beginning_balance(period),
            ending_balance=self.ending_balance(period),
            projected_end=self.projected_end(period),
            categories=self.category_lines(period),
        )

    def category_spend(self, start: date, end: date) -> dict[str, Decimal]:
        totals: dict[str, Decimal] = {}
        for txn in self._active:
            if not start <= txn.date <= end or txn.amount >= 0:
                continue
            name = self.state.category_name(txn)
            if self.kind(name) == CategoryKind.income:
                continue
            totals[name] = totals.get(name, ZERO) - txn.amount
        return dict(sorted(totals.items(), key=lambda item: (-item[1], item[0])))

    def totals(self, start: date, end: date) -> ReportTotals:
        if start > end:
            raise ValueError("Start date must be before end date")
        in_range = [txn for txn in self._active if start <= txn.date <= end]
        income = sum((txn.amount for txn in in_range if txn.amount > 0), ZERO)
        expenses = -sum((txn.amount for txn in in_range if txn.amount < 0), ZERO)
        return ReportTotals(
            start=start,
            end=end,
            income=income,
            expenses=expenses,
            net=income - expenses,
            categories=self.category_spend(start, end),
        )

    @staticmethod
    def week_interval(today: date) -> tuple[date, date]:
        # Weeks run Sunday through Saturday.
        start = today - timedelta(days=(today.weekday() + 1) % 7)
        return start, start + timedelta(days=6)


class AlertService:
    def __init__(
        self,
        state: BudgetState,
        *,
        threshold: Decimal = Decimal("0.8"),
        today: Optional[date] = None,
    ) -> None:
        self.state = state
        self.threshold = threshold
        self.budgets = BudgetService(state, today)

    def evaluate(self) -> list[BudgetAlert]:
        """Alerts for current-period categories that newly crossed the threshold."""
        period = self.budgets.current_period()
        spent_by_category: dict[str, Decimal] = {}
        for txn in self.budgets.period_transactions(period):
            if txn.amount >= 0:
                continue
            name = self.state.category_name(txn)
            if self.budgets.kind(name) != CategoryKind.expense:
                continue
            spent_by_category[name] = spent_by_category.get(name, ZERO) - txn.amount

        alerts: list[BudgetAlert] = []
        for name in sorted(spent_by_category):
            budget = self.budgets.budget(name, period)
            if budget <= 0:
                continue
            spent = spent_by_category[name]
            ratio = spent / budget
            if ratio < self.threshold:
                continue
            alert = BudgetAlert(
                period_key=period.key,
                category=name,
                spent=spent,
                budget=budget,
                percent=ratio * 100,
            )
            if alert.key in self.state.alerted_keys:
                continue
            alerts.append(alert)
        return alerts


class StepPolicy(str, Enum):
    required = "required"
    best_effort = "best_effort"


@dataclass(frozen=True)
class SyncStep:
    name: str
    policy: StepPolicy = StepPolicy.required

    async def run(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking ledger call off the event loop.

        Failures of a required step propagate; a best-effort step logs the
        failure and yields ``None``.
        """
        try:
            return await asyncio.to_thread(fn, *args)
        except LedgerError as exc:
            if self.policy is StepPolicy.required:
                raise
            logger.warning(f"sync_step_skipped: step={self.name} error={exc}")
            return None


FETCH_CATEGORIES = SyncStep("fetch_categories")
FETCH_SUMMARY = SyncStep("fetch_budget_summary")
REFRESH_ACCOUNTS = SyncStep("refresh_accounts", StepPolicy.best_effort)
FETCH_TRANSACTIONS = SyncStep("fetch_transactions")


class BudgetStore:
    """Single owner of the budget state.

    Mutations are serialised and persisted one logical change at a time; a
    sync is not reentrant.
    """

    def __init__(
        self,
        session_factory: sessionmaker = SessionLocal,
        *,
        settings: Optional[Settings] = None,
        client_factory: Optional[Callable[[str], Any]] = None,
        clock: Callable[[], date] = local_today,
    ) -> None:
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.client_factory = client_factory or LedgerClient
        self.clock = clock
        self.alert_listeners: list[Callable[[BudgetAlert], None]] = []
        self._state_lock = threading.RLock()
        self._sync_lock = threading.Lock()
        self._state = BudgetState(
            paycheck_minimum=self.settings.paycheck_minimum_amount
        )

    def today(self) -> date:
        return self.clock()

    @property
    def state(self) -> BudgetState:
        return self._state

    def load(self) -> BudgetState:
        with session_scope(self.session_factory) as session:
            loaded = StateRepository(session).load(
                paycheck_minimum=self.settings.paycheck_minimum_amount,
                today=self.today(),
            )
        with self._state_lock:
            self._state = loaded
        logger.info(
            f"state_loaded: transactions={len(loaded.transactions)} "
            f"categories={len(loaded.categories)}"
        )
        return loaded

    def _commit(self, state: BudgetState) -> BudgetState:
        with session_scope(self.session_factory) as session:
            StateRepository(session).save(state)
        self._state = state
        return state

    def _mutate(
        self, transition: Callable[[BudgetState], BudgetState]
    ) -> BudgetState:
        with self._state_lock:
            return self._commit(transition(self._state))

    def budgets(self, today: Optional[date] = None) -> BudgetService:
        return BudgetService(self._state, today or self.today())

    # Alerts

    def evaluate_alerts(self) -> list[BudgetAlert]:
        if not self.settings.alerts_enabled:
            return []
        with self._state_lock:
            alerts = AlertService(
                self._state,
                threshold=self.settings.alert_threshold,
                today=self.today(),
            ).evaluate()
            if alerts:
                self._mutate(
                    lambda state: store.record_alerts(state, (a.key for a in alerts))
                )
        for alert in alerts:
            logger.info(
                f"budget_alert: period={alert.period_key} category={alert.category} "
                f"percent={alert.percent:.0f}"
            )
            for listener in self.alert_listeners:
                listener(alert)
        return alerts

    # Transactions

    def resolve_category(self, name: str) -> tuple[Optional[int], str]:
        """Match a typed category name to a ledger category or a local one."""
        wanted = name.strip()
        lowered = wanted.lower()
        if not wanted or lowered == UNCATEGORIZED.lower():
            return None, UNCATEGORIZED
        categories = list(self._state.categories.values())
        for category in categories:
            if category.name.lower() == lowered:
                return category.id, category.name

        best_distance: Optional[int] = None
        best = []
        for category in categories:
            dist = int(Levenshtein.distance(lowered, category.name.strip().lower()))
            if best_distance is None or dist < best_distance:
                best_distance = dist
                best = [category]
            elif dist == best_distance:
                best.append(category)
        if best_distance is not None and best_distance <= 1:
            if len(best) > 1:
                options = ", ".join(sorted({c.name for c in best}))
                raise CategoryAmbiguous(
                    f"Category '{wanted}' is ambiguous; matches: {options}"
                )
            return best[0].id, best[0].name

        for local in self._state.category_order:
            if local.lower() == lowered:
                return None, local
        raise CategoryNotFound(f"Category '{wanted}' not found")

    def add_manual_transaction(
        self, data: ManualTransactionIn, *, now: Optional[datetime] = None
    ) -> Transaction:
        category_id, category_name = self.resolve_category(data.category)
        txn = Transaction(
            id=f"{MANUAL_ID_PREFIX}{str(uuid4()).upper()}",
            date=data.date,
            amount=data.amount,
            payee=data.payee,
            memo=data.memo,
            category_id=category_id,
            created_at=now or datetime.now(timezone.utc),
        )
        today = self.today()

        def transition(state: BudgetState) -> BudgetState:
            state = store.add_transaction(state, txn, today)
            if category_id is None and category_name != UNCATEGORIZED:
                state = store.override_category(state, txn.id, category_name, today)
            return state

        self._mutate(transition)
        self.evaluate_alerts()
        return txn

    def hide_transaction(self, txn_id: str) -> None:
        today = self.today()
        self._mutate(lambda state: store.hide_transaction(state, txn_id, today))

    def restore_transaction(self, txn_id: str) -> None:
        today = self.today()
        self._mutate(lambda state: store.restore_transaction(state, txn_id, today))
        self.evaluate_alerts()

    def override_category(self, txn_id: str, category: str) -> None:
        today = self.today()
        self._mutate(
            lambda state: store.override_category(state, txn_id, category, today)
        )
        self.evaluate_alerts()

    async def rename_payee(
        self, txn_id: str, payee: str
    ) -> tuple[bool, Optional[str]]:
        trimmed = payee.strip()
        if not trimmed:
            return False, "Payee cannot be empty."
        existing = self._state.transaction(txn_id)
        if existing is None:
            return False, "Transaction not found."
        if self._state.payee_for(existing) == trimmed:
            return True, None

        if not existing.is_manual:
            token = self._state.ledger_token or self.settings.ledger_token
            if not token:
                return False, "Missing ledger token."
            try:
                client = self.client_factory(token)
                await asyncio.to_thread(client.push_payee_update, txn_id, trimmed)
            except LedgerError as exc:
                logger.warning(f"payee_update_failed: id={txn_id} error={exc}")
                return False, str(exc)

        updated = existing.model_copy(update={"payee": trimmed})
        today = self.today()
        try:
            await asyncio.to_thread(
                self._mutate,
                lambda state: store.rename_payee(
                    store.replace_transaction(state, updated, today), txn_id, trimmed
                ),
            )
        except TransactionNotFound:
            return False, "Transaction not found."
        return True, None

    # Budgets and categories

    def update_budget(
        self, category: str, amount: Decimal, on: Optional[date] = None
    ) -> str:
        period_key = self.budgets().period_for(on or self.today()).key
        self._mutate(
            lambda state: store.update_budget(state, category, amount, period_key)
        )
        self.evaluate_alerts()
        return period_key

    def add_category(self, name: str, amount: Decimal) -> None:
        self._mutate(lambda state: store.add_category(state, name, amount))

    def remove_category(self, name: str) -> None:
        self._mutate(lambda state: store.remove_category(state, name))

    def move_category(self, name: str, position: int) -> None:
        self._mutate(lambda state: store.move_category(state, name, position))

    def set_starting_balance(self, amount: Decimal) -> None:
        self._mutate(lambda state: store.set_starting_balance(state, amount))

    # Sync

    async def sync(
        self,
        since: Optional[date] = None,
        period_start: Optional[date] = None,
        period_end: Optional[date] = None,
    ) -> SyncResult:
        if not self._sync_lock.acquire(blocking=False):
            return SyncResult(ok=False, message="Sync already in progress")
        try:
            return await self._sync(since, period_start, period_end)
        finally:
            self._sync_lock.release()

    async def _sync(
        self,
        since: Optional[date],
        period_start: Optional[date],
        period_end: Optional[date],
    ) -> SyncResult:
        token = self._state.ledger_token or self.settings.ledger_token
        if not token:
            return SyncResult(ok=False, message="No token")
        today = self.today()
        if period_start is None or period_end is None:
            period_start = self.budgets(today).period_for(today).start
            period_end = add_months(period_start, 1) - timedelta(days=1)

        try:
            client = self.client_factory(token)
            categories, summary = await asyncio.gather(
                FETCH_CATEGORIES.run(client.fetch_categories),
                FETCH_SUMMARY.run(
                    client.fetch_budget_summary, period_start, period_end
                ),
            )
            if not summary.aligned:
                logger.info(
                    f"sync_budgets_skipped: reason=period_not_aligned "
                    f"start={period_start} end={period_end}"
                )
            await REFRESH_ACCOUNTS.run(client.trigger_account_sync)
            if self.settings.sync_settle_secs > 0:
                await asyncio.sleep(self.settings.sync_settle_secs)
            fetch_start = since or today - timedelta(
                days=self.settings.sync_lookback_days
            )
            incoming, errors = await FETCH_TRANSACTIONS.run(
                client.fetch_transactions, fetch_start, today
            )
        except LedgerError as exc:
            logger.warning(f"sync_failed: error={exc}")
            return SyncResult(ok=False, message=f"Failed: {exc}")

        if errors:
            logger.warning(f"sync_rejected: errors={len(errors)}")
            return SyncResult(
                ok=False,
                message="Error: " + ", ".join(errors),
                budgets_aligned=summary.aligned,
            )

        imported, result = await asyncio.to_thread(
            self._apply_sync, categories, summary, incoming, today
        )
        removed = len(result.removed_ids) if result else 0
        logger.info(
            f"sync_applied: fetched={len(incoming)} imported={imported} "
            f"superseded={removed} aligned={summary.aligned}"
        )
        await asyncio.to_thread(self.evaluate_alerts)
        return SyncResult(
            ok=True,
            message=f"Synced. {imported} imported",
            imported=imported,
            budgets_aligned=summary.aligned,
        )

    def _apply_sync(
        self,
        categories: list[Category],
        summary: BudgetSummary,
        incoming: list[Transaction],
        today: date,
    ) -> tuple[int, Optional[ReconcileResult]]:
        with self._state_lock:
            before = len(self._state.transactions)
            synced, result = store.apply_sync(
                self._state,
                categories=categories,
                summary=summary,
                incoming=incoming,
                today=today,
            )
            self._commit(synced)
        return max(0, len(synced.transactions) - before), result

    async def connect(self, data: ConnectIn) -> SyncResult:
        """Validate the chosen budgeting period, then run the first import."""
        try:
            client = self.client_factory(data.token)
            summary = await FETCH_SUMMARY.run(
                client.fetch_budget_summary, data.period_start, data.period_end
            )
        except LedgerError as exc:
            return SyncResult(ok=False, message=f"Connection Failed: {exc}")
        if not summary.aligned:
            raise PeriodMisalignedError(
                "The dates selected do not match a valid budgeting period. "
                "Please adjust the start and end dates."
            )

        today = self.today()
        await asyncio.to_thread(
            self._mutate,
            lambda state: store.set_budget_start_day(
                store.set_ledger_token(state, data.token),
                data.period_start.day,
                today,
            ),
        )
        result = await self.sync(
            since=data.import_start,
            period_start=data.period_start,
            period_end=data.period_end,
        )
        await asyncio.to_thread(
            self._mutate,
            lambda state: store.set_history_start(
                store.set_starting_balance(state, data.initial_balance),
                data.import_start,
            ),
        )
        return result
