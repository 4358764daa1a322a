from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_EVEN, Decimal
from typing import Iterable, Sequence

from schemas import Transaction

# Manual entries are replaced by a synced transaction dated within this
# many days of them, in either direction.
MANUAL_MATCH_WINDOW_DAYS = 2

_CENT = Decimal("0.01")


@dataclass(frozen=True)
class ReconcileResult:
    transactions: tuple[Transaction, ...]
    removed_manual_ids: frozenset[str]
    removed_pending_ids: frozenset[str]

    @property
    def removed_ids(self) -> frozenset[str]:
        return self.removed_manual_ids | self.removed_pending_ids


def normalized_amount(amount: Decimal) -> Decimal:
    return amount.quantize(_CENT, rounding=ROUND_HALF_EVEN)


def within_days(lhs: date, rhs: date, days: int) -> bool:
    return abs((lhs - rhs).days) <= days


def sort_transactions(transactions: Iterable[Transaction]) -> tuple[Transaction, ...]:
    """Newest first: creation time, then transaction date, then id."""
    return tuple(
        sorted(
            transactions,
            key=lambda txn: (txn.created_at, txn.date, txn.id),
            reverse=True,
        )
    )


def superseded_manual_ids(
    existing: Iterable[Transaction], incoming: Sequence[Transaction]
) -> frozenset[str]:
    removed: set[str] = set()
    for txn in existing:
        if not txn.is_manual:
            continue
        amount = normalized_amount(txn.amount)
        for candidate in incoming:
            if candidate.is_manual:
                continue
            if normalized_amount(candidate.amount) != amount:
                continue
            if within_days(txn.date, candidate.date, MANUAL_MATCH_WINDOW_DAYS):
                removed.add(txn.id)
                break
    return frozenset(removed)


def superseded_pending_ids(
    existing: Iterable[Transaction], incoming: Sequence[Transaction]
) -> frozenset[str]:
    replaced_refs = {
        txn.supersedes_external_id for txn in incoming if txn.supersedes_external_id
    }
    cleared_external_ids = {
        txn.external_id for txn in incoming if not txn.is_pending and txn.external_id
    }
    removed: set[str] = set()
    for txn in existing:
        if not txn.is_pending:
            continue
        if txn.id in replaced_refs or (
            txn.external_id is not None and txn.external_id in replaced_refs
        ):
            removed.add(txn.id)
        elif txn.external_id is not None and txn.external_id in cleared_external_ids:
            removed.add(txn.id)
    return frozenset(removed)


def reconcile(
    existing: Sequence[Transaction], incoming: Sequence[Transaction]
) -> ReconcileResult:
    """Merge a fetched batch into the stored transactions.

    Manual entries matched by a synced transaction and pending entries that
    have cleared are dropped, then incoming entries overwrite stored ones
    with the same id. Applying the same batch twice gives the same result.
    """
    manual_ids = superseded_manual_ids(existing, incoming)
    pending_ids = superseded_pending_ids(existing, incoming)
    dropped = manual_ids | pending_ids

    merged: dict[str, Transaction] = {
        txn.id: txn for txn in existing if txn.id not in dropped
    }
    for txn in incoming:
        merged[txn.id] = txn

    return ReconcileResult(
        transactions=sort_transactions(merged.values()),
        removed_manual_ids=manual_ids,
        removed_pending_ids=pending_ids - {txn.id for txn in incoming},
    )
