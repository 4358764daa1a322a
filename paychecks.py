from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Callable, Iterable, Optional

from schemas import Transaction

# Deposits closer together than this are treated as one paycheck event.
PAYCHECK_CLUSTER_DAYS = 5
PAYCHECK_CATEGORY_MARKER = "paycheck"


@dataclass(frozen=True)
class PaycheckScan:
    dates: tuple[date, ...]
    last_confirmed: Optional[date]

    @property
    def start_day(self) -> Optional[int]:
        if self.last_confirmed is None:
            return None
        return self.last_confirmed.day


def is_paycheck(
    txn: Transaction,
    category_name: str,
    *,
    minimum_amount: Decimal,
) -> bool:
    if txn.is_pending:
        return False
    if PAYCHECK_CATEGORY_MARKER not in category_name.casefold():
        return False
    return abs(txn.amount) >= minimum_amount


def cluster_dates(
    raw_dates: Iterable[date], *, window_days: int = PAYCHECK_CLUSTER_DAYS
) -> tuple[date, ...]:
    kept: list[date] = []
    for day in sorted(raw_dates):
        if kept and (day - kept[-1]).days < window_days:
            continue
        kept.append(day)
    return tuple(kept)


def detect_paychecks(
    transactions: Iterable[Transaction],
    category_for: Callable[[Transaction], str],
    *,
    minimum_amount: Decimal,
    window_days: int = PAYCHECK_CLUSTER_DAYS,
    previous_anchor: Optional[date] = None,
) -> PaycheckScan:
    """Scan posted transactions for paycheck deposits.

    The most recent detected paycheck becomes the confirmed anchor. When the
    scan finds nothing the previous anchor is carried over so a gap in the
    synced history does not lose period alignment.
    """
    raw = [
        txn.date
        for txn in transactions
        if is_paycheck(txn, category_for(txn), minimum_amount=minimum_amount)
    ]
    dates = cluster_dates(raw, window_days=window_days)
    last_confirmed = dates[-1] if dates else previous_anchor
    return PaycheckScan(dates=dates, last_confirmed=last_confirmed)
