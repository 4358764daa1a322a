from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional, Sequence
from zoneinfo import ZoneInfo

from config import get_settings
from models import PeriodRelation

# A projected date this many days past the last real paycheck starts
# following the day-of-month rule instead of staying in that paycheck's period.
ROLL_FORWARD_DAYS = 28


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def month_day(year: int, month: int, day: int) -> date:
    """The given day of a month, snapped to the month's last day."""
    return date(year, month, min(day, days_in_month(year, month)))


def add_months(base: date, months: int, *, desired_day: Optional[int] = None) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    return month_day(year, month, desired_day or base.day)


@dataclass(frozen=True)
class Period:
    start: date
    end: Optional[date]  # exclusive; None while the period is still open

    @property
    def key(self) -> str:
        return self.start.isoformat()

    @property
    def is_open(self) -> bool:
        return self.end is None

    @property
    def last_day(self) -> Optional[date]:
        if self.end is None:
            return None
        return self.end - timedelta(days=1)

    def contains(self, day: date) -> bool:
        if day < self.start:
            return False
        return self.end is None or day < self.end


class PeriodResolver:
    """Maps calendar dates to pay periods.

    Periods start on detected paycheck dates. Dates without a paycheck on or
    before them fall back to the last confirmed paycheck, then to
    ``start_day`` of the month. The period containing ``today`` stays open
    until the next paycheck has actually posted.
    """

    def __init__(
        self,
        paycheck_dates: Sequence[date],
        *,
        today: date,
        start_day: int = 1,
        anchor: Optional[date] = None,
    ) -> None:
        self.paycheck_dates = sorted(set(paycheck_dates))
        self.today = today
        self.start_day = min(max(start_day, 1), 31)
        self.anchor = anchor
        self._current_start: Optional[date] = None

    def _latest_paycheck_on_or_before(self, day: date) -> Optional[date]:
        candidate = None
        for paycheck in self.paycheck_dates:
            if paycheck > day:
                break
            candidate = paycheck
        return candidate

    def _day_of_month_start(self, day: date) -> date:
        this_month = month_day(day.year, day.month, self.start_day)
        if day >= this_month:
            return this_month
        return add_months(this_month, -1, desired_day=self.start_day)

    def period_start(self, day: date) -> date:
        candidate = self._latest_paycheck_on_or_before(day)
        if candidate is None and self.anchor is not None and self.anchor <= day:
            candidate = self.anchor

        if day <= self.today:
            if candidate is not None:
                return candidate
            return self._day_of_month_start(day)

        if candidate is not None and (day - candidate).days < ROLL_FORWARD_DAYS:
            return candidate
        return self._day_of_month_start(day)

    def current_start(self) -> date:
        if self._current_start is None:
            self._current_start = self.period_start(self.today)
        return self._current_start

    def next_paycheck_after(self, day: date) -> Optional[date]:
        for paycheck in self.paycheck_dates:
            if paycheck > day:
                return paycheck
        return None

    def period_bounds(self, day: date) -> Period:
        start = self.period_start(day)
        next_paycheck = self.next_paycheck_after(start)
        if start in self.paycheck_dates or start == self.anchor:
            if next_paycheck is not None:
                return Period(start, next_paycheck)
            if start == self.current_start():
                return Period(start, None)
            return Period(start, add_months(start, 1))

        # Day-of-month start: never run past the next paycheck or anchor.
        if next_paycheck is None and start == self.current_start():
            return Period(start, None)
        ends = [add_months(start, 1, desired_day=self.start_day)]
        if next_paycheck is not None:
            ends.append(next_paycheck)
        if self.anchor is not None and self.anchor > start:
            ends.append(self.anchor)
        return Period(start, min(ends))

    def current_period(self) -> Period:
        return self.period_bounds(self.today)

    def relation(self, period: Period) -> PeriodRelation:
        current = self.current_start()
        if period.start > current:
            return PeriodRelation.future
        if period.start < current:
            return PeriodRelation.past
        return PeriodRelation.current
