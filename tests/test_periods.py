from datetime import date, timedelta

from models import PeriodRelation
from periods import ROLL_FORWARD_DAYS, Period, PeriodResolver, add_months, month_day

PAYCHECKS = [date(2026, 1, 2), date(2026, 1, 16), date(2026, 1, 30)]


def _resolver(**kwargs) -> PeriodResolver:
    kwargs.setdefault("today", date(2026, 2, 5))
    kwargs.setdefault("start_day", 30)
    kwargs.setdefault("anchor", PAYCHECKS[-1])
    return PeriodResolver(PAYCHECKS, **kwargs)


def test_dates_inside_one_period_share_a_start() -> None:
    resolver = _resolver()
    starts = {
        resolver.period_start(date(2026, 1, 2) + timedelta(days=offset))
        for offset in range(14)
    }
    assert starts == {date(2026, 1, 2)}
    assert resolver.period_start(date(2026, 1, 16)) == date(2026, 1, 16)


def test_past_period_ends_at_next_paycheck() -> None:
    resolver = _resolver()
    period = resolver.period_bounds(date(2026, 1, 5))
    assert period == Period(date(2026, 1, 2), date(2026, 1, 16))
    assert period.last_day == date(2026, 1, 15)
    assert resolver.relation(period) == PeriodRelation.past


def test_current_period_stays_open_until_paycheck_posts() -> None:
    resolver = _resolver()
    period = resolver.current_period()
    assert period.start == date(2026, 1, 30)
    assert period.is_open
    assert period.contains(date(2026, 3, 1))
    assert resolver.relation(period) == PeriodRelation.current


def test_future_date_within_cycle_stays_in_last_paycheck_period() -> None:
    resolver = _resolver()
    assert resolver.period_start(date(2026, 2, 20)) == date(2026, 1, 30)


def test_future_date_past_cycle_rolls_forward_by_day_of_month() -> None:
    resolver = _resolver()
    start = resolver.period_start(date(2026, 3, 5))
    assert start == date(2026, 2, 28)
    period = resolver.period_bounds(date(2026, 3, 5))
    assert period.end == date(2026, 3, 30)
    assert resolver.relation(period) == PeriodRelation.future


def test_day_of_month_fallback_without_paychecks() -> None:
    resolver = PeriodResolver([], today=date(2026, 2, 1), start_day=15)
    assert resolver.period_start(date(2026, 1, 10)) == date(2025, 12, 15)
    assert resolver.period_start(date(2026, 1, 15)) == date(2026, 1, 15)
    assert resolver.period_bounds(date(2025, 12, 20)) == Period(
        date(2025, 12, 15), date(2026, 1, 15)
    )


def test_anchor_used_for_dates_on_or_after_it() -> None:
    resolver = PeriodResolver(
        [], today=date(2026, 2, 1), start_day=1, anchor=date(2026, 1, 20)
    )
    assert resolver.period_start(date(2026, 1, 25)) == date(2026, 1, 20)
    assert resolver.period_start(date(2026, 1, 10)) == date(2026, 1, 1)
    assert resolver.period_bounds(date(2026, 1, 10)) == Period(
        date(2026, 1, 1), date(2026, 1, 20)
    )


def test_month_helpers_clamp_to_month_end() -> None:
    assert month_day(2026, 2, 31) == date(2026, 2, 28)
    assert add_months(date(2026, 1, 31), 1) == date(2026, 2, 28)
    assert add_months(date(2026, 1, 15), -1) == date(2025, 12, 15)
    assert add_months(date(2026, 2, 28), 1, desired_day=30) == date(2026, 3, 30)


def test_roll_forward_starts_exactly_at_cycle_length() -> None:
    paycheck = date(2026, 1, 16)
    resolver = PeriodResolver(
        [paycheck], today=date(2026, 1, 20), start_day=1, anchor=paycheck
    )
    last_kept = paycheck + timedelta(days=ROLL_FORWARD_DAYS - 1)
    first_rolled = paycheck + timedelta(days=ROLL_FORWARD_DAYS)

    assert last_kept == date(2026, 2, 12)
    assert resolver.period_start(last_kept) == paycheck
    assert resolver.period_start(first_rolled) == date(2026, 2, 1)
    assert resolver.period_bounds(first_rolled) == Period(
        date(2026, 2, 1), date(2026, 3, 1)
    )


def test_late_start_day_periods_cover_every_day() -> None:
    resolver = PeriodResolver([], today=date(2026, 6, 1), start_day=31)
    period = resolver.period_bounds(date(2026, 3, 29))
    assert period == Period(date(2026, 2, 28), date(2026, 3, 31))

    day = date(2026, 1, 1)
    while day < date(2026, 5, 31):
        period = resolver.period_bounds(day)
        assert period.contains(day)
        assert resolver.period_start(period.end) == period.end
        day += timedelta(days=1)


def test_fallback_periods_before_first_paycheck_do_not_overlap() -> None:
    resolver = PeriodResolver(
        [date(2026, 1, 23)], today=date(2026, 2, 1), start_day=23
    )
    november = resolver.period_bounds(date(2025, 11, 30))
    december = resolver.period_bounds(date(2025, 12, 26))

    assert november == Period(date(2025, 11, 23), date(2025, 12, 23))
    assert december == Period(date(2025, 12, 23), date(2026, 1, 23))


def test_fallback_period_ends_at_earlier_paycheck() -> None:
    resolver = PeriodResolver(
        [date(2026, 1, 10)], today=date(2026, 2, 1), start_day=1
    )
    assert resolver.period_bounds(date(2026, 1, 5)) == Period(
        date(2026, 1, 1), date(2026, 1, 10)
    )
