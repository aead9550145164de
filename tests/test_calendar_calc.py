from datetime import date

import pytest

from recurring_engine.calendar_calc import (
    frequency_from_days,
    iter_due_dates,
    next_due_date,
    validate_frequency,
)
from recurring_engine.errors import InvalidFrequency
from recurring_engine.models import Frequency, FrequencyType


def _freq(ftype: FrequencyType, interval: int = 1, **kw) -> Frequency:
    return Frequency(type=ftype, interval=interval, **kw)


def test_daily_and_weekly_steps():
    assert next_due_date(_freq(FrequencyType.DAILY), date(2025, 2, 28)) == date(2025, 3, 1)
    assert next_due_date(_freq(FrequencyType.DAILY, 10), date(2025, 1, 25)) == date(2025, 2, 4)
    assert next_due_date(_freq(FrequencyType.WEEKLY), date(2025, 6, 2)) == date(2025, 6, 9)
    assert next_due_date(_freq(FrequencyType.WEEKLY, 2), date(2025, 12, 25)) == date(2026, 1, 8)


def test_weekly_with_weekday_moves_to_that_day_first():
    monday = date(2025, 6, 2)
    friday = 4
    assert next_due_date(_freq(FrequencyType.WEEKLY, weekday=friday), monday) == date(2025, 6, 6)
    assert next_due_date(_freq(FrequencyType.WEEKLY, 2, weekday=friday), monday) == date(
        2025, 6, 13
    )
    # Already on the requested weekday: plain interval step.
    assert next_due_date(_freq(FrequencyType.WEEKLY, weekday=0), monday) == date(2025, 6, 9)


def test_monthly_end_of_month_clamping_never_rolls_over():
    freq = _freq(FrequencyType.MONTHLY, anchor_day=31)
    dates = list(iter_due_dates(freq, date(2025, 1, 31), limit=6))
    assert dates == [
        date(2025, 1, 31),
        date(2025, 2, 28),
        date(2025, 3, 31),
        date(2025, 4, 30),
        date(2025, 5, 31),
        date(2025, 6, 30),
    ]


def test_monthly_clamps_to_leap_day():
    freq = _freq(FrequencyType.MONTHLY, anchor_day=31)
    assert next_due_date(freq, date(2024, 1, 31)) == date(2024, 2, 29)


def test_monthly_without_anchor_keeps_day_and_clamps():
    freq = _freq(FrequencyType.MONTHLY, 3)
    assert next_due_date(freq, date(2025, 6, 15)) == date(2025, 9, 15)
    assert next_due_date(freq, date(2025, 11, 30)) == date(2026, 2, 28)


def test_yearly_feb_29_clamps_in_non_leap_years():
    freq = _freq(FrequencyType.YEARLY, anchor_day=29)
    dates = list(iter_due_dates(freq, date(2024, 2, 29), limit=5))
    assert dates == [
        date(2024, 2, 29),
        date(2025, 2, 28),
        date(2026, 2, 28),
        date(2027, 2, 28),
        date(2028, 2, 29),
    ]


def test_result_is_strictly_later():
    anchor = date(2025, 1, 31)
    for ftype in FrequencyType:
        for interval in (1, 2, 7):
            assert next_due_date(_freq(ftype, interval), anchor) > anchor


@pytest.mark.parametrize(
    "freq",
    [
        Frequency(FrequencyType.DAILY, 0),
        Frequency(FrequencyType.MONTHLY, -1),
        Frequency(FrequencyType.MONTHLY, 1, anchor_day=0),
        Frequency(FrequencyType.YEARLY, 1, anchor_day=32),
        Frequency(FrequencyType.WEEKLY, 1, weekday=7),
    ],
)
def test_invalid_frequency(freq: Frequency):
    with pytest.raises(InvalidFrequency):
        validate_frequency(freq)
    with pytest.raises(InvalidFrequency):
        next_due_date(freq, date(2025, 1, 1))


def test_unknown_frequency_type_is_rejected():
    with pytest.raises(InvalidFrequency):
        validate_frequency(Frequency("FORTNIGHTLY", 1))  # type: ignore[arg-type]


def test_iter_due_dates_until_is_inclusive():
    freq = _freq(FrequencyType.MONTHLY, anchor_day=1)
    dates = list(iter_due_dates(freq, date(2025, 6, 1), until=date(2025, 9, 1)))
    assert dates == [date(2025, 6, 1), date(2025, 7, 1), date(2025, 8, 1), date(2025, 9, 1)]


@pytest.mark.parametrize(
    ("days", "expected"),
    [
        (1, Frequency(FrequencyType.DAILY, 1)),
        (7, Frequency(FrequencyType.WEEKLY, 1)),
        (14, Frequency(FrequencyType.WEEKLY, 2)),
        (21, Frequency(FrequencyType.WEEKLY, 3)),
        (31, Frequency(FrequencyType.MONTHLY, 1)),
        (91, Frequency(FrequencyType.MONTHLY, 3)),
        (120, Frequency(FrequencyType.MONTHLY, 4)),
        (366, Frequency(FrequencyType.YEARLY, 1)),
        (730, Frequency(FrequencyType.YEARLY, 2)),
        (45, Frequency(FrequencyType.DAILY, 45)),
    ],
)
def test_frequency_from_days(days: int, expected: Frequency):
    assert frequency_from_days(days) == expected


def test_frequency_from_days_rejects_non_positive():
    with pytest.raises(InvalidFrequency):
        frequency_from_days(0)
