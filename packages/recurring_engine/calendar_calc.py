"""Calendar/interval arithmetic for recurrence rules.

Pure functions only: no I/O, no clock reads. Month and year steps rely on
``dateutil.relativedelta``, which clamps to the last valid day of the target
month (Jan 31 + 1 month = Feb 28/29) instead of rolling over into the next
month. An explicit ``anchor_day`` re-applies the intended day after every
step so a rule anchored on the 31st returns to the 31st in long months.
"""

from __future__ import annotations

import calendar
from collections.abc import Iterator
from datetime import date, timedelta

from dateutil.relativedelta import relativedelta

from .errors import InvalidFrequency
from .models import Frequency, FrequencyType


def validate_frequency(frequency: Frequency) -> Frequency:
    """Return ``frequency`` unchanged or raise :class:`InvalidFrequency`."""

    interval = frequency.interval
    if isinstance(interval, bool) or not isinstance(interval, int) or interval <= 0:
        raise InvalidFrequency(f"interval must be a positive integer, got {interval!r}")
    try:
        ftype = FrequencyType(frequency.type)
    except ValueError:
        raise InvalidFrequency(f"unknown frequency type: {frequency.type!r}") from None
    # anchor_day is ignored for DAILY/WEEKLY and weekday for everything but WEEKLY.
    if ftype in (FrequencyType.MONTHLY, FrequencyType.YEARLY) and frequency.anchor_day is not None:
        if not 1 <= frequency.anchor_day <= 31:
            raise InvalidFrequency(f"anchor_day must be within 1..31, got {frequency.anchor_day}")
    if ftype is FrequencyType.WEEKLY and frequency.weekday is not None:
        if not 0 <= frequency.weekday <= 6:
            raise InvalidFrequency(f"weekday must be within 0..6, got {frequency.weekday}")
    return frequency


def _clamp_to_anchor(d: date, anchor_day: int | None) -> date:
    if anchor_day is None:
        return d
    last_day = calendar.monthrange(d.year, d.month)[1]
    return d.replace(day=min(anchor_day, last_day))


def next_due_date(frequency: Frequency, anchor_date: date) -> date:
    """Return the occurrence date that follows ``anchor_date``.

    The result is always strictly later than ``anchor_date``.
    """

    validate_frequency(frequency)
    n = frequency.interval

    match FrequencyType(frequency.type):
        case FrequencyType.DAILY:
            return anchor_date + timedelta(days=n)
        case FrequencyType.WEEKLY:
            if frequency.weekday is None or frequency.weekday == anchor_date.weekday():
                return anchor_date + timedelta(weeks=n)
            # Move to the requested weekday first, then the remaining weeks.
            days_ahead = (frequency.weekday - anchor_date.weekday()) % 7
            return anchor_date + timedelta(days=days_ahead, weeks=n - 1)
        case FrequencyType.MONTHLY:
            return _clamp_to_anchor(anchor_date + relativedelta(months=n), frequency.anchor_day)
        case FrequencyType.YEARLY:
            return _clamp_to_anchor(anchor_date + relativedelta(years=n), frequency.anchor_day)
    raise InvalidFrequency(f"unknown frequency type: {frequency.type!r}")  # pragma: no cover


def iter_due_dates(
    frequency: Frequency,
    start: date,
    *,
    until: date | None = None,
    limit: int | None = None,
) -> Iterator[date]:
    """Yield ``start`` and every following due date.

    Stops after ``until`` (inclusive bound) or once ``limit`` dates were
    yielded; with neither bound the iterator is infinite.
    """

    validate_frequency(frequency)
    current = start
    emitted = 0
    while (until is None or current <= until) and (limit is None or emitted < limit):
        yield current
        emitted += 1
        current = next_due_date(frequency, current)


def frequency_from_days(days: int) -> Frequency:
    """Map a legacy "every N days" interval onto a calendar frequency.

    Common lengths map to their calendar unit (7 -> weekly, 30/31 -> monthly,
    365/366 -> yearly); exact multiples of a year, month or week map to that
    unit; anything else stays daily.
    """

    if days <= 0:
        raise InvalidFrequency(f"days must be positive, got {days}")
    known = {
        1: Frequency(FrequencyType.DAILY, 1),
        7: Frequency(FrequencyType.WEEKLY, 1),
        14: Frequency(FrequencyType.WEEKLY, 2),
        30: Frequency(FrequencyType.MONTHLY, 1),
        31: Frequency(FrequencyType.MONTHLY, 1),
        60: Frequency(FrequencyType.MONTHLY, 2),
        61: Frequency(FrequencyType.MONTHLY, 2),
        90: Frequency(FrequencyType.MONTHLY, 3),
        91: Frequency(FrequencyType.MONTHLY, 3),
        180: Frequency(FrequencyType.MONTHLY, 6),
        183: Frequency(FrequencyType.MONTHLY, 6),
        365: Frequency(FrequencyType.YEARLY, 1),
        366: Frequency(FrequencyType.YEARLY, 1),
    }
    if days in known:
        return known[days]
    if days % 365 == 0:
        return Frequency(FrequencyType.YEARLY, days // 365)
    if days % 30 == 0:
        return Frequency(FrequencyType.MONTHLY, days // 30)
    if days % 7 == 0:
        return Frequency(FrequencyType.WEEKLY, days // 7)
    return Frequency(FrequencyType.DAILY, days)


__all__ = [
    "frequency_from_days",
    "iter_due_dates",
    "next_due_date",
    "validate_frequency",
]
