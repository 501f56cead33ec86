"""Next-occurrence arithmetic for recurring entries."""

from __future__ import annotations

from datetime import datetime, timedelta

from dateutil.relativedelta import relativedelta

from herald.scheduler.interval import Interval, Unit

_FIXED_STEP = {
    Unit.MINUTE: timedelta(minutes=1),
    Unit.HOUR: timedelta(hours=1),
    Unit.DAY: timedelta(days=1),
    Unit.WEEK: timedelta(weeks=1),
}


def next_occurrence(last_fired: datetime, interval: Interval) -> datetime:
    """Return the occurrence one *interval* after *last_fired*.

    Months and years use calendar arithmetic and clamp to the last valid
    day of the target month (Jan 31 + 1mo → Feb 28/29).

    Raises:
        OverflowError: The result is past ``datetime.max``.
    """
    if interval.unit is Unit.MONTH:
        return _calendar_add(last_fired, relativedelta(months=interval.amount))
    if interval.unit is Unit.YEAR:
        return _calendar_add(last_fired, relativedelta(years=interval.amount))
    return last_fired + _FIXED_STEP[interval.unit] * interval.amount


def next_after(last_fired: datetime, interval: Interval, now: datetime) -> datetime:
    """Return the first occurrence after *last_fired* that is strictly after *now*.

    Occurrences missed while the process was down are skipped, not replayed.
    """
    candidate = next_occurrence(last_fired, interval)
    if candidate > now:
        return candidate

    step = _FIXED_STEP.get(interval.unit)
    if step is not None:
        # Jump straight past *now* instead of walking every missed step.
        step = step * interval.amount
        missed = (now - last_fired) // step
        return last_fired + step * (missed + 1)

    while candidate <= now:
        candidate = next_occurrence(candidate, interval)
    return candidate


def is_expired(candidate: datetime, expires_at: datetime | None) -> bool:
    """True when *candidate* reaches or passes *expires_at*; ``None`` never expires."""
    if expires_at is None:
        return False
    return candidate >= expires_at


def _calendar_add(moment: datetime, delta: relativedelta) -> datetime:
    try:
        return moment + delta
    except ValueError as exc:
        # relativedelta reports out-of-range years as ValueError
        raise OverflowError(str(exc)) from exc
