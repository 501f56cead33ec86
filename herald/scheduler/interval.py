"""Recurrence interval grammar — ``<amount><unit>`` strings such as ``3mo``."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from herald.scheduler.errors import ParseError


class Unit(Enum):
    """Interval units, valued by their grammar token."""

    MINUTE = "m"
    HOUR = "h"
    DAY = "d"
    WEEK = "w"
    MONTH = "mo"
    YEAR = "y"


# "mo" must be tried before "m".
_INTERVAL_RE = re.compile(r"(?P<amount>[0-9]+)(?P<unit>mo|[mhdwy])")

# Largest amount per unit: anything spanning more than ~1000 years is overflow.
_MAX_SPAN_DAYS = 366_000
_MAX_AMOUNT = {
    Unit.MINUTE: _MAX_SPAN_DAYS * 24 * 60,
    Unit.HOUR: _MAX_SPAN_DAYS * 24,
    Unit.DAY: _MAX_SPAN_DAYS,
    Unit.WEEK: _MAX_SPAN_DAYS // 7,
    Unit.MONTH: _MAX_SPAN_DAYS // 31,
    Unit.YEAR: _MAX_SPAN_DAYS // 366,
}
_MAX_DIGITS = 12


@dataclass(frozen=True)
class Interval:
    """A parsed recurrence interval.

    Attributes:
        amount: Positive number of units.
        unit: The calendar or clock unit.
    """

    amount: int
    unit: Unit

    def __str__(self) -> str:
        return f"{self.amount}{self.unit.value}"


def parse_interval(spec: str) -> Interval:
    """Parse an interval string like ``"1d"``, ``"2w"`` or ``"3mo"``.

    Units: ``m`` minute, ``h`` hour, ``d`` day, ``w`` week, ``mo`` month,
    ``y`` year.  Matching is strict: no whitespace, sign or upper case.

    Raises:
        ParseError: Empty input, missing digits, unknown or missing unit,
            a zero amount, or an amount too large to schedule.
    """
    if not isinstance(spec, str) or not spec:
        msg = "Interval is empty"
        raise ParseError(msg)

    match = _INTERVAL_RE.fullmatch(spec)
    if match is None:
        msg = (
            f"Invalid interval {spec!r}: expected <amount><unit> "
            "with unit one of m, h, d, w, mo, y"
        )
        raise ParseError(msg)

    digits = match["amount"]
    unit = Unit(match["unit"])
    if len(digits.lstrip("0")) > _MAX_DIGITS:
        msg = f"Interval amount too large: {spec!r}"
        raise ParseError(msg)

    amount = int(digits.lstrip("0") or "0")
    if amount == 0:
        msg = f"Interval amount must be positive: {spec!r}"
        raise ParseError(msg)
    if amount > _MAX_AMOUNT[unit]:
        msg = f"Interval amount too large: {spec!r}"
        raise ParseError(msg)

    return Interval(amount=amount, unit=unit)
