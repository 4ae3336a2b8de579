import re
from dataclasses import dataclass
from datetime import date
from typing import Iterable, Optional

MONTH_KEY_PATTERN = re.compile(r"^(\d{4})-(0[1-9]|1[0-2])$")
TIMERANGE_MODES = ("month", "year", "all")


def parse_month_key(key: str) -> tuple[int, int]:
    match = MONTH_KEY_PATTERN.match(key) if isinstance(key, str) else None
    if not match:
        raise ValueError(f"Malformed month key: {key!r}")
    return int(match.group(1)), int(match.group(2))


def validate_month_key(key: str) -> str:
    parse_month_key(key)
    return key


def month_key(d: date) -> str:
    return f"{d.year:04d}-{d.month:02d}"


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def month_start(key: str) -> date:
    year, month = parse_month_key(key)
    return date(year, month, 1)


def month_end(key: str) -> date:
    year, month = parse_month_key(key)
    return date(year, month, days_in_month(year, month))


def is_last_day_of_month(d: date) -> bool:
    return d.day == days_in_month(d.year, d.month)


def add_months(base: date, months: int, *, desired_day: Optional[int] = None) -> date:
    """Shift ``base`` by whole calendar months.

    The day of the result is ``desired_day`` (``base.day`` when omitted),
    clamped to the length of the target month.
    """
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    day = base.day if desired_day is None else desired_day
    return date(year, month, min(day, days_in_month(year, month)))


def shift_month_key(key: str, count: int) -> str:
    return month_key(add_months(month_start(key), count))


def month_range(first: str, last: str) -> list[str]:
    months: list[str] = []
    current = validate_month_key(first)
    validate_month_key(last)
    while current <= last:
        months.append(current)
        current = shift_month_key(current, 1)
    return months


@dataclass(frozen=True)
class Timerange:
    mode: str
    anchor: date
    months: tuple[str, ...]


def resolve_timerange(
    mode: Optional[str],
    available: Iterable[str],
    *,
    anchor: Optional[date] = None,
) -> Timerange:
    anchor = anchor or date.today()
    known = sorted(set(available))
    if mode == "all":
        return Timerange("all", anchor, tuple(known))
    if mode == "year":
        prefix = f"{anchor.year:04d}-"
        return Timerange(
            "year", anchor, tuple(m for m in known if m.startswith(prefix))
        )
    if mode and mode != "month":
        raise ValueError(f"Unknown timerange mode: {mode}")
    return Timerange("month", anchor, (month_key(anchor),))


def adjacent_anchor(timerange: Timerange, direction: int) -> date:
    if direction not in (-1, 1):
        raise ValueError("Direction must be -1 or 1")
    if timerange.mode == "month":
        return add_months(timerange.anchor.replace(day=1), direction)
    if timerange.mode == "year":
        year = timerange.anchor.year + direction
        return date(year, 1 if direction > 0 else 12, 1)
    return timerange.anchor


def months_for_average(months: Iterable[str], today: date) -> list[str]:
    # Drop the current month and anything after it unless today closes the month.
    ordered = sorted(months)
    if is_last_day_of_month(today):
        return ordered
    current = month_key(today)
    if current not in ordered:
        return ordered
    return [m for m in ordered if m < current]
