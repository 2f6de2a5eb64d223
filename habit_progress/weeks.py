"""Calendar helpers. Weeks start on Monday."""

from datetime import date, timedelta
from typing import Tuple


def start_of_week(day: date) -> date:
    return day - timedelta(days=day.weekday())


def end_of_week(day: date) -> date:
    return start_of_week(day) + timedelta(days=6)


def week_bounds(day: date) -> Tuple[date, date]:
    """Return the (Monday, Sunday) pair of the week containing ``day``."""
    return start_of_week(day), end_of_week(day)


def in_week(day: date, anchor: date) -> bool:
    start, end = week_bounds(anchor)
    return start <= day <= end
