from dataclasses import dataclass
from datetime import date
from typing import Optional


@dataclass(frozen=True)
class Period:
    start: date
    end: date


def resolve_period(
    start: Optional[date],
    end: Optional[date],
    *,
    today: Optional[date] = None,
) -> Period:
    """Fill a missing bound with the current month-to-date window."""
    today = today or date.today()
    return Period(start or today.replace(day=1), end or today)
